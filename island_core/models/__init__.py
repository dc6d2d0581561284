"""Domain models for Claude Island."""

from island_core.models.config import AppConfig, InterruptWatcherConfig, TmuxConfig
from island_core.models.hook_event import (
    HookDecodeError,
    HookEvent,
    HookEventKind,
    UnknownEventKindError,
    parse_hook_event,
)
from island_core.models.permission import PermissionOutcome
from island_core.models.session import (
    ChatHistoryItem,
    HistoryItemKind,
    PermissionContext,
    RegistrySnapshot,
    SessionPhase,
    SessionState,
    SubagentRecord,
    ToolCallRecord,
    ToolCallStatus,
)
from island_core.models.session_event import (
    InterruptDetected,
    PermissionDismissed,
    PermissionResolved,
    SessionEvent,
)

__all__ = [
    # Config
    "AppConfig",
    "InterruptWatcherConfig",
    "TmuxConfig",
    # Hook events
    "HookDecodeError",
    "HookEvent",
    "HookEventKind",
    "UnknownEventKindError",
    "parse_hook_event",
    # Internal events
    "InterruptDetected",
    "PermissionDismissed",
    "PermissionResolved",
    "SessionEvent",
    # Permission
    "PermissionOutcome",
    # Session
    "ChatHistoryItem",
    "HistoryItemKind",
    "PermissionContext",
    "RegistrySnapshot",
    "SessionPhase",
    "SessionState",
    "SubagentRecord",
    "ToolCallRecord",
    "ToolCallStatus",
]
