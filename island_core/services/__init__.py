"""Services for Claude Island."""

from island_core.services.config_service import (
    ConfigService,
    get_config_service,
    reset_config_service,
)
from island_core.services.event_bus import Event, EventBus, get_event_bus, reset_event_bus
from island_core.services.hook_socket_server import HookSocketServer, ToolUseIdCache
from island_core.services.interrupt_watcher import (
    InterruptWatcherManager,
    TranscriptInterruptWatcher,
    TranscriptTail,
    is_interrupt_entry,
    transcript_path_for,
)
from island_core.services.permission_broker import (
    BrokerError,
    Completion,
    CompletionToken,
    DuplicateRequestError,
    PendingPermission,
    PermissionBroker,
    UnknownRequestError,
)
from island_core.services.session_monitor import CommandResult, SessionMonitor
from island_core.services.session_registry import SessionNotFoundError, SessionRegistry
from island_core.services.session_state_machine import (
    SessionStateMachine,
    TransitionResult,
    transition,
)

__all__ = [
    # Config
    "ConfigService",
    "get_config_service",
    "reset_config_service",
    # Event bus
    "Event",
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
    # Ingress
    "HookSocketServer",
    "ToolUseIdCache",
    # Interrupt watcher
    "InterruptWatcherManager",
    "TranscriptInterruptWatcher",
    "TranscriptTail",
    "is_interrupt_entry",
    "transcript_path_for",
    # Permission broker
    "BrokerError",
    "Completion",
    "CompletionToken",
    "DuplicateRequestError",
    "PendingPermission",
    "PermissionBroker",
    "UnknownRequestError",
    # Sessions
    "CommandResult",
    "SessionMonitor",
    "SessionNotFoundError",
    "SessionRegistry",
    "SessionStateMachine",
    "TransitionResult",
    "transition",
]
