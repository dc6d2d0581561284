"""Session model - the live state of one coding-assistant run."""

from datetime import datetime
from enum import Enum
from pathlib import PurePath
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

from island_core.models.permission import PermissionOutcome


class SessionPhase(str, Enum):
    """Session phases.

    Phase transitions:
    - IDLE → PROCESSING (User submitted a prompt)
    - PROCESSING → WAITING_FOR_APPROVAL (Tool needs a human decision)
    - WAITING_FOR_APPROVAL → PROCESSING (Decision made or tool finished)
    - any → COMPACTING → previous phase (Context compaction)
    - PROCESSING → INTERRUPTED (User interrupted outside the hooks)
    - any → IDLE (Assistant stopped)
    """

    IDLE = "idle"
    """Waiting for the user to type something."""

    PROCESSING = "processing"
    """The assistant is working."""

    WAITING_FOR_APPROVAL = "waiting_for_approval"
    """A tool invocation is blocked on a human decision."""

    COMPACTING = "compacting"
    """The assistant is compacting its context window."""

    INTERRUPTED = "interrupted"
    """The user interrupted the assistant mid-turn."""

    ENDED = "ended"
    """The session is over (only seen on a removal notification)."""


class ToolCallStatus(str, Enum):
    """Lifecycle of a single tool invocation."""

    PENDING_APPROVAL = "pending_approval"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    INTERRUPTED = "interrupted"
    DENIED = "denied"

    @property
    def is_open(self) -> bool:
        """True while the tool call has not finished."""
        return self in (ToolCallStatus.PENDING_APPROVAL, ToolCallStatus.RUNNING)


class HistoryItemKind(str, Enum):
    """Kinds of entries in a session's chat history."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL_CALL = "tool_call"
    INTERRUPTED = "interrupted"


class ToolCallRecord(BaseModel):
    """A tool invocation seen through pre/post tool-use hooks."""

    model_config = ConfigDict(frozen=True)

    tool_use_id: str = Field(..., description="Correlates request, approval and result")
    tool_name: str = Field(..., description="Tool name (e.g. 'Edit', 'Bash')")
    tool_input: dict[str, Any] = Field(default_factory=dict)
    status: ToolCallStatus = Field(default=ToolCallStatus.RUNNING)
    result: str | None = Field(
        default=None,
        description="Short textual result or error message",
    )


class ChatHistoryItem(BaseModel):
    """One entry of the in-memory chat history."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Tool-use id for tool calls, positional id otherwise")
    kind: HistoryItemKind
    text: str = ""
    tool: ToolCallRecord | None = None
    timestamp: datetime


class SubagentRecord(BaseModel):
    """A subagent launched through the Task/Agent tool."""

    model_config = ConfigDict(frozen=True)

    tool_use_id: str
    description: str = ""
    status: ToolCallStatus = Field(default=ToolCallStatus.RUNNING)
    started_at: datetime
    finished_at: datetime | None = None


class PermissionContext(BaseModel):
    """The permission request currently surfaced to the user."""

    model_config = ConfigDict(frozen=True)

    tool_use_id: str
    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime
    outcome: PermissionOutcome | None = Field(
        default=None,
        description="Set to failed/timed_out when the request can no longer be answered",
    )


class SessionState(BaseModel):
    """Immutable snapshot of one session.

    New snapshots are produced only by the session state machine; the
    registry swaps them in atomically, so a reader never sees a half-applied
    event.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str = Field(..., description="Opaque id of the coding-assistant run")
    cwd: str = Field(default="", description="Working directory of the session")
    tty: str | None = Field(default=None, description="Controlling terminal device")
    pid: int | None = Field(default=None, description="Assistant process id")
    transcript_path: str | None = Field(
        default=None,
        description="Transcript reported by the hooks (overrides the derived path)",
    )
    phase: SessionPhase = Field(default=SessionPhase.IDLE)
    phase_before_compacting: SessionPhase | None = None
    active_permission: PermissionContext | None = None
    history: tuple[ChatHistoryItem, ...] = ()
    subagents: tuple[SubagentRecord, ...] = ()
    created_at: datetime
    last_activity: datetime

    @computed_field
    @property
    def needs_attention(self) -> bool:
        """Whether the user has to act on this session."""
        return self.phase == SessionPhase.WAITING_FOR_APPROVAL

    @computed_field
    @property
    def is_in_tmux(self) -> bool:
        """Whether keystrokes can be relayed to the controlling terminal."""
        return bool(self.tty)

    @computed_field
    @property
    def display_name(self) -> str:
        """Project name shown in the UI."""
        return PurePath(self.cwd).name if self.cwd else self.session_id[:8]

    def find_tool_call(self, tool_use_id: str) -> ToolCallRecord | None:
        """Return the tool call with the given id, if present."""
        for item in self.history:
            if item.tool is not None and item.tool.tool_use_id == tool_use_id:
                return item.tool
        return None


class RegistrySnapshot(BaseModel):
    """The complete session set at one point in time."""

    model_config = ConfigDict(frozen=True)

    version: int = Field(..., ge=0, description="Monotonic publication counter")
    sessions: tuple[SessionState, ...] = ()

    def get(self, session_id: str) -> SessionState | None:
        """Return one session from the snapshot."""
        for session in self.sessions:
            if session.session_id == session_id:
                return session
        return None
