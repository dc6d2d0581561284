"""Hook events - the messages hook scripts send to the coordinator.

Hook scripts run inside the coding assistant's lifecycle and send one JSON
object per event over the local socket. The payload may use either our
kebab-case kinds (``pre-tool-use``) or the assistant's native hook names
(``PreToolUse``). Unknown fields are ignored so newer hook scripts keep
working against an older coordinator.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator


class HookEventKind(str, Enum):
    """Hook event kinds understood by the state machine."""

    SESSION_START = "session-start"
    SESSION_END = "session-end"
    USER_PROMPT_SUBMIT = "user-prompt-submit"
    PRE_TOOL_USE = "pre-tool-use"
    POST_TOOL_USE = "post-tool-use"
    PERMISSION_REQUEST = "permission-request"
    NOTIFICATION = "notification"
    STOP = "stop"
    SUBAGENT_STOP = "subagent-stop"
    PRE_COMPACT = "pre-compact"
    SESSION_STATUS = "session-status"


# Native hook names emitted by the coding assistant
NATIVE_EVENT_NAMES: dict[str, HookEventKind] = {
    "SessionStart": HookEventKind.SESSION_START,
    "SessionEnd": HookEventKind.SESSION_END,
    "UserPromptSubmit": HookEventKind.USER_PROMPT_SUBMIT,
    "PreToolUse": HookEventKind.PRE_TOOL_USE,
    "PostToolUse": HookEventKind.POST_TOOL_USE,
    "PermissionRequest": HookEventKind.PERMISSION_REQUEST,
    "Notification": HookEventKind.NOTIFICATION,
    "Stop": HookEventKind.STOP,
    "SubagentStop": HookEventKind.SUBAGENT_STOP,
    "PreCompact": HookEventKind.PRE_COMPACT,
}

STATUS_WAITING_FOR_APPROVAL = "waiting_for_approval"
STATUS_COMPACTING = "compacting"
STATUS_ENDED = "ended"


class HookDecodeError(ValueError):
    """Raised when an ingress message cannot be decoded into a HookEvent."""


class UnknownEventKindError(HookDecodeError):
    """Raised for well-formed messages carrying an event kind we don't know.

    These come from newer hook scripts and are acknowledged and ignored
    rather than rejected.
    """

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Unknown event kind: {kind}")


def normalize_event_kind(value: str) -> str:
    """Map native and snake_case names onto HookEventKind values."""
    if value in NATIVE_EVENT_NAMES:
        return NATIVE_EVENT_NAMES[value].value
    return value.strip().lower().replace("_", "-")


class HookEvent(BaseModel):
    """An immutable event received from a hook script."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    event_kind: HookEventKind = Field(
        ...,
        validation_alias=AliasChoices("event_kind", "event", "hook_event_name"),
    )
    session_id: str = Field(..., min_length=1)
    cwd: str = ""
    tool_use_id: str | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_response: Any = None
    status: str | None = None
    prompt: str | None = None
    message: str | None = None
    pid: int | None = None
    tty: str | None = None
    transcript_path: str | None = None
    requires_approval: bool = False
    received_at: datetime = Field(default_factory=datetime.now)

    @field_validator("event_kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> Any:
        if isinstance(value, str):
            return normalize_event_kind(value)
        return value

    @property
    def expects_response(self) -> bool:
        """Whether the hook script is blocked waiting for a decision."""
        if self.event_kind == HookEventKind.PERMISSION_REQUEST:
            return True
        if self.event_kind == HookEventKind.PRE_TOOL_USE:
            return self.requires_approval or self.status == STATUS_WAITING_FOR_APPROVAL
        return False

    @property
    def is_termination(self) -> bool:
        """Whether this event ends the session."""
        return self.event_kind == HookEventKind.SESSION_END or self.status == STATUS_ENDED

    @property
    def is_compacting(self) -> bool:
        """Whether this event announces context compaction."""
        return self.event_kind == HookEventKind.PRE_COMPACT or self.status == STATUS_COMPACTING

    @property
    def is_status_only(self) -> bool:
        """Status updates don't end a compaction; real lifecycle events do."""
        return self.event_kind in (HookEventKind.SESSION_STATUS, HookEventKind.PRE_COMPACT)


def parse_hook_event(raw: bytes | str | dict) -> HookEvent:
    """Decode one ingress message.

    Args:
        raw: The message as received (bytes/str JSON) or an already decoded dict.

    Returns:
        The validated HookEvent.

    Raises:
        UnknownEventKindError: The message is well formed but its kind is unknown.
        HookDecodeError: The message is malformed or misses required fields.
    """
    if isinstance(raw, (bytes, str)):
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise HookDecodeError(f"Invalid JSON: {e}") from e
    else:
        data = raw

    if not isinstance(data, dict):
        raise HookDecodeError("Message must be a JSON object")

    kind = data.get("event_kind", data.get("event", data.get("hook_event_name")))
    if not kind or not isinstance(kind, str):
        raise HookDecodeError("Missing event kind")
    if not data.get("session_id"):
        raise HookDecodeError("Missing session_id")

    normalized = normalize_event_kind(kind)
    if normalized not in {k.value for k in HookEventKind}:
        raise UnknownEventKindError(kind)

    try:
        return HookEvent.model_validate(data)
    except ValidationError as e:
        raise HookDecodeError(f"Invalid event: {e.error_count()} validation error(s)") from e
