"""Internal session events.

Hook events are not the only thing that moves a session: interrupts found
in the transcript and permission outcomes produced by the broker flow
through the same state machine as these small event records.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from island_core.models.hook_event import HookEvent
from island_core.models.permission import PermissionOutcome


class InterruptDetected(BaseModel):
    """The user interrupted the assistant outside the hook instrumentation."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    received_at: datetime = Field(default_factory=datetime.now)


class PermissionResolved(BaseModel):
    """A pending permission was completed by the broker."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    tool_use_id: str
    outcome: PermissionOutcome
    reason: str | None = None
    received_at: datetime = Field(default_factory=datetime.now)


class PermissionDismissed(BaseModel):
    """The user dismissed a broken approval affordance."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    received_at: datetime = Field(default_factory=datetime.now)


SessionEvent = HookEvent | InterruptDetected | PermissionResolved | PermissionDismissed
