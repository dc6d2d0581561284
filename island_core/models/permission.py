"""Permission outcomes shared by the broker, the state machine and the wire."""

from enum import Enum


class PermissionOutcome(str, Enum):
    """How a pending permission request was completed.

    Every pending request completes exactly once with one of these values.
    The first three are operator decisions and travel back to the hook
    script; the last three carry no decision.
    """

    ALLOW = "allow"
    """The operator approved the tool invocation."""

    DENY = "deny"
    """The operator rejected the tool invocation (optional reason)."""

    DENY_WITH_INSTRUCTIONS = "deny_with_instructions"
    """The operator rejected and told the assistant what to do instead."""

    FAILED = "failed"
    """The requesting connection died before a decision could be delivered."""

    TIMED_OUT = "timed_out"
    """No decision arrived within the permission timeout."""

    CANCELED = "canceled"
    """The request became moot (stop, post-tool-use, archive, session end)."""

    @property
    def is_decision(self) -> bool:
        """True for outcomes produced by an operator decision."""
        return self in (
            PermissionOutcome.ALLOW,
            PermissionOutcome.DENY,
            PermissionOutcome.DENY_WITH_INSTRUCTIONS,
        )

    @property
    def is_broken(self) -> bool:
        """True for outcomes the UI must show as a broken approval affordance."""
        return self in (PermissionOutcome.FAILED, PermissionOutcome.TIMED_OUT)

    @property
    def wire_decision(self) -> str | None:
        """The decision string written back to the hook script, if any."""
        return self.value if self.is_decision else None
