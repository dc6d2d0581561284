"""PermissionBroker - correlates approval decisions with waiting hook connections.

Every approval-gated hook connection registers a PendingPermission keyed by
its tool-use id and then blocks on the entry's CompletionToken. Whoever
completes the token first wins: an operator decision, a cancellation
(stop/post-tool-use/archive), a timeout, or a transport failure. Later
completions for the same id are no-ops.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from island_core.models.permission import PermissionOutcome

logger = logging.getLogger(__name__)


class BrokerError(Exception):
    """Base class for permission broker errors."""


class DuplicateRequestError(BrokerError):
    """Raised when a tool-use id is already pending."""

    def __init__(self, tool_use_id: str):
        self.tool_use_id = tool_use_id
        super().__init__(f"Permission already pending for tool_use_id {tool_use_id}")


class UnknownRequestError(BrokerError):
    """Raised when resolving an id that is not pending.

    The id was already resolved, canceled, timed out, or never opened.
    Timing races make this routine; callers should tolerate it.
    """

    def __init__(self, tool_use_id: str):
        self.tool_use_id = tool_use_id
        super().__init__(f"No pending permission for tool_use_id {tool_use_id}")


@dataclass(frozen=True)
class Completion:
    """The single result of a pending permission."""

    outcome: PermissionOutcome
    reason: str | None = None

    def to_wire(self) -> dict[str, Any]:
        """Reply written to the waiting hook script."""
        return {
            "decision": self.outcome.wire_decision,
            "reason": self.reason,
            "outcome": self.outcome.value,
        }


class CompletionToken:
    """Single-use completion handle.

    ``complete()`` succeeds exactly once; every later call returns False
    and leaves the first result untouched.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._completion: Completion | None = None

    def complete(self, outcome: PermissionOutcome, reason: str | None = None) -> bool:
        """Complete the token.

        Returns:
            True if this call completed it, False if it was already completed.
        """
        with self._lock:
            if self._completion is not None:
                return False
            self._completion = Completion(outcome=outcome, reason=reason)
        self._done.set()
        return True

    def wait(self, timeout: float | None = None) -> Completion | None:
        """Block until completed; returns None if the wait timed out."""
        if self._done.wait(timeout):
            return self._completion
        return None

    @property
    def done(self) -> bool:
        """Whether the token has been completed."""
        return self._done.is_set()

    @property
    def completion(self) -> Completion | None:
        """The completion, if any."""
        return self._completion


@dataclass
class PendingPermission:
    """An approval request waiting for a decision."""

    tool_use_id: str
    session_id: str
    tool_name: str
    tool_input: dict[str, Any]
    opened_at: float = field(default_factory=time.time)
    token: CompletionToken = field(default_factory=CompletionToken)
    _timer: threading.Timer | None = field(default=None, repr=False)


class PermissionBroker:
    """Owns the map from tool-use id to pending permission.

    A single lock linearizes decisions, cancellations, timeouts and
    transport failures so each entry completes exactly once.
    """

    def __init__(
        self,
        timeout: float | None = None,
        on_timeout: Callable[[PendingPermission], None] | None = None,
        on_failure: Callable[[str, str], None] | None = None,
    ):
        """Initialize the broker.

        Args:
            timeout: Seconds before an unanswered request times out (None = never).
            on_timeout: Called with the entry after it timed out.
            on_failure: Called with (session_id, tool_use_id) on transport failure.
        """
        self._timeout = timeout
        self._on_timeout = on_timeout
        self._on_failure = on_failure
        self._lock = threading.Lock()
        self._pending: dict[str, PendingPermission] = {}

        # Counters for status reporting
        self._opened = 0
        self._completed: dict[PermissionOutcome, int] = {}

    def set_callbacks(
        self,
        on_timeout: Callable[[PendingPermission], None] | None = None,
        on_failure: Callable[[str, str], None] | None = None,
    ) -> None:
        """Set the timeout/failure callbacks (for late binding)."""
        self._on_timeout = on_timeout
        self._on_failure = on_failure

    def open(
        self,
        tool_use_id: str,
        session_id: str,
        tool_name: str = "",
        tool_input: dict[str, Any] | None = None,
    ) -> PendingPermission:
        """Register a pending permission.

        Args:
            tool_use_id: The tool invocation being gated.
            session_id: Session the request belongs to.
            tool_name: Tool name, for display.
            tool_input: Tool input, for display.

        Returns:
            The new PendingPermission; its token completes exactly once.

        Raises:
            DuplicateRequestError: The id is already pending (the original stays intact).
        """
        with self._lock:
            if tool_use_id in self._pending:
                raise DuplicateRequestError(tool_use_id)

            pending = PendingPermission(
                tool_use_id=tool_use_id,
                session_id=session_id,
                tool_name=tool_name,
                tool_input=tool_input or {},
            )
            if self._timeout is not None:
                timer = threading.Timer(self._timeout, self._expire, args=(pending,))
                timer.daemon = True
                pending._timer = timer
            self._pending[tool_use_id] = pending
            self._opened += 1

        if pending._timer is not None:
            pending._timer.start()

        logger.info(
            f"[Broker] Opened {tool_use_id[:12]} ({tool_name}) for session {session_id[:8]}"
        )
        return pending

    def resolve(
        self,
        tool_use_id: str,
        outcome: PermissionOutcome,
        reason: str | None = None,
    ) -> PendingPermission:
        """Complete a pending permission with an operator decision.

        Args:
            tool_use_id: The pending request.
            outcome: allow, deny or deny_with_instructions.
            reason: Deny reason or instructions for the assistant.

        Returns:
            The completed entry.

        Raises:
            UnknownRequestError: The id is not pending.
            ValueError: The outcome is not an operator decision.
        """
        if not outcome.is_decision:
            raise ValueError(f"{outcome.value} is not an operator decision")

        with self._lock:
            pending = self._take(tool_use_id)
            if pending is None:
                raise UnknownRequestError(tool_use_id)
            self._finish(pending, outcome, reason)

        logger.info(f"[Broker] Resolved {tool_use_id[:12]} as {outcome.value}")
        return pending

    def try_resolve(
        self,
        tool_use_id: str,
        outcome: PermissionOutcome,
        reason: str | None = None,
    ) -> bool:
        """Like resolve(), but an id that is no longer pending is a silent no-op.

        Returns:
            True if this call completed the entry.
        """
        try:
            self.resolve(tool_use_id, outcome, reason)
        except UnknownRequestError:
            logger.debug(f"[Broker] Late decision for {tool_use_id[:12]} ignored")
            return False
        return True

    def cancel(self, tool_use_id: str) -> bool:
        """Cancel a pending permission with a neutral "no UI decision".

        Returns:
            True if an entry was canceled, False if it was not pending.
        """
        with self._lock:
            pending = self._take(tool_use_id)
            if pending is None:
                return False
            self._finish(pending, PermissionOutcome.CANCELED)

        logger.info(f"[Broker] Canceled {tool_use_id[:12]}")
        return True

    def cancel_all(self, session_id: str) -> list[str]:
        """Cancel every pending permission of a session.

        Returns:
            The canceled tool-use ids.
        """
        with self._lock:
            ids = [p.tool_use_id for p in self._pending.values() if p.session_id == session_id]
            for tool_use_id in ids:
                pending = self._take(tool_use_id)
                if pending is not None:
                    self._finish(pending, PermissionOutcome.CANCELED)

        if ids:
            logger.info(f"[Broker] Canceled {len(ids)} pending permission(s) for {session_id[:8]}")
        return ids

    def fail_transport(self, session_id: str, tool_use_id: str) -> bool:
        """Record that the requesting connection died.

        Completes the entry as failed if it is still pending, then notifies
        the failure callback so the UI can show the approval as broken.
        The callback also fires when a decision was made but could not be
        written back.

        Returns:
            True if a still-pending entry was completed here.
        """
        with self._lock:
            pending = self._take(tool_use_id)
            if pending is not None:
                self._finish(pending, PermissionOutcome.FAILED)

        logger.warning(
            f"[Broker] Transport failure for {tool_use_id[:12]} (session {session_id[:8]})"
        )
        if self._on_failure:
            try:
                self._on_failure(session_id, tool_use_id)
            except Exception:
                logger.exception("[Broker] Failure callback raised")
        return pending is not None

    def get(self, tool_use_id: str) -> PendingPermission | None:
        """Get a pending permission by id."""
        with self._lock:
            return self._pending.get(tool_use_id)

    def is_pending(self, tool_use_id: str) -> bool:
        """Whether the id is currently pending."""
        with self._lock:
            return tool_use_id in self._pending

    def pending_for_session(self, session_id: str) -> list[PendingPermission]:
        """List the pending permissions of a session, oldest first."""
        with self._lock:
            pending = [p for p in self._pending.values() if p.session_id == session_id]
        return sorted(pending, key=lambda p: p.opened_at)

    def shutdown(self) -> None:
        """Cancel everything so no hook script stays blocked."""
        with self._lock:
            for tool_use_id in list(self._pending):
                pending = self._take(tool_use_id)
                if pending is not None:
                    self._finish(pending, PermissionOutcome.CANCELED)

    def status(self) -> dict:
        """Get broker status.

        Returns:
            Status dictionary with pending and completion counts.
        """
        with self._lock:
            return {
                "pending": len(self._pending),
                "opened": self._opened,
                "completed": {k.value: v for k, v in self._completed.items()},
                "timeout": self._timeout,
            }

    def _take(self, tool_use_id: str) -> PendingPermission | None:
        """Remove and return an entry. Caller holds the lock."""
        pending = self._pending.pop(tool_use_id, None)
        if pending is not None and pending._timer is not None:
            pending._timer.cancel()
        return pending

    def _finish(
        self, pending: PendingPermission, outcome: PermissionOutcome, reason: str | None = None
    ) -> None:
        """Complete a removed entry. Caller holds the lock."""
        if pending.token.complete(outcome, reason):
            self._completed[outcome] = self._completed.get(outcome, 0) + 1

    def _expire(self, pending: PendingPermission) -> None:
        """Timer callback: time out the entry if it is still the pending one."""
        with self._lock:
            if self._pending.get(pending.tool_use_id) is not pending:
                return
            self._take(pending.tool_use_id)
            self._finish(pending, PermissionOutcome.TIMED_OUT)

        logger.warning(
            f"[Broker] Permission {pending.tool_use_id[:12]} timed out "
            f"after {self._timeout}s (session {pending.session_id[:8]})"
        )
        if self._on_timeout:
            try:
                self._on_timeout(pending)
            except Exception:
                logger.exception("[Broker] Timeout callback raised")
