"""SessionRegistry - owns the live sessions and publishes snapshots.

Events for one session are applied strictly one at a time under that
session's lock; different sessions proceed in parallel. After every
accepted change the registry publishes a complete, immutable
RegistrySnapshot through the EventBus.

Snapshots are built while the change is applied but delivered only after
every registry lock is released, so subscribers are free to read the
registry or feed it new events from their callbacks.
"""

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from island_core.models.session import RegistrySnapshot, SessionPhase, SessionState
from island_core.models.session_event import SessionEvent
from island_core.services.event_bus import SESSION_REMOVED, SESSIONS_UPDATED, Event, EventBus
from island_core.services.session_state_machine import SessionStateMachine, TransitionResult

logger = logging.getLogger(__name__)


class SessionNotFoundError(LookupError):
    """Raised when looking up a session that is not live."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionRegistry:
    """Single source of truth for live session state.

    Only ``process()`` and ``archive()`` change sessions, and both go through
    the per-session lock. Readers get frozen SessionState objects and never
    observe a partially applied event.
    """

    def __init__(
        self,
        event_bus: EventBus,
        state_machine: SessionStateMachine | None = None,
    ):
        """Initialize the registry.

        Args:
            event_bus: Bus used to publish snapshots.
            state_machine: Transition function (a default one is created if omitted).
        """
        self._event_bus = event_bus
        self._machine = state_machine or SessionStateMachine()

        # Guards sessions, version and the outbox together
        self._sessions: dict[str, SessionState] = {}
        self._sessions_lock = threading.Lock()
        self._version = 0
        self._outbox: deque[tuple[RegistrySnapshot, str | None]] = deque()
        self._delivering = False

        # Per-session locks serialize mutation of one session only; entries
        # exist only while a session is live or being changed
        self._session_locks: dict[str, threading.Lock] = {}
        self._locks_lock = threading.Lock()

    @contextmanager
    def _session_guard(self, session_id: str) -> Iterator[None]:
        """Hold the session's lock, dropping the entry once the session is gone."""
        while True:
            with self._locks_lock:
                lock = self._session_locks.setdefault(session_id, threading.Lock())
            lock.acquire()
            with self._locks_lock:
                if self._session_locks.get(session_id) is lock:
                    break
            # Retired while we waited; take the current one instead
            lock.release()

        try:
            yield
        finally:
            with self._sessions_lock:
                live = session_id in self._sessions
            if not live:
                with self._locks_lock:
                    del self._session_locks[session_id]
            lock.release()

    def process(self, event: SessionEvent) -> TransitionResult:
        """Apply one event to its session and publish the result.

        Args:
            event: Hook or internal event.

        Returns:
            The TransitionResult from the state machine.
        """
        session_id = event.session_id
        with self._session_guard(session_id):
            with self._sessions_lock:
                current = self._sessions.get(session_id)

            result = self._machine.apply(current, event)
            if result.ignored:
                return result

            with self._sessions_lock:
                if result.state is None:
                    self._sessions.pop(session_id, None)
                else:
                    self._sessions[session_id] = result.state
                self._stage_snapshot(removed=session_id if result.removed else None)

            if result.from_phase != result.to_phase:
                logger.info(
                    f"[Registry] Session {session_id[:8]}: "
                    f"{result.from_phase.value if result.from_phase else 'new'} -> "
                    f"{result.to_phase.value if result.to_phase else 'none'}"
                )

        self._deliver()
        return result

    def archive(self, session_id: str) -> SessionState:
        """Remove a session without an ended event (user dismissal).

        Returns:
            The last state of the archived session.

        Raises:
            SessionNotFoundError: The session is not live.
        """
        with self._session_guard(session_id):
            with self._sessions_lock:
                state = self._sessions.pop(session_id, None)
                if state is not None:
                    self._stage_snapshot(removed=session_id)
            if state is None:
                raise SessionNotFoundError(session_id)

            logger.info(f"[Registry] Archived session {session_id[:8]}")

        self._deliver()
        return state

    def lookup(self, session_id: str) -> SessionState:
        """Get the current state of a session.

        Raises:
            SessionNotFoundError: The session is not live.
        """
        with self._sessions_lock:
            state = self._sessions.get(session_id)
        if state is None:
            raise SessionNotFoundError(session_id)
        return state

    def get(self, session_id: str) -> SessionState | None:
        """Get a session, or None if it is not live."""
        with self._sessions_lock:
            return self._sessions.get(session_id)

    def list_sessions(self) -> list[SessionState]:
        """List live sessions, oldest first."""
        with self._sessions_lock:
            sessions = list(self._sessions.values())
        return sorted(sessions, key=lambda s: s.created_at)

    def pending_sessions(self) -> list[SessionState]:
        """List sessions that need the user's attention."""
        return [s for s in self.list_sessions() if s.needs_attention]

    def snapshot(self) -> RegistrySnapshot:
        """Get a complete, consistent snapshot of all sessions."""
        with self._sessions_lock:
            return self._build_snapshot()

    def subscribe(self, callback: Callable[[RegistrySnapshot], None]) -> Callable[[], None]:
        """Subscribe to snapshot updates.

        Callbacks run without any registry lock held and may call back into
        the registry. Snapshots produced from inside a callback are delivered
        after it returns, still in version order.

        Args:
            callback: Called with every published RegistrySnapshot.

        Returns:
            A function that cancels the subscription.
        """

        def on_event(event: Event) -> None:
            callback(RegistrySnapshot.model_validate(event.data))

        self._event_bus.subscribe(SESSIONS_UPDATED, on_event)
        return lambda: self._event_bus.unsubscribe(SESSIONS_UPDATED, on_event)

    def status(self) -> dict:
        """Get registry status."""
        sessions = self.list_sessions()
        phases: dict[str, int] = {}
        for session in sessions:
            phases[session.phase.value] = phases.get(session.phase.value, 0) + 1
        with self._sessions_lock:
            version = self._version
        return {"sessions": len(sessions), "version": version, "phases": phases}

    def _build_snapshot(self) -> RegistrySnapshot:
        """Caller holds _sessions_lock."""
        sessions = sorted(self._sessions.values(), key=lambda s: s.created_at)
        return RegistrySnapshot(version=self._version, sessions=tuple(sessions))

    def _stage_snapshot(self, removed: str | None = None) -> None:
        """Bump the version and queue its snapshot. Caller holds _sessions_lock."""
        self._version += 1
        self._outbox.append((self._build_snapshot(), removed))

    def _deliver(self) -> None:
        """Publish queued snapshots in version order, one deliverer at a time.

        Called with no registry lock held. A thread that finds another one
        delivering (including itself, from inside a callback) leaves its
        snapshot in the outbox for that deliverer.
        """
        while True:
            with self._sessions_lock:
                if self._delivering or not self._outbox:
                    return
                self._delivering = True
                snapshot, removed = self._outbox.popleft()

            try:
                if removed is not None:
                    self._event_bus.emit(
                        SESSION_REMOVED,
                        {
                            "session_id": removed,
                            "phase": SessionPhase.ENDED.value,
                            "version": snapshot.version,
                        },
                    )
                self._event_bus.emit(SESSIONS_UPDATED, snapshot.model_dump(mode="json"))
            finally:
                with self._sessions_lock:
                    self._delivering = False
