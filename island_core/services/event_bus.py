"""EventBus - fans registry snapshots out to subscribers and SSE clients.

Events: sessions_updated, session_removed

Every sessions_updated event carries a complete snapshot, so a client that
falls behind loses nothing by reconnecting: its stream is ended and the
replay buffer brings it back up to date.
"""

import itertools
import json
import logging
import queue
import threading
from collections import deque
from collections.abc import Callable, Generator
from dataclasses import dataclass, field
from datetime import datetime

logger = logging.getLogger(__name__)

SESSIONS_UPDATED = "sessions_updated"
SESSION_REMOVED = "session_removed"

KEEP_ALIVE = ": keep-alive\n\n"


@dataclass
class Event:
    """An event to be broadcast via SSE."""

    event_type: str
    data: dict
    timestamp: datetime = field(default_factory=datetime.now)
    id: str | None = None

    def to_sse(self) -> str:
        """Format the event as an SSE message (blank-line terminated)."""
        fields = [("event", self.event_type), ("data", json.dumps(self.data, default=str))]
        if self.id:
            fields.append(("id", self.id))
        return "".join(f"{name}: {value}\n" for name, value in fields if value) + "\n"


class _SSEClient:
    """Bounded per-connection queue; marked dropped when it overflows."""

    def __init__(self, maxsize: int):
        self.queue: queue.Queue[Event] = queue.Queue(maxsize=maxsize)
        self.dropped = False


class EventBus:
    """Delivers events to in-process callbacks and streaming SSE clients.

    Callbacks run on the emitting thread after the bus lock is released, in
    emission order, and may emit again. SSE clients each get a bounded queue;
    a client that can't keep up is disconnected rather than slowing the
    publisher down.
    """

    def __init__(self, buffer_size: int = 20, queue_size: int = 100):
        """Initialize the EventBus.

        Args:
            buffer_size: Number of recent events replayed to new SSE clients.
            queue_size: Per-client queue bound; slow clients are dropped.
        """
        self._queue_size = queue_size
        self._buffer: deque[Event] = deque(maxlen=buffer_size)
        self._callbacks: dict[str, list[Callable[[Event], None]]] = {}
        self._clients: set[_SSEClient] = set()
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, callback: Callable[[Event], None]) -> None:
        """Register a callback for an event type ("*" for every type)."""
        with self._lock:
            self._callbacks.setdefault(event_type, []).append(callback)

    def unsubscribe(self, event_type: str, callback: Callable[[Event], None]) -> None:
        """Remove a callback; unknown callbacks are ignored."""
        with self._lock:
            callbacks = self._callbacks.get(event_type)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)

    def emit(self, event_type: str, data: dict) -> Event:
        """Publish an event.

        Args:
            event_type: The type of event (e.g., "sessions_updated").
            data: JSON-serializable payload.

        Returns:
            The created Event.
        """
        with self._lock:
            event = Event(event_type=event_type, data=data, id=str(next(self._ids)))
            self._buffer.append(event)
            callbacks = self._callbacks.get(event_type, []) + self._callbacks.get("*", [])

            for client in list(self._clients):
                try:
                    client.queue.put_nowait(event)
                except queue.Full:
                    client.dropped = True
                    self._clients.discard(client)
                    logger.warning("[EventBus] SSE client fell behind, disconnecting it")

        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(f"[EventBus] {event_type} subscriber raised")

        return event

    def get_sse_stream(
        self,
        include_buffer: bool = True,
        timeout: float = 30.0,
    ) -> Generator[str, None, None]:
        """Stream events as SSE messages until the client goes away.

        Args:
            include_buffer: Whether to replay buffered events first.
            timeout: Idle seconds before a keep-alive comment is sent.

        Yields:
            SSE-formatted strings.
        """
        client = _SSEClient(self._queue_size)
        with self._lock:
            self._clients.add(client)
            backlog = list(self._buffer) if include_buffer else []

        try:
            for event in backlog:
                yield event.to_sse()

            while not client.dropped:
                try:
                    yield client.queue.get(timeout=timeout).to_sse()
                except queue.Empty:
                    yield KEEP_ALIVE
        finally:
            with self._lock:
                self._clients.discard(client)

    def get_buffered_events(
        self, since_id: str | None = None, event_type: str | None = None
    ) -> list[Event]:
        """Return buffered events, oldest first.

        Args:
            since_id: Only events with a larger id (ignored if not numeric).
            event_type: Only events of this type.
        """
        with self._lock:
            events = list(self._buffer)

        if since_id and since_id.isdigit():
            events = [e for e in events if int(e.id) > int(since_id)]
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        return events

    def clear_buffer(self) -> None:
        """Forget the replay buffer."""
        with self._lock:
            self._buffer.clear()

    @property
    def subscriber_count(self) -> int:
        """Number of connected SSE clients."""
        with self._lock:
            return len(self._clients)


# Singleton instance for the application
_event_bus: EventBus | None = None


def get_event_bus(buffer_size: int = 20) -> EventBus:
    """Get the global EventBus instance.

    Args:
        buffer_size: Replay buffer size (only used on first call).
    """
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus(buffer_size=buffer_size)
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus (for testing)."""
    global _event_bus
    _event_bus = None
