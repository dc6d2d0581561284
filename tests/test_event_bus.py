"""Tests for EventBus."""

import threading
import time

import pytest

from island_core.services.event_bus import (
    SESSIONS_UPDATED,
    Event,
    EventBus,
    get_event_bus,
    reset_event_bus,
)


class TestEvent:
    """Tests for Event."""

    def test_to_sse(self):
        """SSE formatting includes type, data and id."""
        sse = Event(event_type=SESSIONS_UPDATED, data={"version": 1}, id="7").to_sse()

        assert "event: sessions_updated" in sse
        assert 'data: {"version": 1}' in sse
        assert "id: 7" in sse
        assert sse.endswith("\n\n")

    def test_to_sse_serializes_unknown_types(self):
        """Non-JSON values are stringified rather than failing."""
        sse = Event(event_type="x", data={"when": object}).to_sse()
        assert "data: " in sse


class TestSubscription:
    """Tests for callback subscribers."""

    def test_subscribe_specific_and_wildcard(self, event_bus):
        """Typed and wildcard subscribers both receive matching events."""
        typed, wildcard = [], []
        event_bus.subscribe(SESSIONS_UPDATED, typed.append)
        event_bus.subscribe("*", wildcard.append)

        event_bus.emit(SESSIONS_UPDATED, {"n": 1})
        event_bus.emit("other", {"n": 2})

        assert [e.data["n"] for e in typed] == [1]
        assert [e.data["n"] for e in wildcard] == [1, 2]

    def test_unsubscribe(self, event_bus):
        """Unsubscribed callbacks stop receiving events."""
        events = []
        event_bus.subscribe("test", events.append)
        event_bus.unsubscribe("test", events.append)
        event_bus.emit("test", {})

        assert events == []

    def test_failing_subscriber_isolated(self, event_bus):
        """A raising callback doesn't stop the others."""
        events = []

        def bad(event):
            raise RuntimeError("boom")

        event_bus.subscribe("test", bad)
        event_bus.subscribe("test", events.append)
        event_bus.emit("test", {})

        assert len(events) == 1

    def test_callback_may_emit(self, event_bus):
        """Callbacks run outside the bus lock, so they can emit again."""
        seen = []

        def chain(event):
            seen.append(event.event_type)
            if event.event_type == "first":
                event_bus.emit("second", {})

        event_bus.subscribe("*", chain)
        event_bus.emit("first", {})

        assert seen == ["first", "second"]

    def test_sequential_ids(self, event_bus):
        """Events get increasing ids."""
        ids = [int(event_bus.emit("test", {}).id) for _ in range(3)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 3


class TestBuffer:
    """Tests for the replay buffer."""

    def test_buffer_keeps_latest(self, event_bus):
        """The buffer holds only the most recent events."""
        for i in range(15):
            event_bus.emit("test", {"n": i})

        events = event_bus.get_buffered_events()
        assert len(events) == 10
        assert events[0].data["n"] == 5

    def test_filter_since_id_and_type(self, event_bus):
        """Buffered events can be filtered."""
        first = event_bus.emit("a", {})
        event_bus.emit("b", {})
        event_bus.emit("a", {})

        assert len(event_bus.get_buffered_events(since_id=first.id)) == 2
        assert len(event_bus.get_buffered_events(event_type="a")) == 2
        assert len(event_bus.get_buffered_events(since_id="garbage")) == 3

    def test_clear_buffer(self, event_bus):
        """clear_buffer() empties the buffer."""
        event_bus.emit("test", {})
        event_bus.clear_buffer()
        assert event_bus.get_buffered_events() == []


class TestSSEStream:
    """Tests for SSE streaming."""

    def test_stream_replays_buffer(self, event_bus):
        """New clients first get the buffered events."""
        event_bus.emit("test", {"n": 1})
        stream = event_bus.get_sse_stream(include_buffer=True, timeout=0.1)

        assert '"n": 1' in next(stream)

    def test_stream_receives_live_events(self, event_bus):
        """Events emitted later are streamed."""
        stream = event_bus.get_sse_stream(include_buffer=False, timeout=0.1)
        threading.Timer(0.05, event_bus.emit, args=("live", {"n": 2})).start()

        for message in stream:
            if not message.startswith(":"):
                assert "event: live" in message
                break

    def test_keep_alive(self, event_bus):
        """Idle streams send keep-alive comments."""
        stream = event_bus.get_sse_stream(include_buffer=False, timeout=0.05)
        assert next(stream) == ": keep-alive\n\n"

    def test_closing_stream_unregisters(self, event_bus):
        """Closed streams stop counting as subscribers."""
        stream = event_bus.get_sse_stream(include_buffer=False, timeout=0.05)
        next(stream)
        assert event_bus.subscriber_count == 1

        stream.close()
        assert event_bus.subscriber_count == 0

    def test_slow_client_dropped(self):
        """A client whose queue is full is dropped."""
        bus = EventBus(buffer_size=5, queue_size=2)
        stream = bus.get_sse_stream(include_buffer=False, timeout=0.05)
        next(stream)

        for i in range(5):
            bus.emit("test", {"n": i})

        assert bus.subscriber_count == 0

    def test_dropped_client_stream_ends(self):
        """A dropped client's stream finishes so the browser reconnects."""
        bus = EventBus(buffer_size=5, queue_size=1)
        stream = bus.get_sse_stream(include_buffer=False, timeout=0.05)
        next(stream)

        bus.emit("test", {"n": 1})
        bus.emit("test", {"n": 2})

        with pytest.raises(StopIteration):
            next(stream)


class TestGlobalEventBus:
    """Tests for the module singleton."""

    def test_singleton(self):
        """get_event_bus returns one instance until reset."""
        bus = get_event_bus()
        assert get_event_bus() is bus

        reset_event_bus()
        assert get_event_bus() is not bus


class TestThreadSafety:
    """Tests for concurrent use."""

    def test_concurrent_emit(self, event_bus):
        """Concurrent emits are all delivered."""
        received = []
        lock = threading.Lock()

        def record(event):
            with lock:
                received.append(event)

        event_bus.subscribe("*", record)

        def emit_many():
            for i in range(100):
                event_bus.emit("test", {"n": i})

        threads = [threading.Thread(target=emit_many) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(received) == 500

    def test_stream_survives_concurrent_emit(self, event_bus):
        """A stream keeps working while other threads emit."""
        stream = event_bus.get_sse_stream(include_buffer=False, timeout=0.5)
        next_message = []

        def consume():
            for message in stream:
                if not message.startswith(":"):
                    next_message.append(message)
                    break

        consumer = threading.Thread(target=consume)
        consumer.start()
        time.sleep(0.05)
        event_bus.emit("test", {"n": 1})
        consumer.join(timeout=2)

        assert next_message
