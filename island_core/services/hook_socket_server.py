"""HookSocketServer - Unix socket listener for hook script events.

Each hook invocation opens one connection and writes one newline-terminated
JSON object. Lifecycle events are acknowledged with ``{}`` straight away.
Approval-gated events keep the connection open: the request is registered
with the PermissionBroker and the decision is written back on the same
connection once the broker completes it.

Wire replies:
- ``{}`` for non-gated events (and unknown event kinds)
- ``{"decision": ..., "reason": ..., "outcome": ...}`` for gated events
- ``{"error": "decode_error", "message": ...}`` for malformed messages
- ``{"error": "duplicate_request", "tool_use_id": ...}`` for duplicates
"""

import json
import logging
import os
import select
import socket
import socketserver
import stat
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable
from typing import Any

from island_core.models.hook_event import (
    HookDecodeError,
    HookEvent,
    HookEventKind,
    UnknownEventKindError,
    parse_hook_event,
)
from island_core.services.permission_broker import (
    Completion,
    DuplicateRequestError,
    PendingPermission,
    PermissionBroker,
)

logger = logging.getLogger(__name__)

# Upper bound on remembered pre-tool-use ids
MAX_CACHED_TOOL_USE_IDS = 1000


def _cache_key(session_id: str, tool_name: str | None, tool_input: dict | None) -> tuple:
    canonical = json.dumps(tool_input or {}, sort_keys=True, default=str)
    return (session_id, tool_name or "", canonical)


class ToolUseIdCache:
    """Remembers tool-use ids announced by pre-tool-use events.

    The assistant's permission-request hook doesn't carry the tool-use id,
    so it is recovered from the preceding pre-tool-use event for the same
    session, tool and input.
    """

    def __init__(self, max_entries: int = MAX_CACHED_TOOL_USE_IDS):
        self._max_entries = max_entries
        self._lock = threading.Lock()
        self._ids: dict[tuple, deque[str]] = {}
        self._count = 0

    def remember(self, event: HookEvent) -> None:
        """Record the id of a pre-tool-use event."""
        if not event.tool_use_id:
            return
        key = _cache_key(event.session_id, event.tool_name, event.tool_input)
        with self._lock:
            ids = self._ids.setdefault(key, deque())
            if event.tool_use_id in ids:
                return
            ids.append(event.tool_use_id)
            self._count += 1
            while self._count > self._max_entries:
                oldest_key = next(iter(self._ids))
                self._drop_one(oldest_key)

    def claim(self, event: HookEvent) -> str | None:
        """Take the oldest remembered id matching the event, if any."""
        key = _cache_key(event.session_id, event.tool_name, event.tool_input)
        with self._lock:
            ids = self._ids.get(key)
            if not ids:
                return None
            tool_use_id = ids[0]
            self._drop_one(key)
            return tool_use_id

    def forget(self, session_id: str, tool_use_id: str | None = None) -> None:
        """Drop one id, or every id of a session."""
        with self._lock:
            for key in [k for k in self._ids if k[0] == session_id]:
                ids = self._ids[key]
                before = len(ids)
                if tool_use_id is None:
                    ids.clear()
                elif tool_use_id in ids:
                    ids.remove(tool_use_id)
                self._count -= before - len(ids)
                if not ids:
                    del self._ids[key]

    def __len__(self) -> int:
        with self._lock:
            return self._count

    def _drop_one(self, key: tuple) -> None:
        """Drop the oldest id under a key. Caller holds the lock."""
        ids = self._ids[key]
        ids.popleft()
        self._count -= 1
        if not ids:
            del self._ids[key]


class _HookRequestHandler(socketserver.BaseRequestHandler):
    """Hands each accepted connection to the owning HookSocketServer."""

    def handle(self) -> None:
        self.server.hook_server.handle_connection(self.request)


class _ThreadingHookServer(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True
    block_on_close = False

    def __init__(self, socket_path: str, hook_server: "HookSocketServer"):
        self.hook_server = hook_server
        super().__init__(socket_path, _HookRequestHandler)

    def handle_error(self, request, client_address) -> None:
        logger.exception("[HookSocket] Unhandled error on connection")


class HookSocketServer:
    """Accepts hook connections and routes them to the coordinator and broker.

    One daemon thread per connection; a connection waiting for a decision
    holds no session lock, so it never stalls other sessions.
    """

    def __init__(
        self,
        socket_path: str,
        broker: PermissionBroker,
        dispatch: Callable[[HookEvent], Any],
        max_message_bytes: int = 1024 * 1024,
        read_timeout: float = 5.0,
        hangup_poll_interval: float = 0.25,
    ):
        """Initialize the server.

        Args:
            socket_path: Filesystem path of the Unix socket.
            broker: Broker that owns pending permissions.
            dispatch: Called with every decoded event (the session coordinator).
            max_message_bytes: Largest accepted message.
            read_timeout: Seconds allowed for a client to deliver its message.
            hangup_poll_interval: How often a waiting connection checks for peer hang-up.
        """
        self.socket_path = socket_path
        self._broker = broker
        self._dispatch = dispatch
        self._max_message_bytes = max_message_bytes
        self._read_timeout = read_timeout
        self._hangup_poll_interval = hangup_poll_interval

        self._tool_use_ids = ToolUseIdCache()
        self._server: _ThreadingHookServer | None = None
        self._thread: threading.Thread | None = None

        self._lock = threading.Lock()
        self._connection_count = 0
        self._decode_errors = 0
        self._waiting = 0
        self._started_at: float | None = None

    @property
    def is_running(self) -> bool:
        """Whether the server is accepting connections."""
        return self._server is not None

    def start(self) -> None:
        """Bind the socket and start accepting connections in a background thread."""
        if self._server is not None:
            return

        self._remove_stale_socket()
        self._server = _ThreadingHookServer(self.socket_path, self)
        os.chmod(self.socket_path, 0o600)

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="HookSocketServer",
        )
        self._thread.start()
        self._started_at = time.time()
        logger.info(f"[HookSocket] Listening on {self.socket_path}")

    def stop(self) -> None:
        """Stop accepting connections and remove the socket file."""
        server = self._server
        if server is None:
            return
        self._server = None

        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        self._remove_stale_socket()
        logger.info("[HookSocket] Stopped")

    def status(self) -> dict:
        """Get listener status."""
        with self._lock:
            return {
                "running": self.is_running,
                "socket_path": self.socket_path,
                "connections": self._connection_count,
                "decode_errors": self._decode_errors,
                "waiting": self._waiting,
                "cached_tool_use_ids": len(self._tool_use_ids),
                "uptime": (time.time() - self._started_at) if self._started_at else None,
            }

    def handle_connection(self, conn: socket.socket) -> None:
        """Serve one hook connection from start to close."""
        with self._lock:
            self._connection_count += 1

        conn.settimeout(self._read_timeout)
        try:
            raw, write_closed = self._read_message(conn)
            event = parse_hook_event(raw)
        except UnknownEventKindError as e:
            logger.debug(f"[HookSocket] Ignoring unknown event kind {e.kind!r}")
            self._send(conn, {})
            return
        except HookDecodeError as e:
            with self._lock:
                self._decode_errors += 1
            logger.warning(f"[HookSocket] Rejected message: {e}")
            self._send(conn, {"error": "decode_error", "message": str(e)})
            return

        event = self._correlate(event)
        if event.expects_response:
            self._handle_gated(conn, event, write_closed)
            return

        self._dispatch_safely(event)
        self._send(conn, {})

    def _read_message(self, conn: socket.socket) -> tuple[bytes, bool]:
        """Read one newline-terminated message (EOF also terminates it).

        Returns:
            The message and whether the client already shut down its write side.
        """
        buffer = b""
        write_closed = False
        try:
            while b"\n" not in buffer:
                chunk = conn.recv(65536)
                if not chunk:
                    write_closed = True
                    break
                buffer += chunk
                if len(buffer) > self._max_message_bytes:
                    raise HookDecodeError(
                        f"Message exceeds {self._max_message_bytes} bytes"
                    )
        except TimeoutError as e:
            raise HookDecodeError("Timed out waiting for message") from e

        message = buffer.split(b"\n", 1)[0].strip()
        if len(message) > self._max_message_bytes:
            raise HookDecodeError(f"Message exceeds {self._max_message_bytes} bytes")
        if not message:
            raise HookDecodeError("Empty message")
        return message, write_closed

    def _correlate(self, event: HookEvent) -> HookEvent:
        """Maintain the tool-use id cache and fill in missing ids."""
        kind = event.event_kind
        if kind == HookEventKind.PRE_TOOL_USE:
            self._tool_use_ids.remember(event)
        elif kind == HookEventKind.POST_TOOL_USE and event.tool_use_id:
            self._tool_use_ids.forget(event.session_id, event.tool_use_id)
        elif kind == HookEventKind.STOP or event.is_termination:
            self._tool_use_ids.forget(event.session_id)

        if event.expects_response and not event.tool_use_id:
            tool_use_id = self._tool_use_ids.claim(event)
            if tool_use_id is None:
                tool_use_id = f"permission-{uuid.uuid4().hex[:12]}"
                logger.debug(
                    f"[HookSocket] No cached tool_use_id for {event.tool_name}, "
                    f"using {tool_use_id}"
                )
            event = event.model_copy(update={"tool_use_id": tool_use_id})
        return event

    def _handle_gated(self, conn: socket.socket, event: HookEvent, write_closed: bool) -> None:
        try:
            pending = self._broker.open(
                tool_use_id=event.tool_use_id,
                session_id=event.session_id,
                tool_name=event.tool_name or "",
                tool_input=event.tool_input,
            )
        except DuplicateRequestError as e:
            logger.warning(f"[HookSocket] {e}")
            self._send(conn, {"error": "duplicate_request", "tool_use_id": e.tool_use_id})
            return

        if not self._dispatch_safely(event):
            # The UI never saw the request; don't keep the hook script waiting
            self._broker.cancel(pending.tool_use_id)

        with self._lock:
            self._waiting += 1
        try:
            completion = self._await_completion(conn, pending, write_closed)
        finally:
            with self._lock:
                self._waiting -= 1

        if completion is None:
            late = pending.token.completion
            if late is None or late.outcome.is_decision:
                self._broker.fail_transport(pending.session_id, pending.tool_use_id)
            return

        if not self._send(conn, completion.to_wire()) and completion.outcome.is_decision:
            self._broker.fail_transport(pending.session_id, pending.tool_use_id)

    def _await_completion(
        self, conn: socket.socket, pending: PendingPermission, write_closed: bool
    ) -> Completion | None:
        """Wait for the token, watching for peer hang-up.

        Returns:
            The completion, or None if the client went away first.
        """
        while True:
            completion = pending.token.wait(self._hangup_poll_interval)
            if completion is not None:
                return completion
            if self._peer_closed(conn, write_closed):
                logger.warning(
                    f"[HookSocket] Client for {pending.tool_use_id[:12]} "
                    "hung up before a decision"
                )
                return None

    @staticmethod
    def _peer_closed(conn: socket.socket, write_closed: bool = False) -> bool:
        """Whether the client is gone.

        A half-closed client reads as EOF for as long as it waits, so only
        POLLHUP/POLLERR count as a hang-up for it.
        """
        try:
            poller = select.poll()
            poller.register(conn, select.POLLIN | select.POLLHUP | select.POLLERR)
            ready = poller.poll(0)
            if not ready:
                return False
            mask = ready[0][1]
            if mask & (select.POLLHUP | select.POLLERR | select.POLLNVAL):
                return True
            if write_closed:
                return False
            return conn.recv(1, socket.MSG_PEEK) == b""
        except (OSError, ValueError):
            return True

    def _dispatch_safely(self, event: HookEvent) -> bool:
        try:
            self._dispatch(event)
        except Exception:
            logger.exception(
                f"[HookSocket] Dispatch failed for {event.event_kind.value} "
                f"(session {event.session_id[:8]})"
            )
            return False
        return True

    @staticmethod
    def _send(conn: socket.socket, payload: dict) -> bool:
        try:
            conn.sendall(json.dumps(payload).encode("utf-8") + b"\n")
        except OSError as e:
            logger.debug(f"[HookSocket] Reply write failed: {e}")
            return False
        return True

    def _remove_stale_socket(self) -> None:
        try:
            mode = os.lstat(self.socket_path).st_mode
        except FileNotFoundError:
            return
        if not stat.S_ISSOCK(mode):
            raise OSError(f"{self.socket_path} exists and is not a socket")
        os.unlink(self.socket_path)
        logger.debug(f"[HookSocket] Removed stale socket {self.socket_path}")
