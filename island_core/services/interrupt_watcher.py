"""Transcript interrupt watcher.

When the user interrupts the assistant from the terminal (Esc / Ctrl+C) no
hook fires; the only trace is a marker line appended to the session's JSONL
transcript. For every processing session we tail that transcript and raise
an interrupt when the marker shows up.

Each watched session gets one thread. A shared Watchdog observer wakes the
threads when their transcript changes, and a short poll interval covers
filesystems without change notifications.
"""

import json
import logging
import os
import re
import threading
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

INTERRUPT_MARKER = "[Request interrupted by user"


def encode_project_dir(cwd: str) -> str:
    """Encode a working directory the way the assistant names its project folders."""
    return re.sub(r"[^A-Za-z0-9-]", "-", cwd)


def transcript_path_for(session_id: str, cwd: str, projects_dir: str | Path) -> Path:
    """Derive the transcript path of a session from its working directory."""
    base = Path(projects_dir).expanduser()
    return base / encode_project_dir(cwd) / f"{session_id}.jsonl"


def _contains_marker(content) -> bool:
    if isinstance(content, str):
        return INTERRUPT_MARKER in content
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and _contains_marker(block.get("text", "")):
                return True
            if isinstance(block, str) and INTERRUPT_MARKER in block:
                return True
    return False


def is_interrupt_entry(line: str) -> bool:
    """Check whether a transcript line records a user interrupt.

    JSON lines must be user-role entries carrying the marker; lines that
    aren't JSON fall back to a plain substring check.
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return INTERRUPT_MARKER in line

    if not isinstance(data, dict) or data.get("type") != "user":
        return False

    message = data.get("message")
    if isinstance(message, dict):
        return _contains_marker(message.get("content"))
    return _contains_marker(message)


class TranscriptTail:
    """Incremental reader for an append-only file.

    Never trusts a long-lived handle: every read re-checks the path, so a
    truncated file is re-read from the start and a rotated (replaced) file
    is re-opened.
    """

    def __init__(self, path: Path):
        self.path = path
        self._file = None
        self._identity: tuple[int, int] | None = None
        self._offset = 0
        self._partial = b""
        # Existing content is history; a file created later is all new
        try:
            st = os.stat(path)
            self._initial = ((st.st_dev, st.st_ino), st.st_size)
        except FileNotFoundError:
            self._initial = None

    def _open(self) -> None:
        self.close()
        self._file = open(self.path, "rb")
        st = os.fstat(self._file.fileno())
        self._identity = (st.st_dev, st.st_ino)
        self._offset = 0
        if self._initial is not None and self._initial[0] == self._identity:
            self._offset = min(self._initial[1], st.st_size)
        self._initial = None
        self._file.seek(self._offset)
        self._partial = b""

    def close(self) -> None:
        """Close the underlying handle."""
        if self._file is not None:
            self._file.close()
            self._file = None

    def read_new_lines(self) -> list[str]:
        """Return complete lines appended since the last call."""
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            # Rotated away; pick up the replacement from its start
            self.close()
            self._identity = None
            self._initial = None
            return []

        if self._file is None:
            self._open()
        elif (st.st_dev, st.st_ino) != self._identity:
            logger.debug(f"[InterruptWatcher] {self.path.name} rotated, re-opening")
            self._open()
        elif st.st_size < self._offset:
            logger.debug(f"[InterruptWatcher] {self.path.name} truncated, re-reading")
            self._file.seek(0)
            self._offset = 0
            self._partial = b""

        data = self._file.read()
        self._offset = self._file.tell()
        if not data:
            return []

        chunks = (self._partial + data).split(b"\n")
        self._partial = chunks.pop()
        return [c.decode("utf-8", errors="replace") for c in chunks if c.strip()]


class TranscriptInterruptWatcher:
    """Watches one session's transcript and reports the first interrupt."""

    def __init__(
        self,
        session_id: str,
        path: Path,
        on_interrupt: Callable[[str], None],
        poll_interval: float = 0.5,
    ):
        self.session_id = session_id
        self.path = path
        self._on_interrupt = on_interrupt
        self._poll_interval = poll_interval
        self._tail = TranscriptTail(path)

        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        # Held while delivering; stop() takes it so no delivery starts afterwards
        self._deliver_lock = threading.RLock()
        self._cancelled = False
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"InterruptWatcher-{session_id[:8]}",
        )

    def start(self) -> None:
        """Start the watcher thread."""
        self._thread.start()

    def wake(self) -> None:
        """Ask the watcher to check the transcript now."""
        self._wake_event.set()

    def stop(self, timeout: float = 2.0) -> None:
        """Stop watching.

        Returns only once no interrupt for this watch can be delivered any
        more. Safe to call from the watcher's own callback.
        """
        with self._deliver_lock:
            self._cancelled = True
        self._stop_event.set()
        self._wake_event.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout=timeout)

    @property
    def is_running(self) -> bool:
        """Whether the watcher thread is alive."""
        return self._thread.is_alive()

    def _run(self) -> None:
        tail = self._tail
        logger.debug(f"[InterruptWatcher] Watching {self.path} for {self.session_id[:8]}")
        try:
            while not self._stop_event.is_set():
                try:
                    lines = tail.read_new_lines()
                except OSError as e:
                    logger.debug(f"[InterruptWatcher] Read failed for {self.path.name}: {e}")
                    lines = []

                if any(is_interrupt_entry(line) for line in lines):
                    self._deliver()
                    return

                self._wake_event.wait(self._poll_interval)
                self._wake_event.clear()
        except Exception:
            logger.exception(f"[InterruptWatcher] Watcher for {self.session_id[:8]} crashed")
        finally:
            tail.close()

    def _deliver(self) -> None:
        with self._deliver_lock:
            if self._cancelled:
                return
            self._cancelled = True
            logger.info(f"[InterruptWatcher] Interrupt detected for {self.session_id[:8]}")
            try:
                self._on_interrupt(self.session_id)
            except Exception:
                logger.exception("[InterruptWatcher] Interrupt callback raised")


class _TranscriptEventHandler(FileSystemEventHandler):
    """Watchdog handler that wakes one watcher on changes to its transcript."""

    def __init__(self, path: Path, wake: Callable[[], None]) -> None:
        super().__init__()
        self._path = os.fsdecode(path)
        self._wake = wake

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = {os.fsdecode(event.src_path), os.fsdecode(getattr(event, "dest_path", "") or "")}
        if self._path in paths:
            self._wake()


class InterruptWatcherManager:
    """Starts and stops transcript watchers, at most one per session."""

    def __init__(
        self,
        on_interrupt: Callable[[str], None] | None = None,
        projects_dir: str | Path = "~/.claude/projects",
        poll_interval: float = 0.5,
        use_observer: bool = True,
    ):
        """Initialize the manager.

        Args:
            on_interrupt: Called with the session id when an interrupt is found.
            projects_dir: Directory holding per-project transcript folders.
            poll_interval: Fallback polling interval in seconds.
            use_observer: Whether to use a Watchdog observer for change wake-ups.
        """
        self._on_interrupt = on_interrupt
        self._projects_dir = projects_dir
        self._poll_interval = poll_interval
        self._use_observer = use_observer

        self._lock = threading.Lock()
        self._watchers: dict[str, TranscriptInterruptWatcher] = {}
        self._handlers: dict[str, tuple[_TranscriptEventHandler, object]] = {}
        self._observer = None

    def set_on_interrupt(self, callback: Callable[[str], None]) -> None:
        """Set the interrupt callback (for late binding)."""
        self._on_interrupt = callback

    def start(self) -> None:
        """Start the shared Watchdog observer."""
        if not self._use_observer or self._observer is not None:
            return
        self._observer = Observer()
        self._observer.daemon = True
        self._observer.start()
        logger.info("[InterruptWatcher] Watchdog observer started")

    def stop(self) -> None:
        """Stop every watcher and the observer."""
        self.stop_all()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.info("[InterruptWatcher] Watchdog observer stopped")

    def transcript_path(self, session_id: str, cwd: str) -> Path:
        """Transcript path derived from the session's working directory."""
        return transcript_path_for(session_id, cwd, self._projects_dir)

    def start_watching(
        self, session_id: str, cwd: str, transcript_path: str | None = None
    ) -> bool:
        """Start watching a session's transcript.

        Args:
            session_id: Session to watch.
            cwd: Working directory (used to derive the transcript path).
            transcript_path: Explicit transcript path reported by the hooks.

        Returns:
            True if a new watch started, False if the session was already watched.
        """
        path = Path(transcript_path) if transcript_path else self.transcript_path(session_id, cwd)

        with self._lock:
            if session_id in self._watchers:
                return False

            watcher = TranscriptInterruptWatcher(
                session_id=session_id,
                path=path,
                on_interrupt=self._handle_interrupt,
                poll_interval=self._poll_interval,
            )
            self._watchers[session_id] = watcher
            self._schedule(session_id, watcher)

        watcher.start()
        logger.info(f"[InterruptWatcher] Started watching {session_id[:8]}")
        return True

    def stop_watching(self, session_id: str) -> bool:
        """Stop watching a session.

        After this returns, no interrupt for the session can be delivered.

        Returns:
            True if a watch was stopped.
        """
        with self._lock:
            watcher = self._watchers.pop(session_id, None)
            handler = self._handlers.pop(session_id, None)

        if watcher is None:
            return False

        if handler is not None and self._observer is not None:
            try:
                self._observer.remove_handler_for_watch(*handler)
            except KeyError:
                pass

        watcher.stop()
        logger.info(f"[InterruptWatcher] Stopped watching {session_id[:8]}")
        return True

    def stop_all(self) -> None:
        """Stop all watches."""
        with self._lock:
            session_ids = list(self._watchers)
        for session_id in session_ids:
            self.stop_watching(session_id)

    def is_watching(self, session_id: str) -> bool:
        """Whether a session is currently watched."""
        with self._lock:
            return session_id in self._watchers

    def status(self) -> dict:
        """Get watcher status."""
        with self._lock:
            return {
                "watching": sorted(self._watchers),
                "observer": self._observer is not None,
                "poll_interval": self._poll_interval,
            }

    def _schedule(self, session_id: str, watcher: TranscriptInterruptWatcher) -> None:
        """Register a Watchdog wake-up for the watcher. Caller holds the lock."""
        if self._observer is None:
            return
        handler = _TranscriptEventHandler(watcher.path, watcher.wake)
        try:
            watch = self._observer.schedule(handler, str(watcher.path.parent), recursive=False)
        except OSError as e:
            # Directory missing; polling still finds the file once it appears
            logger.debug(f"[InterruptWatcher] No change notifications for {watcher.path}: {e}")
            return
        self._handlers[session_id] = (handler, watch)

    def _handle_interrupt(self, session_id: str) -> None:
        with self._lock:
            self._watchers.pop(session_id, None)
            handler = self._handlers.pop(session_id, None)
        if handler is not None and self._observer is not None:
            try:
                self._observer.remove_handler_for_watch(*handler)
            except KeyError:
                pass

        if self._on_interrupt:
            self._on_interrupt(session_id)
