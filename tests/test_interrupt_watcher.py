"""Tests for the transcript interrupt watcher."""

import json
import os
import threading
import time
from pathlib import Path

import pytest

from island_core.services.interrupt_watcher import (
    InterruptWatcherManager,
    TranscriptInterruptWatcher,
    TranscriptTail,
    encode_project_dir,
    is_interrupt_entry,
    transcript_path_for,
)

INTERRUPT_LINE = json.dumps(
    {
        "type": "user",
        "message": {
            "role": "user",
            "content": [{"type": "text", "text": "[Request interrupted by user for tool use]"}],
        },
    }
)
ASSISTANT_LINE = json.dumps(
    {"type": "assistant", "message": {"content": [{"type": "text", "text": "Working on it"}]}}
)


def append(path: Path, *lines: str) -> None:
    with open(path, "a") as f:
        for line in lines:
            f.write(line + "\n")


def wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class TestTranscriptPath:
    """Tests for transcript location."""

    def test_encode_project_dir(self):
        """Slashes and dots become dashes."""
        assert encode_project_dir("/Users/me/my.app") == "-Users-me-my-app"

    def test_transcript_path_for(self, temp_dir):
        """The transcript lives under the encoded project folder."""
        path = transcript_path_for("abc", "/work/proj", temp_dir)
        assert path == temp_dir / "-work-proj" / "abc.jsonl"


class TestIsInterruptEntry:
    """Tests for marker detection."""

    def test_user_entry_with_block_content(self):
        """The marker inside a user text block is detected."""
        assert is_interrupt_entry(INTERRUPT_LINE)

    def test_user_entry_with_string_content(self):
        """String content is supported too."""
        line = json.dumps(
            {"type": "user", "message": {"content": "[Request interrupted by user]"}}
        )
        assert is_interrupt_entry(line)

    def test_assistant_quoting_marker_ignored(self):
        """The marker in a non-user entry is not an interrupt."""
        line = json.dumps(
            {
                "type": "assistant",
                "message": {"content": [{"type": "text", "text": "[Request interrupted by user"}]},
            }
        )
        assert not is_interrupt_entry(line)

    def test_plain_text_fallback(self):
        """Non-JSON lines fall back to a substring match."""
        assert is_interrupt_entry("garbage [Request interrupted by user] garbage")
        assert not is_interrupt_entry("garbage")

    def test_regular_user_entry(self):
        """Ordinary user messages are not interrupts."""
        line = json.dumps({"type": "user", "message": {"content": "please continue"}})
        assert not is_interrupt_entry(line)


class TestTranscriptTail:
    """Tests for incremental reading."""

    def test_starts_at_end_of_existing_file(self, temp_dir):
        """Content present before the watch started is history."""
        path = temp_dir / "t.jsonl"
        append(path, INTERRUPT_LINE)
        tail = TranscriptTail(path)

        assert tail.read_new_lines() == []
        append(path, ASSISTANT_LINE)
        assert tail.read_new_lines() == [ASSISTANT_LINE]
        tail.close()

    def test_file_created_later_read_from_start(self, temp_dir):
        """A transcript that appears after the watch started is all new."""
        path = temp_dir / "t.jsonl"
        tail = TranscriptTail(path)
        assert tail.read_new_lines() == []

        append(path, ASSISTANT_LINE)
        assert tail.read_new_lines() == [ASSISTANT_LINE]
        tail.close()

    def test_partial_lines_buffered(self, temp_dir):
        """Half-written lines are held back until complete."""
        path = temp_dir / "t.jsonl"
        path.write_text("")
        tail = TranscriptTail(path)
        tail.read_new_lines()

        with open(path, "a") as f:
            f.write('{"type": "us')
        assert tail.read_new_lines() == []

        with open(path, "a") as f:
            f.write('er"}\n')
        assert tail.read_new_lines() == ['{"type": "user"}']
        tail.close()

    def test_truncation_rereads_from_start(self, temp_dir):
        """A truncated file is re-read from offset 0."""
        path = temp_dir / "t.jsonl"
        append(path, ASSISTANT_LINE, ASSISTANT_LINE)
        tail = TranscriptTail(path)
        tail.read_new_lines()

        path.write_text("short\n")
        assert tail.read_new_lines() == ["short"]
        tail.close()

    def test_rotation_reopens(self, temp_dir):
        """A replaced file is re-opened and read from the start."""
        path = temp_dir / "t.jsonl"
        append(path, ASSISTANT_LINE)
        tail = TranscriptTail(path)
        tail.read_new_lines()

        replacement = temp_dir / "new.jsonl"
        append(replacement, ASSISTANT_LINE, INTERRUPT_LINE)
        os.replace(replacement, path)

        assert tail.read_new_lines() == [ASSISTANT_LINE, INTERRUPT_LINE]
        tail.close()

    def test_disappearing_file(self, temp_dir):
        """A file that vanishes and comes back is picked up again."""
        path = temp_dir / "t.jsonl"
        append(path, ASSISTANT_LINE)
        tail = TranscriptTail(path)
        tail.read_new_lines()

        path.unlink()
        assert tail.read_new_lines() == []

        append(path, INTERRUPT_LINE)
        assert tail.read_new_lines() == [INTERRUPT_LINE]
        tail.close()


class TestTranscriptInterruptWatcher:
    """Tests for a single watch."""

    def test_detects_interrupt_once(self, temp_dir):
        """The callback fires once, then the watcher ends."""
        path = temp_dir / "t.jsonl"
        path.write_text("")
        calls = []
        watcher = TranscriptInterruptWatcher("s1", path, calls.append, poll_interval=0.02)
        watcher.start()

        append(path, ASSISTANT_LINE)
        append(path, INTERRUPT_LINE, INTERRUPT_LINE)

        assert wait_for(lambda: calls == ["s1"])
        assert wait_for(lambda: not watcher.is_running)
        assert calls == ["s1"]

    def test_stop_prevents_delivery(self, temp_dir):
        """After stop() returns, no interrupt is delivered."""
        path = temp_dir / "t.jsonl"
        path.write_text("")
        calls = []
        watcher = TranscriptInterruptWatcher("s1", path, calls.append, poll_interval=0.02)
        watcher.start()
        watcher.stop()

        append(path, INTERRUPT_LINE)
        time.sleep(0.1)

        assert calls == []
        assert not watcher.is_running

    def test_stop_from_callback(self, temp_dir):
        """Stopping the watch from inside its own callback doesn't deadlock."""
        path = temp_dir / "t.jsonl"
        path.write_text("")
        done = threading.Event()
        holder = {}

        def on_interrupt(session_id):
            holder["watcher"].stop()
            done.set()

        watcher = TranscriptInterruptWatcher("s1", path, on_interrupt, poll_interval=0.02)
        holder["watcher"] = watcher
        watcher.start()
        append(path, INTERRUPT_LINE)

        assert done.wait(3)


class TestInterruptWatcherManager:
    """Tests for the manager."""

    @pytest.fixture
    def manager(self, temp_dir):
        calls = []
        manager = InterruptWatcherManager(
            on_interrupt=calls.append,
            projects_dir=temp_dir,
            poll_interval=0.02,
        )
        manager.calls = calls
        manager.start()
        yield manager
        manager.stop()

    def test_start_watching_idempotent(self, manager, temp_dir):
        """A session is watched at most once."""
        path = temp_dir / "t.jsonl"
        assert manager.start_watching("s1", "/x", transcript_path=str(path))
        assert not manager.start_watching("s1", "/x", transcript_path=str(path))
        assert manager.status()["watching"] == ["s1"]

    def test_derived_path_used(self, manager, temp_dir):
        """Without an explicit path the derived transcript is watched."""
        path = transcript_path_for("s1", "/work/proj", temp_dir)
        path.parent.mkdir(parents=True)
        path.write_text("")

        manager.start_watching("s1", "/work/proj")
        append(path, INTERRUPT_LINE)

        assert wait_for(lambda: manager.calls == ["s1"])
        assert wait_for(lambda: not manager.is_watching("s1"))

    def test_stop_watching(self, manager, temp_dir):
        """stop_watching() is synchronous and idempotent."""
        path = temp_dir / "t.jsonl"
        path.write_text("")
        manager.start_watching("s1", "/x", transcript_path=str(path))

        assert manager.stop_watching("s1")
        assert not manager.stop_watching("s1")

        append(path, INTERRUPT_LINE)
        time.sleep(0.1)
        assert manager.calls == []

    def test_sessions_sharing_a_directory(self, manager, temp_dir):
        """Stopping one watch leaves others in the same folder working."""
        a = temp_dir / "a.jsonl"
        b = temp_dir / "b.jsonl"
        a.write_text("")
        b.write_text("")
        manager.start_watching("a", "/x", transcript_path=str(a))
        manager.start_watching("b", "/x", transcript_path=str(b))

        manager.stop_watching("a")
        append(b, INTERRUPT_LINE)

        assert wait_for(lambda: manager.calls == ["b"])

    def test_missing_directory_falls_back_to_polling(self, manager, temp_dir):
        """A transcript folder created later is still found."""
        path = temp_dir / "later" / "s1.jsonl"
        manager.start_watching("s1", "/x", transcript_path=str(path))

        path.parent.mkdir()
        append(path, INTERRUPT_LINE)

        assert wait_for(lambda: manager.calls == ["s1"])

    def test_stop_all(self, manager, temp_dir):
        """stop_all() ends every watch."""
        for sid in ("a", "b"):
            manager.start_watching(sid, "/x", transcript_path=str(temp_dir / f"{sid}.jsonl"))

        manager.stop_all()
        assert manager.status()["watching"] == []


class TestManagerWithoutObserver:
    """The manager works on polling alone."""

    def test_polling_only(self, temp_dir):
        """Interrupts are found without a Watchdog observer."""
        calls = []
        manager = InterruptWatcherManager(
            on_interrupt=calls.append, poll_interval=0.02, use_observer=False
        )
        manager.start()
        path = temp_dir / "t.jsonl"
        path.write_text("")
        manager.start_watching("s1", "/x", transcript_path=str(path))

        append(path, INTERRUPT_LINE)

        assert wait_for(lambda: calls == ["s1"])
        assert manager.status()["observer"] is False
        manager.stop()
