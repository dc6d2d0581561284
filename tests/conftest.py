"""Pytest configuration and shared fixtures for Claude Island tests."""

import shutil
import tempfile
from pathlib import Path

import pytest

from island_core.backends.tmux import reset_tmux_backend
from island_core.models.hook_event import HookEvent
from island_core.services.config_service import SOCKET_PATH_ENV, reset_config_service
from island_core.services.event_bus import EventBus, reset_event_bus
from island_core.services.permission_broker import PermissionBroker
from island_core.services.session_registry import SessionRegistry


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset module singletons before and after each test."""
    reset_event_bus()
    reset_config_service()
    reset_tmux_backend()
    yield
    reset_event_bus()
    reset_config_service()
    reset_tmux_backend()


@pytest.fixture(autouse=True)
def clear_socket_env(monkeypatch):
    """Keep the developer's socket override out of the tests."""
    monkeypatch.delenv(SOCKET_PATH_ENV, raising=False)


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def socket_dir():
    """Short temporary directory for Unix sockets (paths are length-limited)."""
    path = tempfile.mkdtemp(prefix="ci-", dir="/tmp")
    yield Path(path)
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def make_event():
    """Factory for HookEvents with sensible defaults."""

    def _make(event_kind: str, session_id: str = "session-1", **fields) -> HookEvent:
        fields.setdefault("cwd", "/home/user/project")
        return HookEvent(event_kind=event_kind, session_id=session_id, **fields)

    return _make


@pytest.fixture
def event_bus():
    """Create an EventBus instance."""
    return EventBus(buffer_size=10)


@pytest.fixture
def registry(event_bus):
    """Create a SessionRegistry on a fresh bus."""
    return SessionRegistry(event_bus=event_bus)


@pytest.fixture
def broker():
    """Create a PermissionBroker without timeout."""
    broker = PermissionBroker()
    yield broker
    broker.shutdown()
