"""Tests for Flask routes."""

import threading
from unittest.mock import MagicMock

import pytest
from flask import Flask

from island_core.app import create_app
from island_core.models import AppConfig, HookEvent
from island_core.models.permission import PermissionOutcome
from island_core.models.session import SessionPhase
from island_core.routes import register_blueprints
from island_core.services.session_monitor import CommandResult


@pytest.fixture
def app(socket_dir, temp_dir):
    """Create an app with real services that are not started."""
    config = AppConfig(
        socket_path=str(socket_dir / "island.sock"),
        permission_timeout=None,
        interrupt_watcher={"enabled": False},
    )
    app = create_app(str(temp_dir / "config.yaml"), config=config)
    app.config["TESTING"] = True
    yield app
    app.extensions["permission_broker"].shutdown()


@pytest.fixture
def client(app):
    """Create a test client."""
    return app.test_client()


@pytest.fixture
def waiting(app):
    """Put session-1 in waiting_for_approval for T1."""
    broker = app.extensions["permission_broker"]
    monitor = app.extensions["session_monitor"]
    pending = broker.open("T1", "session-1", "Bash", {"command": "make"})
    monitor.handle_hook_event(
        HookEvent(
            event_kind="permission-request",
            session_id="session-1",
            cwd="/home/user/project",
            tool_use_id="T1",
            tool_name="Bash",
            tool_input={"command": "make"},
        )
    )
    return pending


@pytest.fixture
def mock_monitor():
    """A monitor double for payload validation tests."""
    monitor = MagicMock()
    ok = CommandResult(success=True, session_id="session-1", message="ok")
    for name in ("answer_question", "send_message", "deny_with_instructions", "approve_all_edits"):
        getattr(monitor, name).return_value = ok
    return monitor


@pytest.fixture
def mock_client(mock_monitor):
    """Client for an app whose monitor is a mock."""
    app = Flask(__name__)
    app.config["TESTING"] = True
    app.extensions["session_monitor"] = mock_monitor
    register_blueprints(app)
    return app.test_client()


class TestSessionQueries:
    """Tests for reading sessions."""

    def test_list_empty(self, client):
        """An empty registry lists nothing."""
        response = client.get("/api/sessions")

        assert response.status_code == 200
        assert response.json == {"version": 0, "sessions": [], "pending": []}

    def test_list_with_waiting_session(self, client, waiting):
        """Waiting sessions are listed as pending."""
        data = client.get("/api/sessions").json

        assert data["pending"] == ["session-1"]
        session = data["sessions"][0]
        assert session["phase"] == "waiting_for_approval"
        assert session["needs_attention"] is True
        assert session["active_permission"]["tool_name"] == "Bash"

    def test_get_session(self, client, waiting):
        """A single session is returned by id."""
        response = client.get("/api/sessions/session-1")

        assert response.status_code == 200
        assert response.json["display_name"] == "project"

    def test_get_missing_session(self, client):
        """Unknown ids are 404."""
        assert client.get("/api/sessions/nope").status_code == 404


class TestDecisionRoutes:
    """Tests for approval decisions."""

    def test_approve(self, client, app, waiting):
        """POST approve allows the pending request."""
        response = client.post("/api/sessions/session-1/approve")

        assert response.status_code == 200
        assert response.json["success"] is True
        assert waiting.token.completion.outcome == PermissionOutcome.ALLOW
        state = app.extensions["session_registry"].get("session-1")
        assert state.phase == SessionPhase.PROCESSING

    def test_deny_with_reason(self, client, waiting):
        """POST deny carries the optional reason."""
        response = client.post("/api/sessions/session-1/deny", json={"reason": "too risky"})

        assert response.status_code == 200
        assert waiting.token.completion.reason == "too risky"

    def test_deny_without_body(self, client, waiting):
        """The deny reason is optional."""
        assert client.post("/api/sessions/session-1/deny").status_code == 200
        assert waiting.token.completion.outcome == PermissionOutcome.DENY

    def test_deny_with_instructions(self, client, waiting):
        """Instructions are sent with the denial."""
        response = client.post(
            "/api/sessions/session-1/deny-with-instructions",
            json={"instructions": "use make test"},
        )

        assert response.status_code == 200
        assert waiting.token.completion.outcome == PermissionOutcome.DENY_WITH_INSTRUCTIONS

    def test_deny_with_instructions_requires_text(self, client, waiting):
        """Empty instructions are rejected before reaching the broker."""
        response = client.post(
            "/api/sessions/session-1/deny-with-instructions", json={"instructions": "  "}
        )

        assert response.status_code == 400
        assert not waiting.token.done

    def test_approve_unknown_session(self, client):
        """Decisions for unknown sessions are 404."""
        assert client.post("/api/sessions/nope/approve").status_code == 404

    def test_approve_without_permission(self, client, waiting):
        """A second decision conflicts."""
        client.post("/api/sessions/session-1/approve")
        response = client.post("/api/sessions/session-1/approve")

        assert response.status_code == 409
        assert response.json["success"] is False

    def test_dismiss_broken_permission(self, client, app, waiting):
        """A failed request can be dismissed."""
        app.extensions["permission_broker"].fail_transport("session-1", "T1")

        assert client.post("/api/sessions/session-1/approve").status_code == 409
        assert client.post("/api/sessions/session-1/dismiss").status_code == 200

        state = app.extensions["session_registry"].get("session-1")
        assert state.active_permission is None

    def test_archive(self, client, app, waiting):
        """Archiving removes the session and releases its hook script."""
        assert client.post("/api/sessions/session-1/archive").status_code == 200

        assert app.extensions["session_registry"].get("session-1") is None
        assert waiting.token.completion.outcome == PermissionOutcome.CANCELED
        assert client.post("/api/sessions/session-1/archive").status_code == 404


class TestTerminalRoutes:
    """Tests for keystroke relay routes."""

    def test_answer(self, mock_client, mock_monitor):
        """POST answer relays the text."""
        response = mock_client.post("/api/sessions/session-1/answer", json={"text": "yes"})

        assert response.status_code == 200
        mock_monitor.answer_question.assert_called_once_with("session-1", "yes")

    def test_message(self, mock_client, mock_monitor):
        """POST message relays the text."""
        response = mock_client.post("/api/sessions/session-1/message", json={"text": "go on"})

        assert response.status_code == 200
        mock_monitor.send_message.assert_called_once_with("session-1", "go on")

    @pytest.mark.parametrize("body", [None, {}, {"text": ""}, {"text": 3}])
    def test_message_requires_text(self, mock_client, mock_monitor, body):
        """Missing or empty text is a 400."""
        response = mock_client.post("/api/sessions/session-1/message", json=body)

        assert response.status_code == 400
        mock_monitor.send_message.assert_not_called()

    def test_approve_all(self, mock_client, mock_monitor):
        """POST approve-all goes through the monitor."""
        assert mock_client.post("/api/sessions/session-1/approve-all").status_code == 200
        mock_monitor.approve_all_edits.assert_called_once_with("session-1")

    def test_relay_failure_conflicts(self, mock_client, mock_monitor):
        """A failed relay is a 409 with the reason."""
        mock_monitor.send_message.return_value = CommandResult(
            success=False, session_id="session-1", message="Session has no terminal"
        )

        response = mock_client.post("/api/sessions/session-1/message", json={"text": "hi"})

        assert response.status_code == 409
        assert response.json["message"] == "Session has no terminal"


class TestStatusAndEvents:
    """Tests for status and the SSE stream."""

    def test_status(self, client, waiting):
        """Status aggregates the services."""
        data = client.get("/api/status").json

        assert data["broker"]["pending"] == 1
        assert data["registry"]["sessions"] == 1
        assert data["listener"]["running"] is False
        assert data["watcher"] is None
        assert data["sse_clients"] == 0

    def test_events_stream_replays_snapshot(self, client, waiting):
        """New SSE clients receive the buffered snapshots first."""
        response = client.get("/api/events")

        assert response.mimetype == "text/event-stream"
        first = next(iter(response.response))
        text = first.decode() if isinstance(first, bytes) else first
        assert "event: sessions_updated" in text
        response.close()

    def test_events_stream_without_replay(self, app, client, waiting):
        """replay=0 skips the buffer and waits for live events."""
        bus = app.extensions["event_bus"]
        threading.Timer(0.1, bus.emit, args=("session_removed", {"session_id": "x"})).start()
        response = client.get("/api/events?replay=0")

        first = next(iter(response.response))
        text = first.decode() if isinstance(first, bytes) else first
        assert "event: session_removed" in text
        response.close()
