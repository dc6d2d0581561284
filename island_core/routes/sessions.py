"""Session routes for Claude Island.

Provides REST API endpoints for the UI:
- Current session snapshot
- Approval decisions
- Relaying answers and messages into a session's terminal
- Dismissing broken approvals and archiving sessions
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from island_core.services.session_monitor import CommandResult, SessionMonitor
from island_core.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)

sessions_bp = Blueprint("sessions", __name__)


def _get_registry() -> SessionRegistry:
    return current_app.extensions["session_registry"]


def _get_monitor() -> SessionMonitor:
    return current_app.extensions["session_monitor"]


def _command_response(result: CommandResult):
    """Translate a CommandResult into a JSON response."""
    body = {
        "success": result.success,
        "session_id": result.session_id,
        "message": result.message,
    }
    if result.success:
        return jsonify(body)
    if result.not_found:
        return jsonify(body), 404
    return jsonify(body), 409


def _require_text(field: str) -> tuple[str | None, tuple | None]:
    """Read a required non-empty string field from the JSON body."""
    data = request.get_json(silent=True) or {}
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        return None, (jsonify({"error": f"Missing '{field}'"}), 400)
    return value, None


@sessions_bp.route("/sessions", methods=["GET"])
def list_sessions():
    """Get the current snapshot of all live sessions.

    Returns:
        JSON object with:
        - version: Snapshot version
        - sessions: List of session objects
        - pending: Ids of sessions waiting for the user
    """
    snapshot = _get_registry().snapshot()
    body = snapshot.model_dump(mode="json")
    body["pending"] = [s.session_id for s in snapshot.sessions if s.needs_attention]

    logger.debug(f"[API] GET /sessions - {len(snapshot.sessions)} sessions")
    return jsonify(body)


@sessions_bp.route("/sessions/<session_id>", methods=["GET"])
def get_session(session_id: str):
    """Get one session.

    Args:
        session_id: The session ID.

    Returns:
        JSON session object, or 404 if the session is not live.
    """
    state = _get_registry().get(session_id)
    if state is None:
        return jsonify({"error": "Session not found"}), 404
    return jsonify(state.model_dump(mode="json"))


@sessions_bp.route("/sessions/<session_id>/approve", methods=["POST"])
def approve(session_id: str):
    """Allow the session's active permission."""
    return _command_response(_get_monitor().approve(session_id))


@sessions_bp.route("/sessions/<session_id>/deny", methods=["POST"])
def deny(session_id: str):
    """Deny the session's active permission.

    Expected JSON payload (optional):
        {"reason": "<why>"}
    """
    data = request.get_json(silent=True) or {}
    reason = data.get("reason") or None
    return _command_response(_get_monitor().deny(session_id, reason))


@sessions_bp.route("/sessions/<session_id>/deny-with-instructions", methods=["POST"])
def deny_with_instructions(session_id: str):
    """Deny the active permission and send instructions to the assistant.

    Expected JSON payload:
        {"instructions": "<what to do instead>"}
    """
    instructions, error = _require_text("instructions")
    if error:
        return error
    return _command_response(_get_monitor().deny_with_instructions(session_id, instructions))


@sessions_bp.route("/sessions/<session_id>/approve-all", methods=["POST"])
def approve_all(session_id: str):
    """Allow all edits for the rest of the session (via the terminal)."""
    return _command_response(_get_monitor().approve_all_edits(session_id))


@sessions_bp.route("/sessions/<session_id>/answer", methods=["POST"])
def answer(session_id: str):
    """Answer an interactive question in the session's terminal.

    Expected JSON payload:
        {"text": "<answer>"}
    """
    text, error = _require_text("text")
    if error:
        return error
    return _command_response(_get_monitor().answer_question(session_id, text))


@sessions_bp.route("/sessions/<session_id>/message", methods=["POST"])
def message(session_id: str):
    """Send a free-text message to the session's terminal.

    Expected JSON payload:
        {"text": "<message>"}
    """
    text, error = _require_text("text")
    if error:
        return error
    return _command_response(_get_monitor().send_message(session_id, text))


@sessions_bp.route("/sessions/<session_id>/dismiss", methods=["POST"])
def dismiss(session_id: str):
    """Dismiss a timed-out or disconnected approval."""
    return _command_response(_get_monitor().dismiss_permission(session_id))


@sessions_bp.route("/sessions/<session_id>/archive", methods=["POST"])
def archive(session_id: str):
    """Remove a session from the list."""
    return _command_response(_get_monitor().archive(session_id))
