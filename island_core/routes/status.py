"""Status route for Claude Island."""

from flask import Blueprint, current_app, jsonify

status_bp = Blueprint("status", __name__)


@status_bp.route("/status", methods=["GET"])
def get_status():
    """Report the health of the listener, broker, watcher and event bus."""
    monitor = current_app.extensions["session_monitor"]
    socket_server = current_app.extensions.get("hook_socket_server")
    event_bus = current_app.extensions.get("event_bus")

    return jsonify(
        {
            **monitor.status(),
            "listener": socket_server.status() if socket_server else None,
            "sse_clients": event_bus.subscriber_count if event_bus else 0,
        }
    )
