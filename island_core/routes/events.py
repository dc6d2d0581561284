"""Server-Sent Events stream of session snapshots."""

from flask import Blueprint, Response, current_app, request

from island_core.services.event_bus import get_event_bus

events_bp = Blueprint("events", __name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@events_bp.route("/events")
def sse_events():
    """Stream sessions_updated and session_removed events.

    Query params:
        replay: "0" skips the buffered snapshots (default replays them).

    Every sessions_updated payload is a full snapshot, so a reconnecting
    client is current after its first message.
    """
    event_bus = current_app.extensions.get("event_bus") or get_event_bus()
    replay = request.args.get("replay", "1") != "0"

    return Response(
        event_bus.get_sse_stream(include_buffer=replay),
        mimetype="text/event-stream",
        headers=SSE_HEADERS,
    )
