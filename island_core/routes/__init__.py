"""Flask routes for Claude Island."""

from island_core.routes.events import events_bp
from island_core.routes.sessions import sessions_bp
from island_core.routes.status import status_bp

__all__ = [
    "events_bp",
    "sessions_bp",
    "status_bp",
]


def register_blueprints(app):
    """Register all blueprints with the Flask app.

    Args:
        app: The Flask application instance.
    """
    app.register_blueprint(events_bp, url_prefix="/api")
    app.register_blueprint(sessions_bp, url_prefix="/api")
    app.register_blueprint(status_bp, url_prefix="/api")
