"""Flask application factory for Claude Island.

This module creates and configures the Flask application, wiring together
the session coordination services:

- ConfigService: Configuration loading
- EventBus: Snapshot broadcasting to subscribers and SSE clients
- SessionRegistry: Live sessions, serialized per session
- PermissionBroker: Pending approvals and their single completion
- InterruptWatcherManager: Transcript tailing for out-of-band interrupts
- TmuxBackend: Keystroke relay into the session's terminal
- SessionMonitor: Event coordination and UI commands
- HookSocketServer: Unix socket the hook scripts talk to

Usage:
    from island_core.app import create_app, start_services
    app = create_app()
    start_services(app)
    app.run(port=5050)
"""

import atexit
import logging

from flask import Flask

from island_core.backends.tmux import TmuxBackend
from island_core.models import AppConfig
from island_core.routes import register_blueprints
from island_core.services import (
    HookSocketServer,
    InterruptWatcherManager,
    PermissionBroker,
    SessionMonitor,
    SessionRegistry,
    get_config_service,
    get_event_bus,
)

logger = logging.getLogger(__name__)


def create_app(config_path: str = "config.yaml", config: AppConfig | None = None) -> Flask:
    """Create and configure the Flask application.

    Services are created but not started; see start_services().

    Args:
        config_path: Path to the configuration file.
        config: Explicit configuration (skips loading config_path).

    Returns:
        Configured Flask application.
    """
    config_service = get_config_service(config_path)
    if config is None:
        config = config_service.get_config()

    app = Flask(__name__)
    app.config["TESTING"] = False

    # Store services on app for access in routes
    app.extensions["config"] = config
    app.extensions["config_service"] = config_service

    _init_services(app, config)

    register_blueprints(app)

    return app


def _init_services(app: Flask, config: AppConfig) -> None:
    """Initialize all services and wire them together.

    Args:
        app: Flask application.
        config: Application configuration.
    """
    event_bus = get_event_bus(buffer_size=config.event_buffer_size)
    app.extensions["event_bus"] = event_bus

    registry = SessionRegistry(event_bus=event_bus)
    app.extensions["session_registry"] = registry

    broker = PermissionBroker(timeout=config.permission_timeout)
    app.extensions["permission_broker"] = broker

    watcher_manager = None
    if config.interrupt_watcher.enabled:
        watcher_manager = InterruptWatcherManager(
            projects_dir=config.interrupt_watcher.claude_projects_dir,
            poll_interval=config.interrupt_watcher.poll_interval,
        )
    app.extensions["interrupt_watcher"] = watcher_manager

    backend = TmuxBackend(
        tmux_path=config.tmux.path,
        command_timeout=config.tmux.command_timeout,
    )
    app.extensions["terminal_backend"] = backend

    monitor = SessionMonitor(
        registry=registry,
        broker=broker,
        watcher_manager=watcher_manager,
        terminal_backend=backend,
        approve_all_key=config.tmux.approve_all_key,
    )
    app.extensions["session_monitor"] = monitor

    socket_server = HookSocketServer(
        socket_path=config.socket_path,
        broker=broker,
        dispatch=monitor.handle_hook_event,
        max_message_bytes=config.max_message_bytes,
        read_timeout=config.read_timeout,
    )
    app.extensions["hook_socket_server"] = socket_server

    logger.info("Services initialized")


def start_services(app: Flask) -> None:
    """Start the background services of an application.

    Args:
        app: Flask application created by create_app().
    """
    app.extensions["session_monitor"].start()
    app.extensions["hook_socket_server"].start()


def stop_services(app: Flask) -> None:
    """Stop the background services, releasing every waiting hook script.

    Args:
        app: Flask application created by create_app().
    """
    app.extensions["hook_socket_server"].stop()
    app.extensions["session_monitor"].stop()


def main():
    """Run the Flask application."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = create_app()
    config = app.extensions["config"]

    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    start_services(app)
    atexit.register(stop_services, app)

    logger.info(f"Starting Claude Island on {config.host}:{config.port}")
    # The reloader would start a second socket server in a child process
    app.run(host=config.host, port=config.port, debug=config.debug, threaded=True, use_reloader=False)


if __name__ == "__main__":
    main()
