"""SessionMonitor - coordinates the services and exposes the UI commands.

The monitor is the single place where hook events and internal events
reach the registry, and where their side effects happen:

- stop / session end cancel the session's pending permissions
- post-tool-use cancels the permission for that tool use
- entering processing starts a transcript watch, leaving it stops the watch
- broker timeouts and transport failures become PermissionResolved events
- transcript interrupts become InterruptDetected events

Commands (approve, deny, answer, archive, ...) return a CommandResult.
"""

import logging
from dataclasses import dataclass

from island_core.backends.base import TerminalBackend
from island_core.models.hook_event import HookEvent, HookEventKind
from island_core.models.permission import PermissionOutcome
from island_core.models.session import SessionPhase, SessionState
from island_core.models.session_event import (
    InterruptDetected,
    PermissionDismissed,
    PermissionResolved,
)
from island_core.services.interrupt_watcher import InterruptWatcherManager
from island_core.services.permission_broker import (
    PendingPermission,
    PermissionBroker,
    UnknownRequestError,
)
from island_core.services.session_registry import SessionNotFoundError, SessionRegistry
from island_core.services.session_state_machine import TransitionResult

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of a UI command."""

    success: bool
    session_id: str | None = None
    message: str = ""
    not_found: bool = False


class SessionMonitor:
    """Routes events into the registry and UI commands into the broker/terminal."""

    def __init__(
        self,
        registry: SessionRegistry,
        broker: PermissionBroker,
        watcher_manager: InterruptWatcherManager | None = None,
        terminal_backend: TerminalBackend | None = None,
        approve_all_key: str = "4",
    ):
        """Initialize the monitor.

        Args:
            registry: Session registry.
            broker: Permission broker; its timeout/failure callbacks are bound here.
            watcher_manager: Transcript interrupt watcher (optional).
            terminal_backend: Backend used to relay keystrokes (optional).
            approve_all_key: Key that picks "allow all edits" in the terminal prompt.
        """
        self._registry = registry
        self._broker = broker
        self._watchers = watcher_manager
        self._terminal = terminal_backend
        self._approve_all_key = approve_all_key

        self._broker.set_callbacks(
            on_timeout=self._on_permission_timeout,
            on_failure=self._on_transport_failure,
        )
        if self._watchers is not None:
            self._watchers.set_on_interrupt(self.handle_interrupt)

    def start(self) -> None:
        """Start background services."""
        if self._watchers is not None:
            self._watchers.start()
        logger.info("[Monitor] Started")

    def stop(self) -> None:
        """Release every waiting hook script and stop watching transcripts."""
        self._broker.shutdown()
        if self._watchers is not None:
            self._watchers.stop()
        logger.info("[Monitor] Stopped")

    # Event entry points

    def handle_hook_event(self, event: HookEvent) -> TransitionResult:
        """Apply a hook event together with its broker and watcher side effects.

        Args:
            event: Decoded hook event.

        Returns:
            The registry's TransitionResult.
        """
        logger.debug(
            f"[Monitor] {event.event_kind.value} for {event.session_id[:8]}"
            + (f" tool={event.tool_name}" if event.tool_name else "")
        )

        if event.is_termination or event.event_kind == HookEventKind.STOP:
            self._broker.cancel_all(event.session_id)
        elif event.event_kind == HookEventKind.POST_TOOL_USE and event.tool_use_id:
            self._broker.cancel(event.tool_use_id)

        result = self._registry.process(event)
        self._sync_watch(event.session_id, result)
        return result

    def handle_interrupt(self, session_id: str) -> TransitionResult | None:
        """Apply an interrupt found in a session's transcript."""
        if self._registry.get(session_id) is None:
            return None

        result = self._registry.process(InterruptDetected(session_id=session_id))
        if not result.ignored:
            self._broker.cancel_all(session_id)
            logger.info(f"[Monitor] Session {session_id[:8]} interrupted by user")
        self._sync_watch(session_id, result)
        return result

    # Commands

    def approve(self, session_id: str) -> CommandResult:
        """Allow the session's active permission."""
        return self._decide(session_id, PermissionOutcome.ALLOW)

    def deny(self, session_id: str, reason: str | None = None) -> CommandResult:
        """Deny the session's active permission."""
        return self._decide(session_id, PermissionOutcome.DENY, reason)

    def deny_with_instructions(self, session_id: str, instructions: str) -> CommandResult:
        """Deny the active permission and tell the assistant what to do instead."""
        return self._decide(session_id, PermissionOutcome.DENY_WITH_INSTRUCTIONS, instructions)

    def answer_question(self, session_id: str, text: str) -> CommandResult:
        """Type an answer to an interactive question into the session's terminal."""
        return self._send_to_terminal(session_id, text)

    def send_message(self, session_id: str, text: str) -> CommandResult:
        """Type a free-text message into the session's terminal."""
        return self._send_to_terminal(session_id, text)

    def approve_all_edits(self, session_id: str) -> CommandResult:
        """Pick "allow all edits in this session" in the terminal prompt."""
        return self._send_to_terminal(session_id, self._approve_all_key)

    def dismiss_permission(self, session_id: str) -> CommandResult:
        """Clear an approval whose request is broken (timed out or disconnected)."""
        state = self._registry.get(session_id)
        if state is None:
            return self._not_found(session_id)
        if state.active_permission is None:
            return CommandResult(
                success=False, session_id=session_id, message="No active permission"
            )

        self._broker.cancel(state.active_permission.tool_use_id)
        result = self._registry.process(PermissionDismissed(session_id=session_id))
        self._sync_watch(session_id, result)
        return CommandResult(success=True, session_id=session_id, message="Permission dismissed")

    def archive(self, session_id: str) -> CommandResult:
        """Remove a session on the user's request."""
        self._broker.cancel_all(session_id)
        if self._watchers is not None:
            self._watchers.stop_watching(session_id)

        try:
            self._registry.archive(session_id)
        except SessionNotFoundError:
            return self._not_found(session_id)
        return CommandResult(success=True, session_id=session_id, message="Session archived")

    def status(self) -> dict:
        """Get coordinator status."""
        return {
            "registry": self._registry.status(),
            "broker": self._broker.status(),
            "watcher": self._watchers.status() if self._watchers is not None else None,
            "terminal": self._terminal.backend_name if self._terminal is not None else None,
        }

    # Internals

    def _decide(
        self, session_id: str, outcome: PermissionOutcome, reason: str | None = None
    ) -> CommandResult:
        state = self._registry.get(session_id)
        if state is None:
            return self._not_found(session_id)

        permission = state.active_permission
        if permission is None:
            return CommandResult(
                success=False, session_id=session_id, message="No active permission"
            )
        if permission.outcome is not None:
            return CommandResult(
                success=False,
                session_id=session_id,
                message=f"Permission request {permission.outcome.value}; dismiss it instead",
            )

        try:
            self._broker.resolve(permission.tool_use_id, outcome, reason)
        except UnknownRequestError:
            logger.debug(
                f"[Monitor] {outcome.value} for {permission.tool_use_id[:12]} arrived too late"
            )
            return CommandResult(
                success=False,
                session_id=session_id,
                message="Permission request is no longer pending",
            )

        result = self._registry.process(
            PermissionResolved(
                session_id=session_id,
                tool_use_id=permission.tool_use_id,
                outcome=outcome,
                reason=reason,
            )
        )
        self._sync_watch(session_id, result)
        return CommandResult(
            success=True, session_id=session_id, message=f"Permission {outcome.value}"
        )

    def _send_to_terminal(self, session_id: str, text: str) -> CommandResult:
        state = self._registry.get(session_id)
        if state is None:
            return self._not_found(session_id)
        if self._terminal is None or not state.tty:
            return CommandResult(
                success=False, session_id=session_id, message="Session has no terminal"
            )

        target = self._terminal.find_target(state.tty)
        if target is None:
            return CommandResult(
                success=False,
                session_id=session_id,
                message=f"No {self._terminal.backend_name} pane owns {state.tty}",
            )

        if not self._terminal.send_message(target, text):
            return CommandResult(
                success=False,
                session_id=session_id,
                message=f"Failed to send keys to {target.target_string}",
            )
        return CommandResult(
            success=True, session_id=session_id, message=f"Sent to {target.target_string}"
        )

    def _sync_watch(self, session_id: str, result: TransitionResult) -> None:
        """Keep exactly the processing sessions under transcript watch.

        Runs outside the session lock, so it follows the registry's current
        state rather than ``result`` and re-checks after acting: whichever
        racing caller acts last leaves the watch matching the final phase.
        """
        if self._watchers is None or result.ignored:
            return

        while True:
            state: SessionState | None = self._registry.get(session_id)
            watched = state is not None and state.phase == SessionPhase.PROCESSING
            if watched:
                self._watchers.start_watching(session_id, state.cwd, state.transcript_path)
            else:
                self._watchers.stop_watching(session_id)

            current = self._registry.get(session_id)
            if (current is not None and current.phase == SessionPhase.PROCESSING) == watched:
                return

    def _on_permission_timeout(self, pending: PendingPermission) -> None:
        self._registry.process(
            PermissionResolved(
                session_id=pending.session_id,
                tool_use_id=pending.tool_use_id,
                outcome=PermissionOutcome.TIMED_OUT,
            )
        )

    def _on_transport_failure(self, session_id: str, tool_use_id: str) -> None:
        if self._registry.get(session_id) is None:
            return
        self._registry.process(
            PermissionResolved(
                session_id=session_id,
                tool_use_id=tool_use_id,
                outcome=PermissionOutcome.FAILED,
            )
        )

    @staticmethod
    def _not_found(session_id: str) -> CommandResult:
        return CommandResult(
            success=False,
            session_id=session_id,
            message=f"Session not found: {session_id}",
            not_found=True,
        )
