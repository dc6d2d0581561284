"""Session State Machine - pure transitions over (SessionState, event).

The machine never mutates its input: every accepted event produces a new
frozen SessionState (or None when the session ends). Replaying the same
event sequence therefore always produces the same state.

```
IDLE → PROCESSING → WAITING_FOR_APPROVAL → PROCESSING (loop)
                  → INTERRUPTED
any  → COMPACTING → previous phase
any  → IDLE (stop)
```
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from island_core.models.hook_event import HookEvent, HookEventKind
from island_core.models.permission import PermissionOutcome
from island_core.models.session import (
    ChatHistoryItem,
    HistoryItemKind,
    PermissionContext,
    SessionPhase,
    SessionState,
    SubagentRecord,
    ToolCallRecord,
    ToolCallStatus,
)
from island_core.models.session_event import (
    InterruptDetected,
    PermissionDismissed,
    PermissionResolved,
    SessionEvent,
)

logger = logging.getLogger(__name__)

# Tools that launch a subagent
SUBAGENT_TOOLS = frozenset({"Task", "Agent"})

# Only the most recent history entries are kept in memory
MAX_HISTORY_ITEMS = 500

MAX_RESULT_CHARS = 200

# Phases an out-of-band interrupt can apply to
INTERRUPTIBLE_PHASES = frozenset(
    {SessionPhase.PROCESSING, SessionPhase.WAITING_FOR_APPROVAL, SessionPhase.COMPACTING}
)

# session-status values that move the phase directly
STATUS_PHASES: dict[str, SessionPhase] = {
    "processing": SessionPhase.PROCESSING,
    "running_tool": SessionPhase.PROCESSING,
    "waiting_for_input": SessionPhase.IDLE,
    "idle": SessionPhase.IDLE,
}


@dataclass
class TransitionResult:
    """Result of applying one event to a session."""

    state: SessionState | None
    from_phase: SessionPhase | None
    to_phase: SessionPhase | None
    removed: bool = False
    ignored: bool = False


def _summarize_response(response: Any) -> tuple[bool, str | None]:
    """Reduce a tool response to (is_error, short text)."""
    if response is None:
        return False, None

    if isinstance(response, dict):
        is_error = bool(response.get("is_error")) or bool(response.get("error"))
        text = response.get("error") or response.get("stdout") or response.get("content")
        if text is None:
            text = response.get("result")
    else:
        is_error = False
        text = response

    if text is None:
        return is_error, None
    text = str(text).strip()
    if len(text) > MAX_RESULT_CHARS:
        text = text[: MAX_RESULT_CHARS - 1] + "…"
    return is_error, text or None


def _trim(history: tuple[ChatHistoryItem, ...]) -> tuple[ChatHistoryItem, ...]:
    if len(history) > MAX_HISTORY_ITEMS:
        return history[-MAX_HISTORY_ITEMS:]
    return history


def _update_tool(
    history: tuple[ChatHistoryItem, ...], tool_use_id: str, **changes: Any
) -> tuple[tuple[ChatHistoryItem, ...], bool]:
    """Return history with one tool call updated, and whether it was found."""
    updated = []
    found = False
    for item in history:
        if item.tool is not None and item.tool.tool_use_id == tool_use_id:
            item = item.model_copy(update={"tool": item.tool.model_copy(update=changes)})
            found = True
        updated.append(item)
    return tuple(updated), found


def _close_open_tools(
    history: tuple[ChatHistoryItem, ...], status: ToolCallStatus
) -> tuple[ChatHistoryItem, ...]:
    """Mark every unfinished tool call with a final status."""
    return tuple(
        item.model_copy(update={"tool": item.tool.model_copy(update={"status": status})})
        if item.tool is not None and item.tool.status.is_open
        else item
        for item in history
    )


def _close_subagents(
    subagents: tuple[SubagentRecord, ...],
    status: ToolCallStatus,
    at: datetime,
    tool_use_id: str | None = None,
    first_only: bool = False,
) -> tuple[SubagentRecord, ...]:
    closed = []
    done = False
    for record in subagents:
        matches = record.status.is_open and (
            tool_use_id is None or record.tool_use_id == tool_use_id
        )
        if matches and not done:
            record = record.model_copy(update={"status": status, "finished_at": at})
            done = first_only
        closed.append(record)
    return tuple(closed)


class SessionStateMachine:
    """Applies session events to session states.

    Rules, in precedence order:
    1. Unknown session + non-terminating hook event → new IDLE session
    2. user-prompt-submit → PROCESSING
    3. Approval-gated pre-tool-use / permission-request → WAITING_FOR_APPROVAL
    4. Other pre-tool-use → PROCESSING
    5. post-tool-use → finish the tool call; clears the matching permission
    6. stop → IDLE, permission cleared, open tool calls interrupted
    7. compacting status → COMPACTING until the next non-status event
    8. ended status / session-end → session removed
    9. Interrupt → INTERRUPTED, open tool calls interrupted
    """

    def apply(self, state: SessionState | None, event: SessionEvent) -> TransitionResult:
        """Apply one event.

        Args:
            state: Current session state, or None if the session is unknown.
            event: The event to apply.

        Returns:
            TransitionResult carrying the new state (None when removed).
        """
        from_phase = state.phase if state else None

        if isinstance(event, HookEvent):
            if event.is_termination:
                return TransitionResult(
                    state=None,
                    from_phase=from_phase,
                    to_phase=SessionPhase.ENDED,
                    removed=state is not None,
                    ignored=state is None,
                )
            if state is None:
                state = self._new_session(event)
            new_state = self._apply_hook_event(state, event)
        elif state is None:
            logger.debug(
                f"[StateMachine] Ignoring {type(event).__name__} for unknown session "
                f"{event.session_id[:8]}"
            )
            return TransitionResult(state=None, from_phase=None, to_phase=None, ignored=True)
        elif isinstance(event, InterruptDetected):
            new_state = self._apply_interrupt(state, event)
        elif isinstance(event, PermissionResolved):
            new_state = self._apply_permission_resolved(state, event)
        elif isinstance(event, PermissionDismissed):
            new_state = self._apply_permission_dismissed(state, event)
        else:
            logger.debug(f"[StateMachine] Unrecognized event type {type(event).__name__}")
            new_state = None

        if new_state is None:
            return TransitionResult(
                state=state, from_phase=from_phase, to_phase=state.phase, ignored=True
            )

        return TransitionResult(state=new_state, from_phase=from_phase, to_phase=new_state.phase)

    def replay(
        self, events: list[SessionEvent], state: SessionState | None = None
    ) -> SessionState | None:
        """Apply a sequence of events and return the final state."""
        for event in events:
            state = self.apply(state, event).state
        return state

    # =========================================================================
    # Hook events
    # =========================================================================

    def _new_session(self, event: HookEvent) -> SessionState:
        logger.debug(f"[StateMachine] New session {event.session_id[:8]} in {event.cwd}")
        return SessionState(
            session_id=event.session_id,
            cwd=event.cwd,
            phase=SessionPhase.IDLE,
            created_at=event.received_at,
            last_activity=event.received_at,
        )

    def _apply_hook_event(self, state: SessionState, event: HookEvent) -> SessionState:
        state = self._refresh_metadata(state, event)

        if event.is_compacting:
            if state.phase == SessionPhase.COMPACTING:
                return state
            return state.model_copy(
                update={
                    "phase": SessionPhase.COMPACTING,
                    "phase_before_compacting": state.phase,
                }
            )

        # Compaction ends with the next real lifecycle event
        if state.phase == SessionPhase.COMPACTING and not event.is_status_only:
            state = state.model_copy(
                update={
                    "phase": state.phase_before_compacting or SessionPhase.PROCESSING,
                    "phase_before_compacting": None,
                }
            )

        kind = event.event_kind
        if kind == HookEventKind.USER_PROMPT_SUBMIT:
            return self._on_user_prompt(state, event)
        if kind in (HookEventKind.PRE_TOOL_USE, HookEventKind.PERMISSION_REQUEST):
            if event.expects_response:
                return self._on_permission_request(state, event)
            return self._on_pre_tool_use(state, event)
        if kind == HookEventKind.POST_TOOL_USE:
            return self._on_post_tool_use(state, event)
        if kind == HookEventKind.STOP:
            return self._on_stop(state, event)
        if kind == HookEventKind.SUBAGENT_STOP:
            return state.model_copy(
                update={
                    "subagents": _close_subagents(
                        state.subagents,
                        ToolCallStatus.SUCCESS,
                        event.received_at,
                        tool_use_id=event.tool_use_id,
                        first_only=True,
                    )
                }
            )
        if kind == HookEventKind.SESSION_STATUS and event.status in STATUS_PHASES:
            return state.model_copy(update={"phase": STATUS_PHASES[event.status]})

        # session-start, notification and unmapped statuses only touch metadata
        return state

    def _refresh_metadata(self, state: SessionState, event: HookEvent) -> SessionState:
        update: dict[str, Any] = {"last_activity": event.received_at}
        if event.cwd:
            update["cwd"] = event.cwd
        if event.tty:
            update["tty"] = event.tty
        if event.pid is not None:
            update["pid"] = event.pid
        if event.transcript_path:
            update["transcript_path"] = event.transcript_path
        return state.model_copy(update=update)

    def _on_user_prompt(self, state: SessionState, event: HookEvent) -> SessionState:
        item = ChatHistoryItem(
            id=f"user-{len(state.history)}-{event.received_at.timestamp():.6f}",
            kind=HistoryItemKind.USER,
            text=event.prompt or "",
            timestamp=event.received_at,
        )
        return state.model_copy(
            update={
                "phase": SessionPhase.PROCESSING,
                "history": _trim(state.history + (item,)),
            }
        )

    def _on_permission_request(self, state: SessionState, event: HookEvent) -> SessionState:
        if not event.tool_use_id:
            logger.warning(
                f"[StateMachine] Approval request without tool_use_id for session "
                f"{state.session_id[:8]}, ignoring"
            )
            return state

        tool_name = event.tool_name or "unknown"
        tool_input = event.tool_input or {}
        history, found = _update_tool(
            state.history,
            event.tool_use_id,
            status=ToolCallStatus.PENDING_APPROVAL,
            tool_input=tool_input,
        )
        if not found:
            history = _trim(
                history
                + (
                    ChatHistoryItem(
                        id=event.tool_use_id,
                        kind=HistoryItemKind.TOOL_CALL,
                        tool=ToolCallRecord(
                            tool_use_id=event.tool_use_id,
                            tool_name=tool_name,
                            tool_input=tool_input,
                            status=ToolCallStatus.PENDING_APPROVAL,
                        ),
                        timestamp=event.received_at,
                    ),
                )
            )

        permission = PermissionContext(
            tool_use_id=event.tool_use_id,
            tool_name=tool_name,
            tool_input=tool_input,
            received_at=event.received_at,
        )
        return state.model_copy(
            update={
                "phase": SessionPhase.WAITING_FOR_APPROVAL,
                "active_permission": permission,
                "history": history,
            }
        )

    def _on_pre_tool_use(self, state: SessionState, event: HookEvent) -> SessionState:
        update: dict[str, Any] = {}
        permission = state.active_permission

        # A live request keeps the approval surfaced; a broken one is superseded
        if permission is not None and permission.outcome is None:
            update["phase"] = SessionPhase.WAITING_FOR_APPROVAL
        else:
            update["phase"] = SessionPhase.PROCESSING
            update["active_permission"] = None

        if event.tool_use_id and state.find_tool_call(event.tool_use_id) is None:
            update["history"] = _trim(
                state.history
                + (
                    ChatHistoryItem(
                        id=event.tool_use_id,
                        kind=HistoryItemKind.TOOL_CALL,
                        tool=ToolCallRecord(
                            tool_use_id=event.tool_use_id,
                            tool_name=event.tool_name or "unknown",
                            tool_input=event.tool_input or {},
                            status=ToolCallStatus.RUNNING,
                        ),
                        timestamp=event.received_at,
                    ),
                )
            )

        if event.tool_use_id and event.tool_name in SUBAGENT_TOOLS:
            description = str((event.tool_input or {}).get("description", ""))
            update["subagents"] = state.subagents + (
                SubagentRecord(
                    tool_use_id=event.tool_use_id,
                    description=description,
                    started_at=event.received_at,
                ),
            )

        return state.model_copy(update=update)

    def _on_post_tool_use(self, state: SessionState, event: HookEvent) -> SessionState:
        if not event.tool_use_id:
            return state

        is_error, text = _summarize_response(event.tool_response)
        status = ToolCallStatus.ERROR if is_error else ToolCallStatus.SUCCESS
        history, found = _update_tool(state.history, event.tool_use_id, status=status, result=text)
        if not found:
            # post-tool-use overtook its pre-tool-use
            history = _trim(
                history
                + (
                    ChatHistoryItem(
                        id=event.tool_use_id,
                        kind=HistoryItemKind.TOOL_CALL,
                        tool=ToolCallRecord(
                            tool_use_id=event.tool_use_id,
                            tool_name=event.tool_name or "unknown",
                            tool_input=event.tool_input or {},
                            status=status,
                            result=text,
                        ),
                        timestamp=event.received_at,
                    ),
                )
            )

        update: dict[str, Any] = {
            "history": history,
            "subagents": _close_subagents(
                state.subagents, status, event.received_at, tool_use_id=event.tool_use_id
            ),
        }
        permission = state.active_permission
        if permission is not None and permission.tool_use_id == event.tool_use_id:
            update["active_permission"] = None
            update["phase"] = SessionPhase.PROCESSING

        return state.model_copy(update=update)

    def _on_stop(self, state: SessionState, event: HookEvent) -> SessionState:
        return state.model_copy(
            update={
                "phase": SessionPhase.IDLE,
                "active_permission": None,
                "phase_before_compacting": None,
                "history": _close_open_tools(state.history, ToolCallStatus.INTERRUPTED),
                "subagents": _close_subagents(
                    state.subagents, ToolCallStatus.INTERRUPTED, event.received_at
                ),
            }
        )

    # =========================================================================
    # Internal events
    # =========================================================================

    def _apply_interrupt(
        self, state: SessionState, event: InterruptDetected
    ) -> SessionState | None:
        if state.phase not in INTERRUPTIBLE_PHASES:
            logger.debug(
                f"[StateMachine] Interrupt for session {state.session_id[:8]} "
                f"in phase {state.phase.value}, ignoring"
            )
            return None

        item = ChatHistoryItem(
            id=f"interrupted-{len(state.history)}-{event.received_at.timestamp():.6f}",
            kind=HistoryItemKind.INTERRUPTED,
            timestamp=event.received_at,
        )
        return state.model_copy(
            update={
                "phase": SessionPhase.INTERRUPTED,
                "active_permission": None,
                "phase_before_compacting": None,
                "history": _trim(
                    _close_open_tools(state.history, ToolCallStatus.INTERRUPTED) + (item,)
                ),
                "subagents": _close_subagents(
                    state.subagents, ToolCallStatus.INTERRUPTED, event.received_at
                ),
                "last_activity": event.received_at,
            }
        )

    def _apply_permission_resolved(
        self, state: SessionState, event: PermissionResolved
    ) -> SessionState | None:
        permission = state.active_permission
        is_active = permission is not None and permission.tool_use_id == event.tool_use_id

        if event.outcome == PermissionOutcome.CANCELED:
            # stop/post-tool-use already moved the session on
            return None

        if event.outcome.is_decision:
            if is_active and permission.outcome is not None:
                # Delivery already failed; the broken affordance stays up
                return None
            if event.outcome == PermissionOutcome.ALLOW:
                history, _ = _update_tool(
                    state.history, event.tool_use_id, status=ToolCallStatus.RUNNING
                )
            else:
                history, _ = _update_tool(
                    state.history,
                    event.tool_use_id,
                    status=ToolCallStatus.DENIED,
                    result=event.reason,
                )
            update: dict[str, Any] = {"history": history, "last_activity": event.received_at}
            if is_active:
                update["active_permission"] = None
                update["phase"] = SessionPhase.PROCESSING
            return state.model_copy(update=update)

        # failed / timed out: keep the affordance visible, marked as broken
        if is_active:
            return state.model_copy(
                update={"active_permission": permission.model_copy(update={"outcome": event.outcome})}
            )

        tool = state.find_tool_call(event.tool_use_id)
        if permission is None and tool is not None and tool.status.is_open:
            # The decision was made but could not be delivered
            return state.model_copy(
                update={
                    "phase": SessionPhase.WAITING_FOR_APPROVAL,
                    "active_permission": PermissionContext(
                        tool_use_id=tool.tool_use_id,
                        tool_name=tool.tool_name,
                        tool_input=tool.tool_input,
                        received_at=event.received_at,
                        outcome=event.outcome,
                    ),
                }
            )
        return None

    def _apply_permission_dismissed(
        self, state: SessionState, event: PermissionDismissed
    ) -> SessionState | None:
        if state.active_permission is None:
            return None

        phase = state.phase
        if phase == SessionPhase.WAITING_FOR_APPROVAL:
            phase = SessionPhase.PROCESSING
        return state.model_copy(
            update={
                "active_permission": None,
                "phase": phase,
                "last_activity": event.received_at,
            }
        )


_default_machine = SessionStateMachine()


def transition(state: SessionState | None, event: SessionEvent) -> SessionState | None:
    """Apply one event and return the next state.

    Returns None when the session is removed; ignored events return the
    input state unchanged.
    """
    return _default_machine.apply(state, event).state
