"""Per-session activity state machine.

Transcript lines are folded into a small set of flags on `TrackedSession`
(in-flight tools, waiting, permission). Most transitions are driven by parsed
events; the rest come from timers standing in for signals the transcript
format does not carry:

* the waiting timer marks a session as waiting for input when output stops
  and no explicit end-of-turn record was written;
* the permission timer flags a tool that stays open with no further output,
  which is how a pending approval prompt looks from the outside.

Every state change is posted to the notifier as a client protocol message.
"""
from __future__ import annotations

import logging
from typing import Protocol

from pydantic import BaseModel

from agentwatch import config
from agentwatch.models import (
    AgentStatus,
    AgentToolDone,
    AgentToolPermission,
    AgentToolPermissionClear,
    AgentToolsClear,
    AgentToolStart,
    SubagentClear,
    SubagentToolDone,
    SubagentToolPermission,
    SubagentToolStart,
)
from agentwatch.observability import record_lines_ingested, record_tool_activity, record_transition
from agentwatch.parsers.events import (
    SubToolFinished,
    SubToolStarted,
    ToolFinished,
    ToolStarted,
    TranscriptEvent,
    TurnEnded,
    TurnRestarted,
)
from agentwatch.parsers.platforms.claude_code.parser import PERMISSION_EXEMPT_TOOLS, SUBAGENT_TOOLS
from agentwatch.parsers.platforms.registry import parse_transcript_line
from agentwatch.sessions import TrackedSession

logger = logging.getLogger("agentwatch.state")


class Notifier(Protocol):
    def post(self, message: BaseModel) -> None: ...


class SessionStateMachine:
    def __init__(
        self,
        notifier: Notifier,
        tool_done_delay: float | None = None,
        permission_delay: float | None = None,
        text_idle_delay: float | None = None,
        tool_idle_delay: float | None = None,
    ):
        self.notifier = notifier
        self.tool_done_delay = config.TOOL_DONE_DELAY_SECONDS if tool_done_delay is None else tool_done_delay
        self.permission_delay = config.PERMISSION_DELAY_SECONDS if permission_delay is None else permission_delay
        self.text_idle_delay = config.TEXT_IDLE_DELAY_SECONDS if text_idle_delay is None else text_idle_delay
        self.tool_idle_delay = config.TOOL_IDLE_DELAY_SECONDS if tool_idle_delay is None else tool_idle_delay

    # ── Input ──────────────────────────────────────────────────────

    def process_lines(self, session: TrackedSession, lines: list[str]) -> None:
        """Fold a batch of complete transcript lines, in file order."""
        lines = [line for line in lines if line.strip()]
        if not lines:
            return
        record_lines_ingested(len(lines), project=session.project_label)
        parsed = [parse_transcript_line(session.log_path, line) for line in lines]
        if not any(parsed):
            # Bookkeeping records (snapshots, summaries) say nothing about activity.
            return

        # Output is flowing, so whatever the timers were waiting for did not happen.
        session.timers.cancel_waiting_timer()
        session.timers.cancel_permission_timer()
        self._clear_permission(session)

        for events in parsed:
            if any(not isinstance(event, TurnEnded) for event in events):
                self._leave_waiting(session)
            for event in events:
                self.apply(session, event)

        self._arm_fallback_timers(session)

    def apply(self, session: TrackedSession, event: TranscriptEvent) -> None:
        if isinstance(event, ToolStarted):
            self._tool_started(session, event)
        elif isinstance(event, ToolFinished):
            self._tool_finished(session, event)
        elif isinstance(event, SubToolStarted):
            self._sub_tool_started(session, event)
        elif isinstance(event, SubToolFinished):
            self._sub_tool_finished(session, event)
        elif isinstance(event, TurnRestarted):
            self.clear_activity(session)
        elif isinstance(event, TurnEnded):
            self._turn_ended(session)

    # ── Transitions ────────────────────────────────────────────────

    def _tool_started(self, session: TrackedSession, event: ToolStarted) -> None:
        if event.invocation_id in session.active_tool_ids:
            return
        session.active_tool_ids.add(event.invocation_id)
        session.active_tool_statuses[event.invocation_id] = event.status_text
        session.active_tool_names[event.invocation_id] = event.tool_name
        session.had_activity_this_turn = True
        session.turn_end_pending = False
        session.timers.cancel_waiting_timer()
        self._clear_permission(session)
        logger.debug(f"Session {session.id} tool start: {event.invocation_id} {event.status_text}")
        record_tool_activity(event.tool_name, "start", project=session.project_label)
        self.notifier.post(
            AgentToolStart(
                id=session.id,
                toolId=event.invocation_id,
                toolName=event.tool_name,
                status=event.status_text,
            )
        )

    def _tool_finished(self, session: TrackedSession, event: ToolFinished) -> None:
        tool_id = event.invocation_id
        if tool_id not in session.active_tool_ids:
            return
        session.active_tool_ids.discard(tool_id)
        session.active_tool_statuses.pop(tool_id, None)
        tool_name = session.active_tool_names.pop(tool_id, "")
        logger.debug(f"Session {session.id} tool done: {tool_id}")
        record_tool_activity(tool_name, "finish", project=session.project_label)

        if tool_name in SUBAGENT_TOOLS or tool_id in session.active_subagent_tool_ids:
            self._clear_subagent(session, tool_id)

        session.timers.schedule_tool_done(
            tool_id,
            self.tool_done_delay,
            self.notifier.post,
            AgentToolDone(id=session.id, toolId=tool_id),
        )

        if not session.active_tool_ids and session.turn_end_pending:
            self._enter_waiting(session)

    def _sub_tool_started(self, session: TrackedSession, event: SubToolStarted) -> None:
        if event.parent_id not in session.active_tool_ids:
            return
        tool_ids = session.active_subagent_tool_ids.setdefault(event.parent_id, set())
        if event.invocation_id in tool_ids:
            return
        tool_ids.add(event.invocation_id)
        session.active_subagent_tool_statuses.setdefault(event.parent_id, {})[event.invocation_id] = event.status_text
        session.active_subagent_tool_names.setdefault(event.parent_id, {})[event.invocation_id] = event.tool_name
        record_tool_activity(event.tool_name, "start", project=session.project_label)
        self.notifier.post(
            SubagentToolStart(
                id=session.id,
                parentToolId=event.parent_id,
                toolId=event.invocation_id,
                toolName=event.tool_name,
                status=event.status_text,
            )
        )

    def _sub_tool_finished(self, session: TrackedSession, event: SubToolFinished) -> None:
        tool_ids = session.active_subagent_tool_ids.get(event.parent_id)
        if not tool_ids or event.invocation_id not in tool_ids:
            return
        tool_ids.discard(event.invocation_id)
        session.active_subagent_tool_statuses.get(event.parent_id, {}).pop(event.invocation_id, None)
        tool_name = session.active_subagent_tool_names.get(event.parent_id, {}).pop(event.invocation_id, "")
        record_tool_activity(tool_name, "finish", project=session.project_label)
        session.timers.schedule_tool_done(
            f"{event.parent_id}:{event.invocation_id}",
            self.tool_done_delay,
            self.notifier.post,
            SubagentToolDone(id=session.id, parentToolId=event.parent_id, toolId=event.invocation_id),
        )

    def _clear_subagent(self, session: TrackedSession, parent_id: str) -> None:
        session.active_subagent_tool_ids.pop(parent_id, None)
        session.active_subagent_tool_statuses.pop(parent_id, None)
        session.active_subagent_tool_names.pop(parent_id, None)
        self.notifier.post(SubagentClear(id=session.id, parentToolId=parent_id))

    def _turn_ended(self, session: TrackedSession) -> None:
        if session.active_tool_ids:
            # Tools still have to report their results before the turn is over.
            session.turn_end_pending = True
            return
        self._enter_waiting(session)

    def clear_activity(self, session: TrackedSession) -> None:
        """Drop all in-flight activity (new prompt, reset or teardown)."""
        session.timers.cancel_waiting_timer()
        session.timers.cancel_permission_timer()
        session.timers.cancel_tool_done_notifications()
        had_permission = session.permission_requested
        session.reset_activity()
        if had_permission:
            self.notifier.post(AgentToolPermissionClear(id=session.id))
        record_transition("cleared", project=session.project_label)
        self.notifier.post(AgentToolsClear(id=session.id))

    def _enter_waiting(self, session: TrackedSession) -> None:
        session.timers.cancel_waiting_timer()
        session.timers.cancel_permission_timer()
        session.turn_end_pending = False
        session.had_activity_this_turn = False
        self._clear_permission(session)
        if session.is_waiting:
            return
        session.is_waiting = True
        logger.debug(f"Session {session.id} is waiting for input")
        record_transition("waiting", project=session.project_label)
        self.notifier.post(AgentStatus(id=session.id, status="waiting"))

    def _leave_waiting(self, session: TrackedSession) -> None:
        if not session.is_waiting:
            return
        session.is_waiting = False
        record_transition("active", project=session.project_label)
        self.notifier.post(AgentStatus(id=session.id, status="active"))

    def _clear_permission(self, session: TrackedSession) -> None:
        if not session.permission_requested:
            return
        session.permission_requested = False
        record_transition("permission_cleared", project=session.project_label)
        self.notifier.post(AgentToolPermissionClear(id=session.id))

    # ── Timers ─────────────────────────────────────────────────────

    def _arm_fallback_timers(self, session: TrackedSession) -> None:
        if not session.active_tool_ids and not session.is_waiting:
            delay = self.tool_idle_delay if session.had_activity_this_turn else self.text_idle_delay
            session.timers.arm_waiting_timer(delay, self._on_waiting_timeout, session)
        if self._permission_candidates(session) and not session.permission_requested:
            session.timers.arm_permission_timer(self.permission_delay, self._on_permission_timeout, session)

    def _on_waiting_timeout(self, session: TrackedSession) -> None:
        if session.active_tool_ids:
            return
        self._enter_waiting(session)

    def _permission_candidates(self, session: TrackedSession) -> tuple[list[str], list[str]] | None:
        tool_ids = sorted(
            tool_id
            for tool_id in session.active_tool_ids
            if session.active_tool_names.get(tool_id, "") not in PERMISSION_EXEMPT_TOOLS
        )
        parent_ids = sorted(
            parent_id
            for parent_id, names in session.active_subagent_tool_names.items()
            if any(name not in PERMISSION_EXEMPT_TOOLS for name in names.values())
        )
        if not tool_ids and not parent_ids:
            return None
        return tool_ids, parent_ids

    def _on_permission_timeout(self, session: TrackedSession) -> None:
        candidates = self._permission_candidates(session)
        if candidates is None or session.permission_requested:
            return
        tool_ids, parent_ids = candidates
        session.permission_requested = True
        logger.info(f"Session {session.id} appears blocked on a permission prompt")
        record_transition("permission", project=session.project_label)
        self.notifier.post(AgentToolPermission(id=session.id, toolIds=tool_ids))
        for parent_id in parent_ids:
            self.notifier.post(SubagentToolPermission(id=session.id, parentToolId=parent_id))

    # ── Resync ─────────────────────────────────────────────────────

    def resend_status(self, session: TrackedSession) -> None:
        """Re-emit everything a freshly connected client needs for ``session``."""
        for tool_id, status in session.active_tool_statuses.items():
            self.notifier.post(
                AgentToolStart(
                    id=session.id,
                    toolId=tool_id,
                    toolName=session.active_tool_names.get(tool_id, ""),
                    status=status,
                )
            )
        for parent_id, statuses in session.active_subagent_tool_statuses.items():
            names = session.active_subagent_tool_names.get(parent_id, {})
            for tool_id, status in statuses.items():
                self.notifier.post(
                    SubagentToolStart(
                        id=session.id,
                        parentToolId=parent_id,
                        toolId=tool_id,
                        toolName=names.get(tool_id, ""),
                        status=status,
                    )
                )
        if session.is_waiting:
            self.notifier.post(AgentStatus(id=session.id, status="waiting"))
        if session.permission_requested:
            self.notifier.post(AgentToolPermission(id=session.id, toolIds=sorted(session.active_tool_ids)))
