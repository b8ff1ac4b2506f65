"""In-memory record of one tracked transcript."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from agentwatch.discovery import project_label
from agentwatch.models import PersistedSession, SessionMeta, SessionSummary, ToolActivity
from agentwatch.timers import SessionTimers


@dataclass(eq=False)
class TrackedSession:
    """Mutable state for one session.

    Owned by the registry. The tailer advances the cursor fields and the state
    machine folds parsed events into the activity fields; both run on the
    event loop, one callback at a time.
    """

    id: int
    session_key: str
    project_dir: str
    log_path: str

    # Tail cursor
    file_offset: int = 0
    line_buffer: bytes = b""

    # In-flight tools of the session itself
    active_tool_ids: set[str] = field(default_factory=set)
    active_tool_statuses: dict[str, str] = field(default_factory=dict)
    active_tool_names: dict[str, str] = field(default_factory=dict)

    # Nested activity of delegated sub-sessions, keyed by the parent tool id
    active_subagent_tool_ids: dict[str, set[str]] = field(default_factory=dict)
    active_subagent_tool_statuses: dict[str, dict[str, str]] = field(default_factory=dict)
    active_subagent_tool_names: dict[str, dict[str, str]] = field(default_factory=dict)

    is_waiting: bool = False
    permission_requested: bool = False
    had_activity_this_turn: bool = False
    turn_end_pending: bool = False

    is_subagent: bool = False
    parent_session_key: Optional[str] = None
    pid: Optional[int] = None
    # Requested by a client rather than found on disk or restored
    client_created: bool = False
    created_at: float = field(default_factory=time.time)

    timers: SessionTimers = field(default_factory=SessionTimers, repr=False)

    @property
    def project_label(self) -> str:
        return project_label(self.project_dir)

    @property
    def status(self) -> str:
        if self.permission_requested:
            return "permission"
        if self.is_waiting:
            return "waiting"
        return "active"

    def has_activity(self) -> bool:
        return bool(self.active_tool_ids or self.active_subagent_tool_ids)

    def reset_activity(self) -> None:
        self.active_tool_ids.clear()
        self.active_tool_statuses.clear()
        self.active_tool_names.clear()
        self.active_subagent_tool_ids.clear()
        self.active_subagent_tool_statuses.clear()
        self.active_subagent_tool_names.clear()
        self.is_waiting = False
        self.permission_requested = False
        self.had_activity_this_turn = False
        self.turn_end_pending = False

    def to_persisted(self) -> PersistedSession:
        return PersistedSession(
            id=self.id,
            sessionKey=self.session_key,
            logPath=self.log_path,
            projectDir=self.project_dir,
        )

    def meta(self) -> SessionMeta:
        return SessionMeta(
            sessionKey=self.session_key,
            projectLabel=self.project_label,
            projectDir=self.project_dir,
            isSubagent=self.is_subagent,
            parentSessionKey=self.parent_session_key,
        )

    def summary(self, focused: bool = False) -> SessionSummary:
        tools = [
            ToolActivity(
                toolId=tool_id,
                toolName=self.active_tool_names.get(tool_id, ""),
                status=status,
            )
            for tool_id, status in self.active_tool_statuses.items()
        ]
        for parent_id, statuses in self.active_subagent_tool_statuses.items():
            names = self.active_subagent_tool_names.get(parent_id, {})
            tools.extend(
                ToolActivity(
                    toolId=tool_id,
                    toolName=names.get(tool_id, ""),
                    status=status,
                    parentToolId=parent_id,
                )
                for tool_id, status in statuses.items()
            )
        return SessionSummary(
            id=self.id,
            sessionKey=self.session_key,
            logPath=self.log_path,
            projectDir=self.project_dir,
            projectLabel=self.project_label,
            isSubagent=self.is_subagent,
            parentSessionKey=self.parent_session_key,
            status=self.status,
            focused=focused,
            fileOffset=self.file_offset,
            tools=tools,
        )


def session_key_for(path: Path | str) -> str:
    return Path(path).stem
