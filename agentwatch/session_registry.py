"""Session registry: the authoritative map of tracked sessions and its persistence."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from agentwatch import config
from agentwatch.discovery import DiscoveredLog, DiscoveryScanner, is_subagent_log, project_dir_for_workspace
from agentwatch.models import (
    AgentClosed,
    AgentCreated,
    AgentReassigned,
    ExistingAgents,
    PersistedSession,
)
from agentwatch.observability import record_transition, start_span
from agentwatch.sessions import TrackedSession, session_key_for
from agentwatch.state_machine import Notifier, SessionStateMachine
from agentwatch.tailer import LogTailer

logger = logging.getLogger("agentwatch.registry")


class DuplicateSessionError(ValueError):
    """A log path is already owned by another session."""


class SessionNotFoundError(KeyError):
    """No session with the requested id is tracked."""


def _is_process_alive(pid: int) -> bool:
    """Check if a process is still running via kill -0."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Exists but different user
    except OSError:
        return False
    return True


class SessionRegistry:
    """Creates, restores, reconciles and removes tracked sessions.

    Every mutation rewrites the JSON snapshot so the persisted set always
    mirrors memory. All methods are expected to run on the event loop.
    """

    def __init__(
        self,
        notifier: Notifier,
        storage_path: Path | None = None,
        workspace_path: str | None = None,
        projects_root: Path | None = None,
        scanner: DiscoveryScanner | None = None,
        state_machine: SessionStateMachine | None = None,
        tailer: LogTailer | None = None,
        stale_after: float | None = None,
        scan_interval: float | None = None,
        cleanup_interval: float | None = None,
        process_alive: Callable[[int], bool] = _is_process_alive,
    ):
        self.notifier = notifier
        self.storage_path = storage_path or config.SESSIONS_FILE
        self.workspace_path = config.WORKSPACE_PATH if workspace_path is None else workspace_path
        self.projects_root = projects_root or config.CLAUDE_PROJECTS_DIR
        self.scanner = scanner or DiscoveryScanner()
        self.state_machine = state_machine or SessionStateMachine(notifier)
        self.tailer = tailer or LogTailer(self.state_machine.process_lines)
        self.stale_after = config.SESSION_STALE_SECONDS if stale_after is None else stale_after
        self.scan_interval = config.PROJECT_SCAN_INTERVAL_SECONDS if scan_interval is None else scan_interval
        self.cleanup_interval = config.CLEANUP_INTERVAL_SECONDS if cleanup_interval is None else cleanup_interval
        self._process_alive = process_alive

        self._sessions: dict[int, TrackedSession] = {}
        self._next_id = 1
        self._focused_id: Optional[int] = None
        self._project_dirs: set[Path] = set()
        self._restored = False
        self._tasks: list[asyncio.Task] = []

    # ── Lookup ─────────────────────────────────────────────────────

    def list_sessions(self) -> list[TrackedSession]:
        return [self._sessions[i] for i in sorted(self._sessions)]

    def get_session(self, session_id: int) -> Optional[TrackedSession]:
        return self._sessions.get(session_id)

    def require_session(self, session_id: int) -> TrackedSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def find_by_path(self, log_path: Path | str) -> Optional[TrackedSession]:
        target = str(log_path)
        for session in self._sessions.values():
            if session.log_path == target:
                return session
        return None

    @property
    def focused_id(self) -> Optional[int]:
        return self._focused_id

    @property
    def project_dirs(self) -> set[Path]:
        return set(self._project_dirs)

    def focus_session(self, session_id: Optional[int]) -> None:
        if session_id is not None and session_id not in self._sessions:
            raise SessionNotFoundError(session_id)
        self._focused_id = session_id

    # ── Id allocation ──────────────────────────────────────────────

    def _allocate_id(self) -> int:
        session_id = self._next_id
        self._next_id += 1
        return session_id

    def _observe_id(self, session_id: int) -> None:
        if session_id >= self._next_id:
            self._next_id = session_id + 1

    # ── Mutation ───────────────────────────────────────────────────

    def track_project_dir(self, project_dir: Path | str) -> None:
        """Include ``project_dir`` in periodic scans, seeding its known files once."""
        project_dir = Path(project_dir)
        if project_dir in self._project_dirs:
            return
        self._project_dirs.add(project_dir)
        self.scanner.seed(project_dir)

    def create_session(
        self,
        session_key: str,
        log_path: Path | str,
        project_dir: Path | str | None = None,
        *,
        pid: Optional[int] = None,
        from_end: bool = False,
        is_subagent: bool | None = None,
        parent_session_key: Optional[str] = None,
        client_created: bool = True,
    ) -> TrackedSession:
        """Start tracking ``log_path``.

        ``from_end`` skips the existing backlog so only new activity is seen.
        ``client_created`` sessions may name a log that does not exist yet.
        """
        self._ensure_restored()
        log_path = Path(log_path).expanduser().absolute()
        if self.find_by_path(log_path) is not None:
            raise DuplicateSessionError(str(log_path))

        if is_subagent is None:
            is_subagent = is_subagent_log(log_path)
        if project_dir is None:
            project_dir = log_path.parent.parent.parent if is_subagent else log_path.parent
        if is_subagent and parent_session_key is None:
            parent_session_key = log_path.parent.parent.name

        session = TrackedSession(
            id=self._allocate_id(),
            session_key=session_key,
            project_dir=str(project_dir),
            log_path=str(log_path),
            is_subagent=is_subagent,
            parent_session_key=parent_session_key,
            pid=pid,
            client_created=client_created,
        )
        if from_end:
            try:
                session.file_offset = log_path.stat().st_size
            except OSError:
                session.file_offset = 0

        self._sessions[session.id] = session
        if not is_subagent:
            self.track_project_dir(project_dir)
        self.scanner.mark_known(log_path)
        logger.info(f"Tracking session {session.id} -> {session_key} ({session.project_label})")
        record_transition("created", project=session.project_label)
        self.notifier.post(
            AgentCreated(
                id=session.id,
                sessionKey=session.session_key,
                projectLabel=session.project_label,
                isSubagent=session.is_subagent,
            )
        )
        self.tailer.attach(session)
        self.snapshot_to_disk()
        return session

    def _teardown(self, session: TrackedSession) -> None:
        # Timers first so no late callback can reach a detached session.
        session.timers.cancel_all()
        self.tailer.detach(session)

    def remove_session(self, session_id: int, reason: str = "closed") -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        self._teardown(session)
        del self._sessions[session_id]
        if self._focused_id == session_id:
            self._focused_id = None
        logger.info(f"Removed session {session_id} ({reason})")
        record_transition("closed", project=session.project_label)
        self.notifier.post(AgentClosed(id=session_id))
        self.snapshot_to_disk()
        return True

    def reassign_session(self, session_id: int, new_log_path: Path | str) -> TrackedSession:
        """Point an existing session at a replacement log, reading it from the start."""
        session = self.require_session(session_id)
        new_log_path = Path(new_log_path)
        self._teardown(session)
        self.state_machine.clear_activity(session)

        session.log_path = str(new_log_path)
        session.session_key = session_key_for(new_log_path)
        session.file_offset = 0
        session.line_buffer = b""
        self.scanner.mark_known(new_log_path)

        logger.info(f"Session {session.id} reassigned to {session.session_key}")
        record_transition("reassigned", project=session.project_label)
        self.notifier.post(
            AgentReassigned(id=session.id, sessionKey=session.session_key, logPath=session.log_path)
        )
        self.snapshot_to_disk()
        self.tailer.attach(session)
        return session

    # ── Persistence ────────────────────────────────────────────────

    def snapshot_to_disk(self) -> None:
        """Write the persistent subset of every primary session."""
        records = [s.to_persisted().model_dump() for s in self.list_sessions() if not s.is_subagent]
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.storage_path.with_name(self.storage_path.name + ".tmp")
            tmp_path.write_text(json.dumps(records, indent=2), encoding="utf-8")
            tmp_path.replace(self.storage_path)
        except OSError as exc:
            logger.error(f"Failed to persist sessions to {self.storage_path}: {exc}")

    def _load_persisted(self) -> list[PersistedSession]:
        if not self.storage_path.exists():
            return []
        try:
            content = self.storage_path.read_text(encoding="utf-8")
            if not content.strip():
                return []
            data = json.loads(content)
        except (OSError, ValueError) as exc:
            logger.error(f"Failed to read persisted sessions: {exc}")
            return []
        if not isinstance(data, list):
            logger.error("Persisted sessions file is not a list; ignoring it")
            return []

        records: list[PersistedSession] = []
        for item in data:
            try:
                records.append(PersistedSession(**item))
            except (TypeError, ValidationError) as exc:
                logger.error(f"Failed to load persisted session: {exc}")
        return records

    def _ensure_restored(self) -> None:
        # The snapshot must be read before anything overwrites it.
        if not self._restored:
            self.restore_from_disk()

    def restore_from_disk(self, now: float | None = None) -> list[TrackedSession]:
        """Reattach sessions from the last snapshot that are still live on disk.

        Tailers start at end-of-file so history is never replayed. The pruned
        set is written back afterwards.
        """
        self._restored = True
        now = time.time() if now is None else now
        restored: list[TrackedSession] = []
        with start_span("agentwatch.restore"):
            for record in self._load_persisted():
                self._observe_id(record.id)
                log_path = Path(record.logPath)
                if is_subagent_log(log_path):
                    continue
                if record.id in self._sessions or self.find_by_path(log_path) is not None:
                    continue
                try:
                    stat = log_path.stat()
                except OSError:
                    continue
                if now - stat.st_mtime > self.stale_after:
                    continue

                session = TrackedSession(
                    id=record.id,
                    session_key=record.sessionKey,
                    project_dir=record.projectDir,
                    log_path=str(log_path),
                    file_offset=stat.st_size,
                )
                self._sessions[session.id] = session
                self.scanner.mark_known(log_path)
                self.track_project_dir(record.projectDir)
                logger.info(f"Restored session {session.id} -> {session.session_key}")
                self.tailer.attach(session)
                restored.append(session)

        self.snapshot_to_disk()
        return restored

    # ── Discovery ──────────────────────────────────────────────────

    def _track_discovered(self, log: DiscoveredLog) -> Optional[TrackedSession]:
        if self.find_by_path(log.path) is not None:
            return None
        return self.create_session(
            log.session_key,
            log.path,
            log.project_dir,
            from_end=True,
            is_subagent=log.is_subagent,
            parent_session_key=log.parent_session_key,
            client_created=False,
        )

    def auto_discover(self, now: float | None = None) -> list[TrackedSession]:
        """Track every recently active log in the workspace's transcript directory."""
        self._ensure_restored()
        project_dir = project_dir_for_workspace(self.workspace_path, self.projects_root)
        if project_dir is None or not project_dir.is_dir():
            return []
        self.track_project_dir(project_dir)
        tracked = {Path(s.log_path) for s in self._sessions.values()}
        created = []
        for log in self.scanner.find_active(project_dir, exclude=tracked, now=now):
            session = self._track_discovered(log)
            if session is not None:
                logger.info(f"Auto-discovered session {session.id} -> {session.session_key}")
                created.append(session)
        return created

    def reconcile_with_discovery(self, now: float | None = None) -> list[TrackedSession]:
        """Scan tracked project dirs for new logs, re-targeting the focused session on reset."""
        self._ensure_restored()
        changed: list[TrackedSession] = []
        with start_span("agentwatch.reconcile"):
            for project_dir in sorted(self._project_dirs):
                new_logs = self.scanner.scan(project_dir, now=now)
                if not new_logs:
                    continue

                primaries = [log for log in new_logs if not log.is_subagent]
                focused = self._sessions.get(self._focused_id) if self._focused_id is not None else None
                if focused is not None and not focused.is_subagent and Path(focused.project_dir) == project_dir:
                    if len(primaries) == 1:
                        replacement = primaries[0]
                        changed.append(self.reassign_session(focused.id, replacement.path))
                        new_logs = [log for log in new_logs if log is not replacement]
                    elif len(primaries) > 1:
                        logger.warning(
                            f"{len(primaries)} new logs appeared in {project_dir} while session "
                            f"{focused.id} was focused; tracking them as separate sessions"
                        )

                for log in new_logs:
                    session = self._track_discovered(log)
                    if session is not None:
                        changed.append(session)
        return changed

    def cleanup_stale_sessions(self, now: float | None = None) -> list[int]:
        """Remove sessions whose process is gone or whose log stopped growing."""
        now = time.time() if now is None else now
        removed: list[int] = []
        for session in self.list_sessions():
            if session.pid is not None:
                if self._process_alive(session.pid):
                    continue
                reason = f"process {session.pid} exited"
            else:
                threshold = self.scanner.subagent_window if session.is_subagent else self.stale_after
                try:
                    modified_at: float | None = Path(session.log_path).stat().st_mtime
                except OSError:
                    modified_at = None
                if session.client_created:
                    # The agent may not have written its first line yet.
                    modified_at = max(modified_at or 0.0, session.created_at)
                if modified_at is None:
                    reason = "log file missing"
                else:
                    age = now - modified_at
                    if age <= threshold:
                        continue
                    reason = f"idle for {int(age)}s"
            if self.remove_session(session.id, reason=reason):
                removed.append(session.id)
        return removed

    # ── Client protocol ────────────────────────────────────────────

    def client_ready(self) -> None:
        self._ensure_restored()
        self.auto_discover()
        self.send_full_state()

    def send_full_state(self) -> None:
        sessions = self.list_sessions()
        self.notifier.post(
            ExistingAgents(
                agents=[s.id for s in sessions],
                agentMeta={str(s.id): s.meta() for s in sessions},
            )
        )
        for session in sessions:
            self.state_machine.resend_status(session)

    # ── Background loops ───────────────────────────────────────────

    def start(self) -> None:
        if self._tasks:
            return
        self._ensure_restored()
        project_dir = project_dir_for_workspace(self.workspace_path, self.projects_root)
        if project_dir is not None:
            self.track_project_dir(project_dir)
        self._tasks = [
            asyncio.create_task(self._every(self.scan_interval, self.reconcile_with_discovery)),
            asyncio.create_task(self._every(self.cleanup_interval, self.cleanup_stale_sessions)),
        ]
        logger.info(f"Session registry started (workspace={self.workspace_path})")

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for session in self.list_sessions():
            session.timers.cancel_all()
        await self.tailer.aclose()
        logger.info("Session registry stopped")

    @staticmethod
    async def _every(interval: float, tick: Callable[[], object]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                tick()
            except Exception:
                logger.exception(f"Periodic {getattr(tick, '__name__', 'task')} failed")
