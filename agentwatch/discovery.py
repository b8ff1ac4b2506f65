"""Discovery of transcript logs on disk and detection of new (reset) logs.

Claude Code keeps one directory per workspace under ``~/.claude/projects``.
Primary session logs sit directly in it as ``<session>.jsonl``; logs of
delegated sub-sessions live in ``<session>/subagents/*.jsonl`` next to them.
"""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from agentwatch import config

logger = logging.getLogger("agentwatch.discovery")

LOG_SUFFIX = ".jsonl"
SUBAGENTS_DIR_NAME = "subagents"


@dataclass(frozen=True)
class DiscoveredLog:
    path: Path
    session_key: str
    project_dir: Path
    is_subagent: bool
    parent_session_key: Optional[str]
    modified_at: float
    size: int

    def age(self, now: Optional[float] = None) -> float:
        return (time.time() if now is None else now) - self.modified_at


def encode_workspace_path(workspace_path: str) -> str:
    return str(workspace_path).replace(":", "-").replace("\\", "-").replace("/", "-")


def project_dir_for_workspace(workspace_path: str | None, projects_root: Path | None = None) -> Optional[Path]:
    """Map a workspace path to the directory its transcripts are written to."""
    if not workspace_path:
        return None
    root = projects_root or config.CLAUDE_PROJECTS_DIR
    encoded = encode_workspace_path(os.path.abspath(workspace_path))
    candidate = root / encoded
    if candidate.is_dir():
        return candidate

    # Claude Code may also replace underscores with hyphens or normalize
    # case differently. Try matching against existing dirs.
    if root.is_dir():
        norm = encoded.replace("_", "-").lower()
        try:
            for entry in root.iterdir():
                if entry.is_dir() and entry.name.replace("_", "-").lower() == norm:
                    return entry
        except OSError as exc:
            logger.debug(f"Cannot list {root}: {exc}")

    return candidate


def project_label(project_dir: Path | str) -> str:
    """Readable label for a transcript directory, usually the workspace folder name."""
    name = Path(project_dir).name
    if not name.startswith("-"):
        return name
    decoded = Path("/" + name[1:].replace("-", "/"))
    try:
        if decoded.exists():
            return decoded.name
    except OSError:
        pass
    parts = [part for part in name.split("-") if part]
    return parts[-1] if parts else name


def is_subagent_log(path: Path) -> bool:
    return path.parent.name == SUBAGENTS_DIR_NAME


def classify_log_file(path: Path) -> Optional[DiscoveredLog]:
    """Stat and classify a transcript log. Returns None if it cannot be read."""
    try:
        stat = path.stat()
    except OSError:
        return None

    if is_subagent_log(path):
        session_dir = path.parent.parent
        return DiscoveredLog(
            path=path,
            session_key=path.stem,
            project_dir=session_dir.parent,
            is_subagent=True,
            parent_session_key=session_dir.name,
            modified_at=stat.st_mtime,
            size=stat.st_size,
        )
    return DiscoveredLog(
        path=path,
        session_key=path.stem,
        project_dir=path.parent,
        is_subagent=False,
        parent_session_key=None,
        modified_at=stat.st_mtime,
        size=stat.st_size,
    )


def list_log_files(project_dir: Path) -> list[Path]:
    """Primary logs of a project directory plus every sub-session log under it."""
    try:
        entries = list(project_dir.iterdir())
    except OSError:
        return []

    files = [entry for entry in entries if entry.suffix == LOG_SUFFIX and entry.is_file()]
    for entry in entries:
        subagents_dir = entry / SUBAGENTS_DIR_NAME
        try:
            if not subagents_dir.is_dir():
                continue
            files.extend(p for p in subagents_dir.iterdir() if p.suffix == LOG_SUFFIX and p.is_file())
        except OSError:
            continue
    return files


def discover_active_sessions(
    projects_root: Path | None = None,
    max_age_seconds: float | None = None,
    now: float | None = None,
) -> list[DiscoveredLog]:
    """Recently written primary logs across every project, newest first."""
    root = projects_root or config.CLAUDE_PROJECTS_DIR
    max_age = config.DISCOVERY_MAX_AGE_SECONDS if max_age_seconds is None else max_age_seconds
    now = time.time() if now is None else now
    sessions: list[DiscoveredLog] = []

    try:
        if not root.is_dir():
            return sessions
        project_dirs = [entry for entry in root.iterdir() if entry.is_dir()]
    except OSError as exc:
        logger.error(f"Failed to discover sessions: {exc}")
        return sessions

    for project_dir in project_dirs:
        try:
            candidates = [p for p in project_dir.iterdir() if p.suffix == LOG_SUFFIX]
        except OSError:
            continue
        for path in candidates:
            log = classify_log_file(path)
            if log and log.age(now) <= max_age:
                sessions.append(log)

    return sorted(sessions, key=lambda log: log.modified_at, reverse=True)


class DiscoveryScanner:
    """Classifies transcript logs and remembers which ones it has already seen.

    The known-file set lets a periodic scan tell a brand-new log (a new
    session, or a reset of an existing one) apart from logs that were already
    on disk.
    """

    def __init__(
        self,
        active_window: float | None = None,
        subagent_window: float | None = None,
    ):
        self.active_window = config.ACTIVE_WINDOW_SECONDS if active_window is None else active_window
        self.subagent_window = config.SUBAGENT_WINDOW_SECONDS if subagent_window is None else subagent_window
        self.known_files: set[Path] = set()
        self._seeded_dirs: set[Path] = set()

    def is_seeded(self, project_dir: Path) -> bool:
        return Path(project_dir) in self._seeded_dirs

    def seed(self, project_dir: Path) -> int:
        """Mark every log currently in ``project_dir`` as known. Runs once per dir."""
        project_dir = Path(project_dir)
        if project_dir in self._seeded_dirs:
            return 0
        self._seeded_dirs.add(project_dir)
        files = list_log_files(project_dir)
        self.known_files.update(files)
        logger.debug(f"Seeded {len(files)} known logs in {project_dir}")
        return len(files)

    def mark_known(self, path: Path | str) -> None:
        self.known_files.add(Path(path))

    def is_recent(self, log: DiscoveredLog, now: float | None = None) -> bool:
        threshold = self.subagent_window if log.is_subagent else self.active_window
        return log.age(now) <= threshold

    def scan(self, project_dir: Path, now: float | None = None) -> list[DiscoveredLog]:
        """Return logs not seen before that are recent enough to attach to.

        Every new file is recorded as known whether or not it is returned, so
        an old file is ignored once rather than reconsidered on every tick.
        """
        discovered: list[DiscoveredLog] = []
        for path in list_log_files(Path(project_dir)):
            if path in self.known_files:
                continue
            self.known_files.add(path)
            log = classify_log_file(path)
            if log is None or not self.is_recent(log, now):
                continue
            discovered.append(log)
        return sorted(discovered, key=lambda log: str(log.path))

    def find_active(
        self,
        project_dir: Path,
        exclude: Iterable[Path] = (),
        now: float | None = None,
    ) -> list[DiscoveredLog]:
        """Recent logs in ``project_dir`` regardless of the known-file set."""
        excluded = {Path(p) for p in exclude}
        active: list[DiscoveredLog] = []
        for path in list_log_files(Path(project_dir)):
            if path in excluded:
                continue
            log = classify_log_file(path)
            if log is None or not self.is_recent(log, now):
                continue
            self.known_files.add(path)
            active.append(log)
        return sorted(active, key=lambda log: str(log.path))
