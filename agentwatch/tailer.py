"""Incremental transcript reader using watchfiles plus a polling fallback.

Each attached session gets two producers: a `watchfiles` change stream for
its log's directory and a fixed-interval poll. Change notifications are only
a hint; both producers call the same idempotent `read_available`, which reads
whatever bytes were appended since the last call.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from watchfiles import Change, awatch

from agentwatch import config
from agentwatch.sessions import TrackedSession

logger = logging.getLogger("agentwatch.tailer")

LineHandler = Callable[[TrackedSession, list[str]], None]


def split_complete_lines(pending: bytes, chunk: bytes) -> tuple[list[str], bytes]:
    """Join ``pending`` and ``chunk`` and split off complete lines.

    Returns the non-blank complete lines and the trailing unterminated
    fragment, which must be carried into the next read.
    """
    parts = (pending + chunk).split(b"\n")
    remainder = parts.pop()
    lines = []
    for raw in parts:
        line = raw.decode("utf-8", errors="replace").rstrip("\r")
        if line.strip():
            lines.append(line)
    return lines, remainder


@dataclass(eq=False)
class _Watch:
    session: TrackedSession
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: list[asyncio.Task] = field(default_factory=list)


class LogTailer:
    """Attaches to session logs and hands newly completed lines to a handler."""

    def __init__(
        self,
        on_lines: LineHandler,
        poll_interval: float | None = None,
        use_notifications: bool = True,
        debounce_ms: int | None = None,
    ):
        self._on_lines = on_lines
        self._poll_interval = config.FILE_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self._use_notifications = use_notifications
        self._debounce_ms = config.WATCH_DEBOUNCE_MS if debounce_ms is None else debounce_ms
        self._watches: dict[int, _Watch] = {}

    def is_attached(self, session: TrackedSession) -> bool:
        return session.id in self._watches

    def attach(self, session: TrackedSession) -> None:
        """Start following ``session.log_path`` from ``session.file_offset``."""
        if session.id in self._watches:
            self.detach(session)

        watch = _Watch(session)
        self._watches[session.id] = watch
        watch.tasks.append(asyncio.create_task(self._poll_loop(watch)))
        if self._use_notifications:
            watch.tasks.append(asyncio.create_task(self._notify_loop(watch)))
        logger.debug(f"Tailing {session.log_path} for session {session.id} from offset {session.file_offset}")

        self.read_available(session)

    def detach(self, session: TrackedSession) -> None:
        """Stop both producers for ``session``. Safe to call when not attached."""
        watch = self._watches.pop(session.id, None)
        if watch is None:
            return
        watch.stop_event.set()
        for task in watch.tasks:
            task.cancel()
        logger.debug(f"Stopped tailing {session.log_path} for session {session.id}")

    async def aclose(self) -> None:
        watches = list(self._watches.values())
        for watch in watches:
            self.detach(watch.session)
        tasks = [task for watch in watches for task in watch.tasks]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def read_available(self, session: TrackedSession) -> list[str]:
        """Read bytes appended since the last call and dispatch complete lines.

        A no-op when the file has not grown past the recorded offset. I/O
        errors are treated as transient and left for the next tick.
        """
        path = Path(session.log_path)
        try:
            size = path.stat().st_size
            if size <= session.file_offset:
                return []
            with path.open("rb") as handle:
                handle.seek(session.file_offset)
                chunk = handle.read(size - session.file_offset)
        except OSError as exc:
            logger.debug(f"Read skipped for session {session.id}: {exc}")
            return []

        if not chunk:
            return []
        session.file_offset += len(chunk)
        lines, session.line_buffer = split_complete_lines(session.line_buffer, chunk)
        if lines:
            self._on_lines(session, lines)
        return lines

    def _current(self, watch: _Watch) -> bool:
        return self._watches.get(watch.session.id) is watch

    def _safe_read(self, watch: _Watch) -> None:
        if not self._current(watch):
            return
        try:
            self.read_available(watch.session)
        except Exception:
            logger.exception(f"Error processing transcript for session {watch.session.id}")

    async def _poll_loop(self, watch: _Watch) -> None:
        while not watch.stop_event.is_set():
            await asyncio.sleep(self._poll_interval)
            if not self._current(watch):
                return
            self._safe_read(watch)

    async def _notify_loop(self, watch: _Watch) -> None:
        log_path = Path(watch.session.log_path)
        target = log_path.name

        def _only_log(change: Change, path: str) -> bool:
            return change != Change.deleted and Path(path).name == target

        try:
            async for _changes in awatch(
                log_path.parent,
                watch_filter=_only_log,
                stop_event=watch.stop_event,
                debounce=self._debounce_ms,
                recursive=False,
            ):
                if not self._current(watch):
                    break
                self._safe_read(watch)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Polling keeps the session alive without notifications.
            logger.info(f"Change notifications unavailable for {log_path}: {exc}")
