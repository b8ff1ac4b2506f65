"""Per-session debounce and expiry timers.

Every timer is keyed by purpose within its owning session. Arming a key that
is already armed cancels the existing handle first, so a key never has more
than one pending callback.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger("agentwatch.timers")

WAITING = "waiting"
PERMISSION = "permission"
_TOOL_DONE_PREFIX = "done:"


class SessionTimers:
    """Timer handles owned by one session, scheduled on the asyncio loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._handles: dict[str, asyncio.TimerHandle] = {}

    def __len__(self) -> int:
        return len(self._handles)

    def arm(self, key: str, delay: float, callback: Callable[..., Any], *args: Any) -> None:
        """Schedule ``callback`` under ``key``, replacing any pending timer.

        A non-positive delay runs the callback immediately.
        """
        self.cancel(key)
        if delay <= 0:
            callback(*args)
            return
        loop = self._loop or asyncio.get_running_loop()
        self._handles[key] = loop.call_later(delay, self._fire, key, callback, args)

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def is_armed(self, key: str) -> bool:
        return key in self._handles

    def _fire(self, key: str, callback: Callable[..., Any], args: tuple) -> None:
        self._handles.pop(key, None)
        try:
            callback(*args)
        except Exception:
            logger.exception("Timer callback failed (%s)", key)

    # Intention-revealing wrappers used by the state machine

    def arm_waiting_timer(self, delay: float, callback: Callable[..., Any], *args: Any) -> None:
        self.arm(WAITING, delay, callback, *args)

    def cancel_waiting_timer(self) -> bool:
        return self.cancel(WAITING)

    def arm_permission_timer(self, delay: float, callback: Callable[..., Any], *args: Any) -> None:
        self.arm(PERMISSION, delay, callback, *args)

    def cancel_permission_timer(self) -> bool:
        return self.cancel(PERMISSION)

    def schedule_tool_done(self, tool_key: str, delay: float, callback: Callable[..., Any], *args: Any) -> None:
        self.arm(f"{_TOOL_DONE_PREFIX}{tool_key}", delay, callback, *args)

    def cancel_tool_done_notifications(self) -> None:
        for key in [k for k in self._handles if k.startswith(_TOOL_DONE_PREFIX)]:
            self.cancel(key)
