"""Fan-out of outbound notifications to connected clients."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from pydantic import BaseModel

from agentwatch import config

logger = logging.getLogger("agentwatch.notifications")


class NotificationHub:
    """Delivers protocol messages to every subscribed client queue.

    Posting never blocks: a client that falls behind by more than the queue
    size loses messages and is expected to request a resync.
    """

    def __init__(self, queue_size: Optional[int] = None):
        self._queue_size = config.NOTIFICATION_QUEUE_SIZE if queue_size is None else queue_size
        self._subscribers: set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def post(self, message: BaseModel) -> None:
        payload: dict[str, Any] = message.model_dump()
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:
                logger.warning("Dropping %s notification for a slow client", payload.get("type"))
