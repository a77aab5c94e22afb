from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Iterable
from typing import Any

logger = logging.getLogger(__name__)

MESSAGE_RECEIVED = "message.received"
MESSAGE_REPLIED = "message.replied"
MESSAGE_DENIED = "message.denied"
CRON_FIRED = "cron.fired"


class InMemoryEventBus:
    """Fan-out of runtime lifecycle events to in-process observers.

    Each subscriber owns a bounded queue; when it falls behind, the oldest
    event is dropped so publishers never block.
    """

    def __init__(self, *, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[str, tuple[asyncio.Queue, frozenset[str] | None]] = {}

    def subscribe(self, topics: Iterable[str] | None = None) -> tuple[str, asyncio.Queue]:
        subscription_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[subscription_id] = (queue, frozenset(topics) if topics is not None else None)
        return subscription_id, queue

    def unsubscribe(self, subscription_id: str) -> None:
        self._subscribers.pop(subscription_id, None)

    def publish(self, event_name: str, data: dict[str, Any]) -> int:
        """Deliver to every matching subscriber; returns how many received it."""
        payload = {"event": event_name, "data": data}
        delivered = 0
        for queue, topics in list(self._subscribers.values()):
            if topics is not None and event_name not in topics:
                continue
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.debug("Event bus subscriber lagging; dropped oldest event")
            queue.put_nowait(payload)
            delivered += 1
        return delivered
