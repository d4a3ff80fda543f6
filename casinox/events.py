# events.py
"""
Live event fan-out for spectators (websocket clients).

publish() never awaits and never raises: a slow or dead subscriber loses
messages, the settlement path does not notice.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Set

logger = logging.getLogger("casinox.events")

QUEUE_SIZE = 100


class EventBus:

    def __init__(self, queue_size: int = QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, event_type: str, data: Dict[str, Any]) -> int:
        """Fire-and-forget. Returns how many subscribers got the message."""
        message = {"type": event_type, "data": data}
        delivered = 0
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.debug(f"Dropping {event_type} for a slow subscriber")
        return delivered
