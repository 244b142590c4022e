"""In-process fan-out of live operation frames to WebSocket subscribers.

Subscribers register a size-1 queue per operation_id. Publishing never
blocks: a subscriber whose queue is still full misses the frame (it can
catch up from the persisted log), except for the terminal 'complete'
frame, which replaces whatever is pending so every subscriber sees the end.

All access happens on the event loop thread, so the registry needs no lock.
"""

import asyncio
from typing import Any

from berth.logging_config import get_logger

logger = get_logger(__name__)


class LiveHub:
    def __init__(self) -> None:
        self._subscribers: dict[str, set[asyncio.Queue]] = {}

    def subscribe(self, operation_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._subscribers.setdefault(operation_id, set()).add(queue)
        return queue

    def unsubscribe(self, operation_id: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(operation_id)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[operation_id]

    def subscriber_count(self, operation_id: str) -> int:
        return len(self._subscribers.get(operation_id, ()))

    def publish(self, operation_id: str, frame: dict[str, Any]) -> None:
        """Deliver frame to every subscriber of operation_id without waiting."""
        for queue in list(self._subscribers.get(operation_id, ())):
            try:
                queue.put_nowait(frame)
            except asyncio.QueueFull:
                if frame.get("type") != "complete":
                    logger.debug("Dropped frame for slow subscriber", operation_id=operation_id)
                    continue
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                queue.put_nowait(frame)


# Process-wide hub shared by stack workers and WebSocket handlers
hub = LiveHub()
