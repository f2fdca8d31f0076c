from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime
import logging
from typing import Any, Dict, Optional

from prbuilder.types import utcnow

logger = logging.getLogger("prbuilder")


@dataclass(frozen=True)
class DecisionEvent:
    repository: str
    decision: str
    outcome: str
    pull_request_id: Optional[str] = None
    commit: Optional[str] = None
    detail: Optional[str] = None
    build_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class EventBroadcaster:
    """
    Fans events out to any number of subscriber queues. Slow subscribers lose
    their oldest events rather than blocking publishers.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = max(1, int(queue_size))
        self._lock = asyncio.Lock()
        self._subscribers: set[asyncio.Queue] = set()

    async def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        async with self._lock:
            self._subscribers.add(queue)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue) -> None:
        async with self._lock:
            self._subscribers.discard(queue)

    async def publish(self, event: DecisionEvent) -> None:
        level = logging.WARNING if event.outcome in ("rejected", "halted") else logging.INFO
        logger.log(
            level,
            "event repo=%s pr=%s commit=%s decision=%s outcome=%s detail=%s",
            event.repository,
            event.pull_request_id,
            event.commit,
            event.decision,
            event.outcome,
            event.detail,
        )

        async with self._lock:
            subscribers = list(self._subscribers)

        payload = event.to_dict()
        for queue in subscribers:
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:
                pass
