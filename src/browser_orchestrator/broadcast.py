"""Fan-out of log entries to live subscribers (WebSocket connections)."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, Set

import structlog

from .models import LogEntry

_logger = structlog.get_logger(__name__)


class LogBroadcaster:
    def __init__(self, max_queue_size: int = 1000) -> None:
        self._subscribers: Set[asyncio.Queue[Dict[str, Any]]] = set()
        self._max_queue_size = max_queue_size

    def subscribe(self) -> asyncio.Queue[Dict[str, Any]]:
        queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[Dict[str, Any]]) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, entry: LogEntry) -> None:
        message = {"type": "log", "log": entry.model_dump(mode="json"), "taskId": entry.task_id}
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                _logger.warning("broadcast.subscriber_lagging", task_id=entry.task_id)
