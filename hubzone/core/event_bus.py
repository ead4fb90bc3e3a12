"""
In-memory event bus for execution progress.

Typed pub/sub using asyncio.Queue. The job engine publishes
ExecutionEvents; subscribers consume them through an async iterator, and
the most recent events per execution can be pulled at any time. State is
entirely in-memory.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

# Event types
EXECUTION_STARTED = "execution_started"
STAGE_STARTED = "stage_started"
STAGE_COMPLETED = "stage_completed"
DATASET_ACQUIRED = "dataset_acquired"
WARNING = "warning"
EXECUTION_FINISHED = "execution_finished"

# Recent events retained per execution for pull-based queries
HISTORY_SIZE = 200


@dataclass
class ExecutionEvent:
    """One progress event of an import execution."""
    execution_id: str
    event_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "type": self.event_type,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class _EventBus:
    """Singleton event bus for in-process pub/sub."""

    def __init__(self):
        self._subscribers: Set[asyncio.Queue] = set()
        self._history: Dict[str, Deque[ExecutionEvent]] = {}

    def publish(self, event: ExecutionEvent) -> int:
        """
        Publish an event to all subscribers.

        Returns:
            Number of subscribers notified
        """
        history = self._history.setdefault(event.execution_id, deque(maxlen=HISTORY_SIZE))
        history.append(event)

        dead_queues = set()
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # Slow consumer: drop it
                dead_queues.add(queue)

        for q in dead_queues:
            self._subscribers.discard(q)

        return len(self._subscribers)

    async def subscribe(
        self, execution_id: Optional[str] = None, max_queue_size: int = 100
    ) -> AsyncIterator[ExecutionEvent]:
        """
        Async iterator over published events.

        Args:
            execution_id: Only yield events of this execution
            max_queue_size: Max queued events before the subscriber is dropped
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._subscribers.add(queue)
        try:
            while True:
                event = await queue.get()
                if execution_id and event.execution_id != execution_id:
                    continue
                yield event
                if execution_id and event.event_type == EXECUTION_FINISHED:
                    return
        finally:
            self._subscribers.discard(queue)

    def recent(self, execution_id: str) -> List[ExecutionEvent]:
        """Most recent events of one execution, oldest first."""
        return list(self._history.get(execution_id, ()))

    def clear(self) -> None:
        self._subscribers.clear()
        self._history.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


# Module-level singleton
EventBus = _EventBus()
