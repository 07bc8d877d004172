"""
In-process status-change notification channel.

The job store publishes a JobEvent after every committed transition;
consumers (admin diagnostics, WebSocket streaming, tests) subscribe with a
bounded queue. Slow subscribers lose their oldest events rather than
blocking publishers.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from jobrelay.types.events import JobEvent

logger = logging.getLogger(__name__)


class StatusChannel:
    """Fan-out of job status-change events to subscriber queues."""

    def __init__(self, max_queue_size: int = 1000):
        self._max_queue_size = max_queue_size
        self._subscribers: set[asyncio.Queue[JobEvent]] = set()

    def subscribe(self) -> asyncio.Queue[JobEvent]:
        """Register a new subscriber queue."""
        queue: asyncio.Queue[JobEvent] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[JobEvent]) -> None:
        self._subscribers.discard(queue)

    @asynccontextmanager
    async def subscription(self) -> AsyncIterator[asyncio.Queue[JobEvent]]:
        """Subscribe for the duration of a block."""
        queue = self.subscribe()
        try:
            yield queue
        finally:
            self.unsubscribe(queue)

    def publish(self, event: JobEvent) -> None:
        """Deliver an event to every subscriber without blocking."""
        for queue in list(self._subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.warning(
                    "Status subscriber lagging, dropped oldest event",
                    extra={"job_id": str(event.job_id)},
                )
            queue.put_nowait(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
