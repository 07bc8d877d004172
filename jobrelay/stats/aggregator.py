"""
Statistics aggregator.

A read-only projection over the job store and the worker pool counters.
It never mutates jobs; the only side effect is refreshing the Prometheus
queue-depth gauge.
"""

import logging

from jobrelay.constants import MAX_RECENT_ACTIVITY
from jobrelay.db.store import JobStore
from jobrelay.observability.metrics import get_metrics
from jobrelay.types.stats import (
    ActivityEntry,
    JobTypeStat,
    QueueStats,
    StatusCounts,
    WorkerStats,
)
from jobrelay.worker.pool import WorkerPool

logger = logging.getLogger(__name__)


class StatsAggregator:
    """Builds the dashboard views."""

    def __init__(self, store: JobStore, pool: WorkerPool | None = None):
        """
        Args:
            store: Job store to read counts from.
            pool: Worker pool of this process. Without one, worker counters
                are reported as zero.
        """
        self._store = store
        self._pool = pool
        self._metrics = get_metrics()

    async def status_counts(self) -> StatusCounts:
        counts = StatusCounts.from_counts(await self._store.snapshot())
        self._metrics.update_queue_depth(counts.model_dump(exclude={"total"}))
        return counts

    async def job_type_stats(self) -> list[JobTypeStat]:
        """Per job type counts, sorted by type name."""
        breakdown = await self._store.type_breakdown()
        return [
            JobTypeStat.for_type(job_type, counts)
            for job_type, counts in sorted(breakdown.items())
        ]

    def worker_stats(self) -> WorkerStats:
        if self._pool is None:
            return WorkerStats()
        return self._pool.stats()

    def avg_processing_time_ms(self) -> float:
        return self.worker_stats().avg_processing_time_ms

    async def recent_activity(self, limit: int = 20) -> list[ActivityEntry]:
        """Most recently finished jobs, most recent first."""
        limit = max(0, min(limit, MAX_RECENT_ACTIVITY))
        if limit == 0:
            return []
        jobs = await self._store.recent_activity(limit)
        return [
            ActivityEntry(
                job_id=job.id,
                job_type=job.job_type,
                status=job.status,
                attempts=job.attempts,
                last_error=job.last_error,
                finished_at=job.completed_at,
            )
            for job in jobs
        ]

    async def snapshot(self, activity_limit: int = 20) -> QueueStats:
        """All views in one response."""
        workers = self.worker_stats()
        return QueueStats(
            queue=await self.status_counts(),
            job_types=await self.job_type_stats(),
            workers=workers,
            avg_processing_time_ms=workers.avg_processing_time_ms,
            recent_activity=await self.recent_activity(activity_limit),
        )

    @staticmethod
    def empty() -> QueueStats:
        """All-zero snapshot, served without touching the store."""
        return QueueStats()
