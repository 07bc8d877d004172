"""
Admin query interface.

Read views over the stats aggregator plus the two operator commands,
cancel and requeue, and a diagnostic trigger that enqueues one job and
optionally waits for its outcome.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any
from uuid import UUID

from jobrelay.channel import StatusChannel
from jobrelay.config import Settings, get_settings
from jobrelay.constants import MAX_JOB_LOGS, JobStatus
from jobrelay.db.models import Job, JobLog
from jobrelay.db.store import JobStore
from jobrelay.errors import JobNotFoundError
from jobrelay.stats.aggregator import StatsAggregator
from jobrelay.types.api import DiagnosticJobResponse
from jobrelay.types.events import JobEvent
from jobrelay.types.stats import ActivityEntry, JobTypeStat, QueueStats, WorkerStats

logger = logging.getLogger(__name__)

EnqueueFn = Callable[..., Awaitable[UUID]]


class AdminService:
    """
    Operator facing facade.

    While the build_phase setting is on, the read views return the
    all-zero snapshot and never reach the store.
    """

    def __init__(
        self,
        store: JobStore,
        aggregator: StatsAggregator,
        channel: StatusChannel,
        settings: Settings | None = None,
        enqueue: EnqueueFn | None = None,
    ):
        self._store = store
        self._aggregator = aggregator
        self._channel = channel
        self._settings = settings or get_settings()
        self._enqueue = enqueue or store.enqueue

    @property
    def build_phase(self) -> bool:
        return self._settings.build_phase

    # ------------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------------

    async def stats(self, activity_limit: int | None = None) -> QueueStats:
        if self.build_phase:
            return StatsAggregator.empty()
        if activity_limit is None:
            activity_limit = self._settings.recent_activity_limit
        return await self._aggregator.snapshot(activity_limit)

    async def job_type_stats(self) -> list[JobTypeStat]:
        if self.build_phase:
            return []
        return await self._aggregator.job_type_stats()

    async def worker_stats(self) -> WorkerStats:
        if self.build_phase:
            return WorkerStats()
        return self._aggregator.worker_stats()

    async def recent_activity(self, limit: int | None = None) -> list[ActivityEntry]:
        if self.build_phase:
            return []
        if limit is None:
            limit = self._settings.recent_activity_limit
        return await self._aggregator.recent_activity(limit)

    async def get_job(self, job_id: UUID) -> Job:
        """
        Raises:
            JobNotFoundError: Unknown job.
        """
        job = await self._store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def job_logs(self, job_id: UUID, limit: int = MAX_JOB_LOGS) -> Sequence[JobLog]:
        """
        Raises:
            JobNotFoundError: Unknown job.
        """
        if self.build_phase:
            return []
        return await self._store.get_logs(job_id, limit)

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        return await self._store.list_jobs(
            status=status, job_type=job_type, limit=limit, offset=offset
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def cancel(self, job_id: UUID) -> Job:
        """
        Cancel a pending job, or request cancellation of a processing one.

        Raises:
            JobNotFoundError: Unknown job.
            InvalidTransitionError: Job already terminal.
        """
        job = await self._store.cancel(job_id)
        logger.info(
            "Operator cancelled job",
            extra={"job_id": str(job_id), "status": job.status.value},
        )
        return job

    async def requeue(self, job_id: UUID) -> Job:
        """
        Re-arm a failed job with its attempts reset.

        Raises:
            JobNotFoundError: Unknown job.
            InvalidTransitionError: Job is not failed.
        """
        job = await self._store.requeue(job_id)
        logger.info("Operator requeued job", extra={"job_id": str(job_id)})
        return job

    async def trigger_test(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        wait: bool = True,
        timeout_seconds: float = 10.0,
    ) -> DiagnosticJobResponse:
        """
        Enqueue one job for operational verification.

        With wait, blocks until the job reaches a terminal status or the
        timeout elapses; the response says whether it finished.

        Raises:
            ValidationError: Unknown job type or invalid payload.
        """
        # Subscribe before enqueueing so a fast terminal event is not missed
        async with self._channel.subscription() as events:
            job_id = await self._enqueue(job_type, payload or {})
            logger.info(
                "Diagnostic job enqueued",
                extra={"job_id": str(job_id), "job_type": job_type},
            )
            if wait:
                try:
                    await asyncio.wait_for(
                        self._wait_for_terminal(events, job_id),
                        timeout=timeout_seconds,
                    )
                except TimeoutError:
                    logger.info(
                        "Diagnostic job still running after timeout",
                        extra={"job_id": str(job_id)},
                    )

        job = await self.get_job(job_id)
        return DiagnosticJobResponse(
            id=job.id,
            status=job.status,
            finished=job.is_terminal,
            attempts=job.attempts,
            last_error=job.last_error,
            result=job.result,
        )

    @staticmethod
    async def _wait_for_terminal(events: asyncio.Queue[JobEvent], job_id: UUID) -> JobEvent:
        while True:
            event = await events.get()
            if event.job_id == job_id and event.is_terminal:
                return event
