"""
Job store for database operations.
Implements the atomic lifecycle transitions of the job queue.
"""

import logging
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import and_, func, select, text, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobrelay.channel import StatusChannel
from jobrelay.clock import utcnow
from jobrelay.config import Settings, get_settings
from jobrelay.constants import (
    MAX_ALLOWED_ATTEMPTS,
    MAX_JOB_LOGS,
    MAX_TAGS,
    TERMINAL_STATUSES,
    JobStatus,
    LogLevel,
    can_transition,
)
from jobrelay.db.models import Job, JobLog
from jobrelay.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from jobrelay.observability.metrics import get_metrics
from jobrelay.types.events import JobEvent
from jobrelay.worker.retry import RetryPolicy

if TYPE_CHECKING:
    from jobrelay.worker.handlers import HandlerRegistry

logger = logging.getLogger(__name__)

# Lost compare-and-set races tolerated per claim before giving up
_CLAIM_RACE_LIMIT = 5


class JobStore:
    """
    Durable record of all jobs; the only component that mutates job rows.

    Every mutation is a conditional UPDATE on (id, status[, lease_owner]),
    so two callers can never both win the same transition. Each public
    operation runs in its own transaction and publishes a JobEvent on the
    status channel after commit.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: "HandlerRegistry",
        settings: Settings | None = None,
        channel: StatusChannel | None = None,
    ):
        """
        Initialize the store.

        Args:
            session_factory: Factory for database sessions.
            registry: Handler registry used to validate enqueued jobs.
            settings: Application settings.
            channel: Optional status-change channel.
        """
        self._session_factory = session_factory
        self._registry = registry
        self._settings = settings or get_settings()
        self._channel = channel

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Open a session in a transaction, translating driver outages."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except (OperationalError, InterfaceError, PoolTimeoutError, OSError) as e:
            logger.warning("Job store unavailable", extra={"error": str(e)})
            raise StoreUnavailableError(str(e)) from e

    def _publish(self, event: JobEvent) -> None:
        if self._channel is not None:
            self._channel.publish(event)

    async def _load(self, session: AsyncSession, job_id: UUID) -> Job:
        job = await session.get(Job, job_id, populate_existing=True)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _reject(
        self,
        job: Job,
        target: JobStatus,
        reason: str | None = None,
    ) -> InvalidTransitionError:
        error = InvalidTransitionError(job.id, job.status, target, reason)
        logger.warning(
            "Rejected job transition",
            extra={
                "job_id": str(job.id),
                "current": job.status.value,
                "target": target.value,
                "reason": reason,
            },
        )
        return error

    async def _compare_and_set(
        self,
        session: AsyncSession,
        job: Job,
        target: JobStatus,
        values: dict[str, Any],
        lease_owner: str | None = None,
    ) -> Job:
        """Apply values only if the row still has the status (and lease) we read."""
        conditions = [Job.id == job.id, Job.status == job.status]
        if lease_owner is not None:
            conditions.append(Job.lease_owner == lease_owner)
        stmt = (
            update(Job)
            .where(and_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            raise self._reject(job, target, "concurrent update")
        return await self._load(session, job.id)

    def _check_lease(self, job: Job, target: JobStatus, lease_owner: str | None) -> None:
        if lease_owner is not None and job.lease_owner != lease_owner:
            raise self._reject(job, target, "lease not held by caller")

    @staticmethod
    def _log(
        session: AsyncSession,
        job_id: UUID,
        level: LogLevel,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Add a job log entry to the current transaction."""
        session.add(JobLog(job_id=job_id, level=level.value, message=message, data=data))

    @staticmethod
    def _failure_entry(job: Job, target: JobStatus) -> tuple[LogLevel, str]:
        if target == JobStatus.PENDING:
            return (
                LogLevel.WARN,
                f"Job failed (attempt {job.attempts}/{job.max_attempts}), "
                f"retrying at {job.scheduled_at.isoformat()}",
            )
        if target == JobStatus.CANCELLED:
            return LogLevel.INFO, "Job cancelled after a failed attempt"
        return LogLevel.ERROR, f"Job failed permanently after {job.attempts} attempts"

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: str,
        payload: Mapping[str, Any] | None = None,
        *,
        delay_ms: int = 0,
        max_attempts: int | None = None,
        priority: int | None = None,
        tags: Sequence[str] | None = None,
        created_by: str | None = None,
    ) -> UUID:
        """
        Create a new pending job.

        Args:
            job_type: Registered job type.
            payload: Opaque payload, validated against the handler's schema.
            delay_ms: Delay before the job becomes eligible.
            max_attempts: Maximum executions, defaults to settings.
            priority: Accepted for compatibility and ignored.
            tags: Free-form labels kept with the job.
            created_by: Who or what submitted the job.

        Returns:
            The new job id.

        Raises:
            ValidationError: Unknown type or invalid payload/options.
        """
        payload = dict(payload or {})
        self._registry.validate(job_type, payload)

        if max_attempts is None:
            max_attempts = self._settings.default_max_attempts
        if not 1 <= max_attempts <= MAX_ALLOWED_ATTEMPTS:
            raise ValidationError(
                f"max_attempts must be between 1 and {MAX_ALLOWED_ATTEMPTS}"
            )
        if delay_ms < 0:
            raise ValidationError("delay_ms must not be negative")
        tags = list(tags or [])
        if len(tags) > MAX_TAGS:
            raise ValidationError(f"At most {MAX_TAGS} tags are allowed")

        now = utcnow()
        job = Job(
            id=uuid4(),
            job_type=job_type,
            payload=payload,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            cancel_requested=False,
            scheduled_at=now + timedelta(milliseconds=delay_ms),
            created_at=now,
            updated_at=now,
            tags=tags,
            created_by=created_by,
        )
        async with self._session() as session:
            session.add(job)
            await session.flush()
            self._log(
                session, job.id, LogLevel.INFO, f"Job created: {job_type}", {"payload": payload}
            )

        logger.info(
            "Enqueued job",
            extra={"job_id": str(job.id), "job_type": job_type, "delay_ms": delay_ms},
        )
        get_metrics().record_job_enqueued(job_type)
        self._publish(JobEvent.job_created(job))
        return job.id

    # ------------------------------------------------------------------
    # Scheduler side
    # ------------------------------------------------------------------

    async def claim_next(
        self,
        worker_id: str,
        *,
        job_types: Iterable[str] | None = None,
        lease_token: str | None = None,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Atomically lease the oldest eligible pending job.

        The candidate row is selected FOR UPDATE SKIP LOCKED where the
        backend supports it, then flipped with a compare-and-set on its
        status, so concurrent callers never receive the same job.

        Args:
            worker_id: Identifier of the claiming worker.
            job_types: Restrict to these job types.
            lease_token: Suffix making the lease owner unique per claim.
            now: Override the current time.

        Returns:
            The leased job or None if nothing is eligible.
        """
        now = now or utcnow()
        lease_expires_at = now + timedelta(
            seconds=self._settings.worker_lease_duration_seconds
        )
        lease_owner = f"{worker_id}:{lease_token}" if lease_token else worker_id

        filters = [
            Job.status == JobStatus.PENDING,
            Job.scheduled_at <= now,
            Job.attempts < Job.max_attempts,
        ]
        if job_types is not None:
            filters.append(Job.job_type.in_(list(job_types)))

        candidates = (
            select(Job.id)
            .where(and_(*filters))
            .order_by(Job.created_at.asc(), Job.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )

        claimed: Job | None = None
        async with self._session() as session:
            for _ in range(_CLAIM_RACE_LIMIT):
                job_id = await session.scalar(candidates)
                if job_id is None:
                    break
                result = await session.execute(
                    update(Job)
                    .where(and_(Job.id == job_id, Job.status == JobStatus.PENDING))
                    .values(
                        status=JobStatus.PROCESSING,
                        attempts=Job.attempts + 1,
                        lease_owner=lease_owner,
                        lease_expires_at=lease_expires_at,
                        started_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed = await self._load(session, job_id)
                    self._log(
                        session,
                        job_id,
                        LogLevel.INFO,
                        f"Job claimed by worker {lease_owner}",
                        {"attempt": claimed.attempts},
                    )
                    break
                logger.debug("Lost claim race", extra={"job_id": str(job_id)})

        if claimed is not None:
            logger.info(
                "Claimed job",
                extra={
                    "job_id": str(claimed.id),
                    "job_type": claimed.job_type,
                    "attempt": claimed.attempts,
                    "lease_owner": lease_owner,
                },
            )
            self._publish(JobEvent.job_started(claimed))
        return claimed

    async def reap_stale(self, now: datetime | None = None) -> int:
        """
        Recover processing jobs whose lease has expired.

        The attempt of a crashed worker was already counted when the job was
        claimed, so attempts stay unchanged. Jobs that used their last attempt
        fail; jobs with a pending cancel request are cancelled.

        Returns:
            Number of recovered jobs.
        """
        now = now or utcnow()
        recovered: list[Job] = []

        async with self._session() as session:
            stale = await session.scalars(
                select(Job).where(
                    and_(
                        Job.status == JobStatus.PROCESSING,
                        Job.lease_expires_at < now,
                    )
                )
            )
            for job in list(stale):
                if job.cancel_requested:
                    target = JobStatus.CANCELLED
                elif job.attempts >= job.max_attempts:
                    target = JobStatus.FAILED
                else:
                    target = JobStatus.PENDING

                values: dict[str, Any] = {
                    "status": target,
                    "lease_owner": None,
                    "lease_expires_at": None,
                    "last_error": "Lease expired before the worker reported an outcome",
                    "updated_at": now,
                }
                if target != JobStatus.PENDING:
                    values["completed_at"] = now

                result = await session.execute(
                    update(Job)
                    .where(
                        and_(
                            Job.id == job.id,
                            Job.status == JobStatus.PROCESSING,
                            Job.lease_owner == job.lease_owner,
                        )
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    recovered.append(await self._load(session, job.id))
                    self._log(
                        session,
                        job.id,
                        LogLevel.WARN,
                        f"Lease expired, job returned to {target.value}",
                        {"lease_owner": job.lease_owner, "attempt": job.attempts},
                    )

        for job in recovered:
            logger.warning(
                "Recovered job with expired lease",
                extra={"job_id": str(job.id), "status": job.status.value},
            )
            self._publish(JobEvent.job_reaped(job))

        if recovered:
            logger.info(f"Recovered {len(recovered)} jobs with expired leases")
        return len(recovered)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def complete(
        self,
        job_id: UUID,
        *,
        lease_owner: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> Job:
        """
        Mark a processing job as successfully completed.

        Raises:
            JobNotFoundError: Unknown job.
            InvalidTransitionError: Job not processing or lease not held.
        """
        now = utcnow()
        async with self._session() as session:
            job = await self._load(session, job_id)
            if not can_transition(job.status, JobStatus.COMPLETED):
                raise self._reject(job, JobStatus.COMPLETED)
            self._check_lease(job, JobStatus.COMPLETED, lease_owner)
            job = await self._compare_and_set(
                session,
                job,
                JobStatus.COMPLETED,
                {
                    "status": JobStatus.COMPLETED,
                    "lease_owner": None,
                    "lease_expires_at": None,
                    "result": result,
                    "completed_at": now,
                    "updated_at": now,
                },
                lease_owner=job.lease_owner,
            )
            self._log(
                session, job_id, LogLevel.INFO, "Job completed successfully", {"result": result}
            )

        logger.info("Job completed", extra={"job_id": str(job_id)})
        self._publish(JobEvent.job_finished(job))
        return job

    async def fail(
        self,
        job_id: UUID,
        error: str,
        retryable: bool,
        *,
        lease_owner: str | None = None,
        retry_delay_seconds: float = 0.0,
        now: datetime | None = None,
    ) -> Job:
        """
        Record a failed execution. Either reschedule or terminate.

        A retryable failure with attempts left goes back to pending, eligible
        after retry_delay_seconds. Anything else is terminal. A job whose
        cancellation was requested while it ran ends cancelled instead.

        Raises:
            JobNotFoundError: Unknown job.
            InvalidTransitionError: Job not processing or lease not held.
        """
        now = now or utcnow()
        async with self._session() as session:
            job = await self._load(session, job_id)
            if job.cancel_requested:
                target = JobStatus.CANCELLED
            elif RetryPolicy.should_retry(job.attempts, job.max_attempts, retryable):
                target = JobStatus.PENDING
            else:
                target = JobStatus.FAILED

            if job.status != JobStatus.PROCESSING or not can_transition(job.status, target):
                raise self._reject(job, target)
            self._check_lease(job, target, lease_owner)

            values: dict[str, Any] = {
                "status": target,
                "lease_owner": None,
                "lease_expires_at": None,
                "last_error": error,
                "updated_at": now,
            }
            if target == JobStatus.PENDING:
                values["scheduled_at"] = now + timedelta(seconds=retry_delay_seconds)
            else:
                values["completed_at"] = now

            job = await self._compare_and_set(
                session, job, target, values, lease_owner=job.lease_owner
            )
            self._log(session, job_id, *self._failure_entry(job, target), {"error": error})

        if target == JobStatus.PENDING:
            logger.info(
                "Job scheduled for retry",
                extra={
                    "job_id": str(job_id),
                    "attempt": job.attempts,
                    "retry_at": job.scheduled_at.isoformat(),
                },
            )
        else:
            logger.warning(
                f"Job {target.value} after {job.attempts} attempts",
                extra={"job_id": str(job_id), "error": error},
            )
        self._publish(JobEvent.job_finished(job))
        return job

    async def acknowledge_cancel(
        self,
        job_id: UUID,
        *,
        lease_owner: str | None = None,
    ) -> Job:
        """
        Finish an in-flight job whose handler stopped at a cancellation checkpoint.

        Raises:
            InvalidTransitionError: Job not processing or no cancel requested.
        """
        now = utcnow()
        async with self._session() as session:
            job = await self._load(session, job_id)
            if job.status != JobStatus.PROCESSING or not job.cancel_requested:
                raise self._reject(job, JobStatus.CANCELLED, "no cancellation requested")
            self._check_lease(job, JobStatus.CANCELLED, lease_owner)
            job = await self._compare_and_set(
                session,
                job,
                JobStatus.CANCELLED,
                {
                    "status": JobStatus.CANCELLED,
                    "lease_owner": None,
                    "lease_expires_at": None,
                    "completed_at": now,
                    "updated_at": now,
                },
                lease_owner=job.lease_owner,
            )
            self._log(session, job_id, LogLevel.INFO, "Job cancelled at checkpoint")

        logger.info("In-flight job cancelled", extra={"job_id": str(job_id)})
        self._publish(JobEvent.job_finished(job))
        return job

    async def extend_leases(
        self,
        leases: Mapping[UUID, str],
        now: datetime | None = None,
    ) -> set[UUID]:
        """
        Extend the leases held by a worker (heartbeat).

        Args:
            leases: job id -> lease owner for every in-flight job.

        Returns:
            Ids of the jobs that have a pending cancel request.
        """
        if not leases:
            return set()
        now = now or utcnow()
        new_expires_at = now + timedelta(
            seconds=self._settings.worker_lease_duration_seconds
        )

        async with self._session() as session:
            for job_id, lease_owner in leases.items():
                await session.execute(
                    update(Job)
                    .where(
                        and_(
                            Job.id == job_id,
                            Job.status == JobStatus.PROCESSING,
                            Job.lease_owner == lease_owner,
                        )
                    )
                    .values(lease_expires_at=new_expires_at, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            flagged = await session.scalars(
                select(Job.id).where(
                    and_(
                        Job.id.in_(list(leases)),
                        Job.cancel_requested.is_(True),
                    )
                )
            )
            return set(flagged)

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    async def cancel(self, job_id: UUID) -> Job:
        """
        Cancel a job.

        Pending jobs are cancelled immediately. For processing jobs the
        cancellation is advisory: the request is recorded and the worker
        finishes the job as cancelled at its next checkpoint or outcome.

        Raises:
            JobNotFoundError: Unknown job.
            InvalidTransitionError: Job already terminal.
        """
        now = utcnow()
        async with self._session() as session:
            job = await self._load(session, job_id)
            if job.status == JobStatus.PENDING:
                job = await self._compare_and_set(
                    session,
                    job,
                    JobStatus.CANCELLED,
                    {
                        "status": JobStatus.CANCELLED,
                        "completed_at": now,
                        "updated_at": now,
                    },
                )
                self._log(session, job_id, LogLevel.INFO, "Job cancelled")
                event = JobEvent.job_finished(job)
            elif job.status == JobStatus.PROCESSING:
                job = await self._compare_and_set(
                    session,
                    job,
                    JobStatus.CANCELLED,
                    {"cancel_requested": True, "updated_at": now},
                    lease_owner=job.lease_owner,
                )
                self._log(session, job_id, LogLevel.INFO, "Cancellation requested while processing")
                event = JobEvent.cancel_requested(job)
            else:
                raise self._reject(job, JobStatus.CANCELLED)

        logger.info(
            "Job cancellation accepted",
            extra={"job_id": str(job_id), "status": job.status.value},
        )
        self._publish(event)
        return job

    async def requeue(self, job_id: UUID) -> Job:
        """
        Re-arm a failed job with a fresh attempt budget.

        Raises:
            JobNotFoundError: Unknown job.
            InvalidTransitionError: Job is not failed.
        """
        now = utcnow()
        async with self._session() as session:
            job = await self._load(session, job_id)
            if job.status != JobStatus.FAILED:
                raise self._reject(job, JobStatus.PENDING, "only failed jobs can be requeued")
            job = await self._compare_and_set(
                session,
                job,
                JobStatus.PENDING,
                {
                    "status": JobStatus.PENDING,
                    "attempts": 0,
                    "cancel_requested": False,
                    "scheduled_at": now,
                    "started_at": None,
                    "completed_at": None,
                    "updated_at": now,
                },
            )
            self._log(
                session, job_id, LogLevel.INFO, "Job requeued", {"previous_error": job.last_error}
            )

        logger.info("Job requeued", extra={"job_id": str(job_id)})
        self._publish(JobEvent.job_requeued(job))
        return job

    # ------------------------------------------------------------------
    # Job logs
    # ------------------------------------------------------------------

    async def log(
        self,
        job_id: UUID,
        level: LogLevel,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        """
        Append an entry to a job's execution log.

        Raises:
            JobNotFoundError: Unknown job.
        """
        async with self._session() as session:
            await self._load(session, job_id)
            self._log(session, job_id, LogLevel(level), message, data)

    async def get_logs(self, job_id: UUID, limit: int = MAX_JOB_LOGS) -> Sequence[JobLog]:
        """
        Execution log of a job, newest first.

        Raises:
            JobNotFoundError: Unknown job.
        """
        async with self._session() as session:
            await self._load(session, job_id)
            logs = await session.scalars(
                select(JobLog)
                .where(JobLog.job_id == job_id)
                .order_by(JobLog.created_at.desc(), JobLog.id.desc())
                .limit(limit)
            )
            return logs.all()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get_job(self, job_id: UUID) -> Job | None:
        async with self._session() as session:
            return await session.get(Job, job_id)

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs, newest first, with optional filtering.

        Returns:
            Tuple of (jobs, total_count).
        """
        filters = []
        if status is not None:
            filters.append(Job.status == status)
        if job_type is not None:
            filters.append(Job.job_type == job_type)

        async with self._session() as session:
            count_stmt = select(func.count()).select_from(Job)
            stmt = select(Job).order_by(Job.created_at.desc()).limit(limit).offset(offset)
            if filters:
                count_stmt = count_stmt.where(and_(*filters))
                stmt = stmt.where(and_(*filters))
            total = (await session.scalar(count_stmt)) or 0
            jobs = (await session.scalars(stmt)).all()
        return jobs, total

    async def snapshot(self) -> dict[str, int]:
        """Job counts by status."""
        async with self._session() as session:
            rows = await session.execute(
                select(Job.status, func.count()).group_by(Job.status)
            )
            return {status.value: count for status, count in rows.all()}

    async def type_breakdown(self) -> dict[str, dict[str, int]]:
        """Job counts by type and status."""
        breakdown: dict[str, dict[str, int]] = {}
        async with self._session() as session:
            rows = await session.execute(
                select(Job.job_type, Job.status, func.count()).group_by(
                    Job.job_type, Job.status
                )
            )
            for job_type, status, count in rows.all():
                breakdown.setdefault(job_type, {})[status.value] = count
        return breakdown

    async def recent_activity(self, limit: int = 20) -> Sequence[Job]:
        """Most recently finished jobs, most recent first."""
        async with self._session() as session:
            jobs = await session.scalars(
                select(Job)
                .where(Job.status.in_(list(TERMINAL_STATUSES)))
                .order_by(Job.completed_at.desc(), Job.updated_at.desc())
                .limit(limit)
            )
            return jobs.all()

    async def ping(self) -> bool:
        """Check database connectivity."""
        try:
            async with self._session() as session:
                await session.execute(text("SELECT 1"))
        except StoreUnavailableError:
            return False
        return True
