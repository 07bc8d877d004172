"""
Worker pool for executing claimed jobs.

The pool runs up to N jobs concurrently as asyncio tasks, enforces the
per-type timeout, reports each outcome to the job store and keeps the
process-wide worker counters.
"""

import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar
from uuid import UUID

from jobrelay.clock import utcnow
from jobrelay.config import Settings, get_settings
from jobrelay.constants import SPAN_EXECUTE_JOB, JobStatus
from jobrelay.db.models import Job
from jobrelay.db.store import JobStore
from jobrelay.errors import (
    HandlerError,
    InvalidTransitionError,
    JobCancelledError,
    StoreUnavailableError,
)
from jobrelay.observability.logging import log_context
from jobrelay.observability.metrics import get_metrics
from jobrelay.observability.tracing import get_tracer
from jobrelay.types.job import JobContext, JobResult, LeaseInfo
from jobrelay.types.stats import WorkerStats
from jobrelay.worker.handlers import HandlerRegistry
from jobrelay.worker.retry import RetryPolicy, retry_store_operation

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Execution outcomes, also used as the metrics label
OUTCOME_COMPLETED = "completed"
OUTCOME_RETRIED = "retried"
OUTCOME_FAILED = "failed"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_LOST = "lost"


def default_worker_id() -> str:
    """Hostname plus PID, unique per worker process."""
    return f"{os.uname().nodename}-{os.getpid()}"


class WorkerPool:
    """
    Bounded set of concurrent job executors.

    Features:
    - At most `concurrency` jobs in flight; the scheduler asks free_slots
      before claiming
    - Per-type execution timeout
    - Heartbeat that extends leases and relays cancel requests
    - Store outages while reporting are retried with a capped delay; if the
      store stays down the lease expires and the reaper recovers the job
    - Graceful shutdown that waits for in-flight jobs
    """

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        settings: Settings | None = None,
        worker_id: str | None = None,
        retry_policy: RetryPolicy | None = None,
        store_policy: RetryPolicy | None = None,
        on_slot_free: Callable[[], None] | None = None,
    ):
        """
        Initialize the pool.

        Args:
            store: Job store used to report outcomes.
            registry: Handlers by job type.
            settings: Application settings.
            worker_id: Identifier used for leases. Defaults to hostname + PID.
            retry_policy: Backoff for rescheduled jobs.
            store_policy: Backoff while the store is unavailable.
            on_slot_free: Called whenever an executor becomes free.
        """
        self._store = store
        self._registry = registry
        self._settings = settings or get_settings()
        self.worker_id = worker_id or self._settings.worker_id or default_worker_id()
        self.concurrency = self._settings.worker_concurrency
        self._retry_policy = retry_policy or RetryPolicy.for_jobs(self._settings)
        self._store_policy = store_policy or RetryPolicy.for_store(self._settings)
        self._on_slot_free = on_slot_free

        self._tasks: dict[UUID, asyncio.Task] = {}
        self._leases: dict[UUID, LeaseInfo] = {}
        self._heartbeat_task: asyncio.Task | None = None
        self._accepting = False
        self._stats = WorkerStats()
        self._metrics = get_metrics()

    # ------------------------------------------------------------------
    # Capacity and stats
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._accepting

    @property
    def active(self) -> int:
        """Number of jobs currently executing."""
        return len(self._tasks)

    @property
    def free_slots(self) -> int:
        """Executors available for new jobs; zero once shutdown has begun."""
        if not self._accepting:
            return 0
        return max(0, self.concurrency - len(self._tasks))

    def stats(self) -> WorkerStats:
        """Copy of the worker counters."""
        return self._stats.model_copy(update={"active": self.active})

    def _record_outcome(self, job_type: str, outcome: str, duration_seconds: float) -> None:
        self._metrics.record_job_finished(job_type, outcome, duration_seconds)
        if outcome == OUTCOME_LOST:
            return
        stats = self._stats
        stats.total_processed += 1
        if outcome == OUTCOME_COMPLETED:
            stats.total_succeeded += 1
        elif outcome == OUTCOME_FAILED:
            stats.total_failed += 1
        duration_ms = duration_seconds * 1000.0
        stats.avg_processing_time_ms += (
            duration_ms - stats.avg_processing_time_ms
        ) / stats.total_processed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start accepting jobs and run the heartbeat."""
        if self._accepting:
            return
        self._accepting = True
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(), name=f"heartbeat-{self.worker_id}"
        )
        logger.info(
            "Worker pool started",
            extra={"worker_id": self.worker_id, "concurrency": self.concurrency},
        )

    async def shutdown(self, grace_seconds: float | None = None) -> None:
        """
        Stop accepting jobs and wait for in-flight ones.

        Jobs still running after the grace period are cancelled; their
        leases expire and the reaper returns them to pending.
        """
        if grace_seconds is None:
            grace_seconds = self._settings.worker_shutdown_grace_seconds
        self._accepting = False

        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} jobs to complete")
            _, pending = await asyncio.wait(
                list(self._tasks.values()), timeout=grace_seconds
            )
            if pending:
                logger.warning(
                    f"Abandoning {len(pending)} jobs after shutdown grace period",
                    extra={"worker_id": self.worker_id},
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        logger.info("Worker pool stopped", extra={"worker_id": self.worker_id})

    def submit(self, job: Job) -> asyncio.Task:
        """
        Start executing a job the caller has just claimed.

        Raises:
            RuntimeError: No free slot; the caller claimed beyond capacity.
        """
        if self.free_slots <= 0:
            raise RuntimeError("Worker pool has no free slot")
        lease = LeaseInfo(
            job_id=job.id,
            job_type=job.job_type,
            lease_owner=job.lease_owner or self.worker_id,
            acquired_at=utcnow(),
        )
        if job.cancel_requested:
            lease.cancel_event.set()
        self._leases[job.id] = lease
        task = asyncio.create_task(self._execute(job, lease), name=f"job-{job.id}")
        self._tasks[job.id] = task
        self._metrics.record_job_claimed(self.worker_id)
        return task

    async def drain(self) -> None:
        """Wait until every in-flight job has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, job: Job, lease: LeaseInfo) -> None:
        """
        Execute a single job and report its outcome.

        Handles the full lifecycle:
        1. Resolve the handler and decode the payload
        2. Run the handler under the per-type timeout
        3. Report completed, retried, failed or cancelled
        """
        start_time = time.monotonic()
        outcome = OUTCOME_LOST
        with log_context(
            job_id=str(job.id),
            job_type=job.job_type,
            attempt=job.attempts,
            worker_id=self.worker_id,
        ):
            try:
                outcome = await self._run(job, lease)
            except InvalidTransitionError as e:
                # Lease was reaped and possibly claimed again elsewhere
                logger.warning("Outcome rejected, lease lost", extra={"error": str(e)})
            except StoreUnavailableError:
                logger.exception("Could not report outcome, leaving job to the reaper")
            except Exception as e:
                logger.exception("Outcome could not be recorded, failing job")
                outcome = await self._fail_unrecorded(job, lease, e)
            finally:
                duration = time.monotonic() - start_time
                self._record_outcome(job.job_type, outcome, duration)
                self._tasks.pop(job.id, None)
                self._leases.pop(job.id, None)
                if self._on_slot_free is not None:
                    self._on_slot_free()

    async def _run(self, job: Job, lease: LeaseInfo) -> str:
        context = JobContext(
            job_id=job.id,
            job_type=job.job_type,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            lease_owner=lease.lease_owner,
            lease_expires_at=job.lease_expires_at,
            cancel_event=lease.cancel_event,
        )

        logger.info("Executing job")
        try:
            result = await self._invoke(job, context)
        except JobCancelledError:
            await self._report(
                lambda: self._store.acknowledge_cancel(
                    job.id, lease_owner=lease.lease_owner
                ),
                "acknowledge cancellation",
            )
            return OUTCOME_CANCELLED

        if result.success:
            await self._report(
                lambda: self._store.complete(
                    job.id, lease_owner=lease.lease_owner, result=result.output
                ),
                "complete job",
            )
            logger.info("Job completed successfully")
            return OUTCOME_COMPLETED

        delay = self._retry_policy.backoff(job.attempts) if result.retryable else 0.0
        finished = await self._report(
            lambda: self._store.fail(
                job.id,
                result.error or "Unknown error",
                result.retryable,
                lease_owner=lease.lease_owner,
                retry_delay_seconds=delay,
            ),
            "record job failure",
        )
        if finished.status == JobStatus.PENDING:
            return OUTCOME_RETRIED
        if finished.status == JobStatus.CANCELLED:
            return OUTCOME_CANCELLED
        return OUTCOME_FAILED

    async def _invoke(self, job: Job, context: JobContext) -> JobResult:
        """Run the handler and normalise every failure into a JobResult."""
        timeout: float | None = None
        try:
            registration, payload = self._registry.decode(job.job_type, job.payload)
            timeout = registration.timeout_seconds or self._settings.timeout_for(job.job_type)

            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", str(job.id))
                span.set_attribute("job_type", job.job_type)
                span.set_attribute("attempt", job.attempts)

                result = await asyncio.wait_for(
                    registration.handler(payload, context), timeout=timeout
                )
            if result is None:
                return JobResult.ok()
            if not isinstance(result, JobResult):
                # Bare return values are the job output
                return JobResult.ok(result if isinstance(result, dict) else {"value": result})
            return result

        except JobCancelledError:
            raise
        except TimeoutError:
            logger.warning("Job timed out", extra={"timeout_seconds": timeout})
            return JobResult.retry(f"Job timed out after {timeout}s")
        except HandlerError as e:
            return JobResult(
                success=False,
                error=str(e) or e.__class__.__name__,
                retryable=e.retryable,
            )
        except Exception as e:
            logger.exception("Handler raised an unexpected exception")
            return JobResult.retry(f"{e.__class__.__name__}: {e}")

    async def _fail_unrecorded(self, job: Job, lease: LeaseInfo, error: Exception) -> str:
        """
        Fail a job whose outcome the store refused, terminally.

        Driver errors are reported by their underlying cause, e.g. the
        TypeError of output the JSON column cannot hold.
        """
        cause = getattr(error, "orig", None) or error
        try:
            finished = await self._report(
                lambda: self._store.fail(
                    job.id,
                    f"Outcome could not be recorded: {cause.__class__.__name__}: {cause}",
                    False,
                    lease_owner=lease.lease_owner,
                ),
                "record unrecordable outcome",
            )
        except (InvalidTransitionError, StoreUnavailableError) as e:
            logger.warning("Could not fail job, leaving it to the reaper", extra={"error": str(e)})
            return OUTCOME_LOST
        if finished.status == JobStatus.CANCELLED:
            return OUTCOME_CANCELLED
        return OUTCOME_FAILED

    async def _report(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        return await retry_store_operation(
            operation,
            self._store_policy,
            self._settings.store_retry_max_tries,
            description,
        )

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def heartbeat(self) -> None:
        """Extend every held lease once and relay cancel requests."""
        if not self._leases:
            return
        leases = {job_id: lease.lease_owner for job_id, lease in self._leases.items()}
        flagged = await self._store.extend_leases(leases)
        for job_id in flagged:
            lease = self._leases.get(job_id)
            if lease is not None and not lease.cancel_event.is_set():
                logger.info("Relaying cancel request", extra={"job_id": str(job_id)})
                lease.cancel_event.set()

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on running jobs.

        This prevents jobs from being reclaimed by the reaper
        while they're still being executed.
        """
        interval = self._settings.worker_heartbeat_interval_seconds
        while True:
            try:
                await asyncio.sleep(interval)
                await self.heartbeat()
            except asyncio.CancelledError:
                break
            except StoreUnavailableError as e:
                logger.warning("Heartbeat skipped, store unavailable", extra={"error": str(e)})
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")
