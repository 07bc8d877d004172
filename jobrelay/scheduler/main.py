"""
Scheduler loop.

Each tick reaps expired leases (every reaper interval), then claims jobs
while the worker pool has free slots, then sleeps until the poll interval
elapses or something wakes it (an enqueue or a freed slot).
"""

import asyncio
import logging
import time
from uuid import uuid4

from jobrelay.config import Settings, get_settings
from jobrelay.constants import SPAN_CLAIM_JOB
from jobrelay.db.store import JobStore
from jobrelay.errors import StoreUnavailableError
from jobrelay.observability.metrics import get_metrics
from jobrelay.observability.tracing import get_tracer
from jobrelay.worker.handlers import HandlerRegistry
from jobrelay.worker.pool import WorkerPool
from jobrelay.worker.retry import RetryPolicy

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Feeds the worker pool from the job store.

    Never claims more jobs than the pool has free slots; excess pending
    jobs simply wait in the store. While the store is unavailable the loop
    backs off with a capped exponential delay instead of polling.
    """

    def __init__(
        self,
        store: JobStore,
        pool: WorkerPool,
        registry: HandlerRegistry,
        settings: Settings | None = None,
        store_policy: RetryPolicy | None = None,
    ):
        settings = settings or get_settings()
        self._store = store
        self._pool = pool
        self._registry = registry
        self._store_policy = store_policy or RetryPolicy.for_store(settings)
        self.poll_interval = settings.worker_poll_interval_seconds
        self.reaper_interval = settings.reaper_interval_seconds

        self._running = False
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._next_reap = 0.0
        self._metrics = get_metrics()

    @property
    def running(self) -> bool:
        return self._running

    def wake(self) -> None:
        """Run the next tick now instead of after the poll interval."""
        self._wake.set()

    async def reap(self) -> int:
        """Recover jobs whose lease expired. Returns the number recovered."""
        count = await self._store.reap_stale()
        self._metrics.record_leases_reaped(count)
        return count

    async def dispatch(self) -> int:
        """
        Claim and submit jobs until the pool is full or nothing is eligible.

        Returns:
            Number of jobs dispatched.
        """
        dispatched = 0
        job_types = self._registry.types()
        while self._pool.free_slots > 0:
            with get_tracer().start_as_current_span(SPAN_CLAIM_JOB) as span:
                span.set_attribute("worker_id", self._pool.worker_id)
                job = await self._store.claim_next(
                    self._pool.worker_id,
                    job_types=job_types,
                    lease_token=uuid4().hex[:12],
                )
            if job is None:
                break
            self._pool.submit(job)
            dispatched += 1
        return dispatched

    async def run_once(self, force_reap: bool = False) -> int:
        """
        Run a single tick (for testing or manual driving).

        Returns:
            Number of jobs dispatched.
        """
        now = time.monotonic()
        if force_reap or now >= self._next_reap:
            await self.reap()
            self._next_reap = now + self.reaper_interval
        return await self.dispatch()

    async def start(self) -> None:
        """Start the scheduler loop in the background."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="scheduler")
        logger.info(
            "Scheduler started",
            extra={
                "poll_interval": self.poll_interval,
                "reaper_interval": self.reaper_interval,
            },
        )

    async def stop(self) -> None:
        """Stop the loop. In-flight jobs are left to the pool."""
        if not self._running:
            return
        logger.info("Scheduler stopping")
        self._running = False
        self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        failures = 0
        while self._running:
            try:
                await self.run_once()
                failures = 0
                delay = self.poll_interval
            except StoreUnavailableError as e:
                delay = self._store_policy.backoff(failures)
                failures += 1
                logger.warning(
                    "Store unavailable, backing off",
                    extra={"delay_seconds": delay, "failures": failures, "error": str(e)},
                )
            except Exception as e:
                logger.exception(f"Error in scheduler loop: {e}")
                delay = self.poll_interval

            await self._sleep(delay)

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except TimeoutError:
            pass
        self._wake.clear()
