"""
Integration tests for the job engine: scheduler, worker pool and reaper
running together against a real database.
"""

import asyncio
from datetime import datetime
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobrelay.config import Settings
from jobrelay.constants import JobStatus
from jobrelay.db.subscriptions import SubscriptionStore
from jobrelay.engine import JobEngine
from jobrelay.errors import PermanentError, TransientError
from jobrelay.types.job import JobContext, JobResult
from jobrelay.worker.handlers import HandlerRegistry


class CountPayload(BaseModel):
    label: str = ""


class TestJobLifecycle:
    """End-to-end job processing through a started engine."""

    async def test_notification_delivered(
        self,
        engine: JobEngine,
        subscriptions: SubscriptionStore,
        transport,
        wait_for_job,
    ):
        """A notify job delivers to the recipient's endpoint and completes."""
        await subscriptions.register(
            "user-1", "https://push.example/device", p256dh="key", auth="secret"
        )
        await engine.start()

        job_id = await engine.enqueue(
            "notify", {"recipient": "user-1", "title": "Hi", "body": "there"}
        )
        job = await wait_for_job(job_id, JobStatus.COMPLETED)
        await engine.pool.drain()

        assert job.attempts == 1
        assert job.result == {"accepted": 1, "gone": 0, "failed": 0}
        assert [endpoint for endpoint, _ in transport.sent] == [
            "https://push.example/device"
        ]
        stats = engine.pool.stats()
        assert stats.total_processed == 1
        assert stats.total_succeeded == 1
        assert stats.total_failed == 0

    async def test_transient_failures_retried(
        self,
        engine: JobEngine,
        registry: HandlerRegistry,
        wait_for_job,
    ):
        """A handler failing twice succeeds on the third and last attempt."""
        calls: list[int] = []

        @registry.handler("flaky")
        async def flaky(payload: dict, context: JobContext) -> JobResult:
            calls.append(context.attempt)
            if len(calls) < 3:
                raise TransientError("upstream unavailable")
            return JobResult.ok({"attempt": context.attempt})

        await engine.start()
        job_id = await engine.enqueue("flaky", {}, max_attempts=3)
        job = await wait_for_job(job_id, JobStatus.COMPLETED, JobStatus.FAILED)

        assert job.status == JobStatus.COMPLETED
        assert job.attempts == 3
        assert calls == [1, 2, 3]
        assert job.last_error == "upstream unavailable"
        assert job.result == {"attempt": 3}

    async def test_retries_exhausted(
        self,
        engine: JobEngine,
        registry: HandlerRegistry,
        wait_for_job,
    ):
        @registry.handler("always_down")
        async def always_down(payload: dict, context: JobContext) -> JobResult:
            return JobResult.retry("still down")

        await engine.start()
        job_id = await engine.enqueue("always_down", {}, max_attempts=2)
        job = await wait_for_job(job_id, JobStatus.FAILED)
        await engine.pool.drain()

        assert job.attempts == 2
        assert job.last_error == "still down"
        assert engine.pool.stats().total_failed == 1

    async def test_permanent_failure_not_retried(
        self,
        engine: JobEngine,
        registry: HandlerRegistry,
        wait_for_job,
    ):
        @registry.handler("reject")
        async def reject(payload: dict, context: JobContext) -> JobResult:
            raise PermanentError("malformed recipient")

        await engine.start()
        job_id = await engine.enqueue("reject", {}, max_attempts=5)
        job = await wait_for_job(job_id, JobStatus.FAILED)

        assert job.attempts == 1
        assert job.last_error == "malformed recipient"

    async def test_unexpected_exception_is_retryable(
        self,
        engine: JobEngine,
        registry: HandlerRegistry,
        wait_for_job,
    ):
        @registry.handler("buggy")
        async def buggy(payload: dict, context: JobContext) -> JobResult:
            raise ValueError("bad math")

        await engine.start()
        job_id = await engine.enqueue("buggy", {}, max_attempts=2)
        job = await wait_for_job(job_id, JobStatus.FAILED)

        assert job.attempts == 2
        assert job.last_error == "ValueError: bad math"

    async def test_unstorable_output_fails_once(
        self,
        engine: JobEngine,
        registry: HandlerRegistry,
        wait_for_job,
    ):
        """Output the result column cannot hold fails the job on its first run."""
        calls: list[int] = []

        @registry.handler("stamp")
        async def stamp(payload: dict, context: JobContext) -> JobResult:
            calls.append(context.attempt)
            return JobResult.ok({"sent_at": datetime(2026, 1, 1, 12, 0)})

        await engine.start()
        job_id = await engine.enqueue("stamp", {}, max_attempts=3)
        job = await wait_for_job(job_id, JobStatus.FAILED, JobStatus.COMPLETED)
        await engine.pool.drain()

        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert calls == [1]
        assert job.last_error.startswith("Outcome could not be recorded")
        assert job.lease_owner is None
        stats = engine.pool.stats()
        assert stats.total_processed == 1
        assert stats.total_failed == 1

    async def test_plain_return_value_is_output(
        self,
        engine: JobEngine,
        registry: HandlerRegistry,
        wait_for_job,
    ):
        @registry.handler("plain")
        async def plain(payload: dict, context: JobContext) -> str:
            return "done"

        @registry.handler("mapping")
        async def mapping(payload: dict, context: JobContext) -> dict:
            return {"rows": 3}

        await engine.start()
        plain_id = await engine.enqueue("plain", {})
        mapping_id = await engine.enqueue("mapping", {})
        plain_job = await wait_for_job(plain_id, JobStatus.COMPLETED, JobStatus.FAILED)
        mapping_job = await wait_for_job(mapping_id, JobStatus.COMPLETED, JobStatus.FAILED)
        await engine.pool.drain()

        assert plain_job.status == JobStatus.COMPLETED
        assert plain_job.result == {"value": "done"}
        assert mapping_job.status == JobStatus.COMPLETED
        assert mapping_job.result == {"rows": 3}
        assert engine.pool.stats().total_succeeded == 2

    async def test_handler_timeout(
        self,
        engine: JobEngine,
        registry: HandlerRegistry,
        wait_for_job,
    ):
        @registry.handler("stuck", timeout_seconds=0.1)
        async def stuck(payload: dict, context: JobContext) -> JobResult:
            await asyncio.sleep(10)
            return JobResult.ok()

        await engine.start()
        job_id = await engine.enqueue("stuck", {}, max_attempts=1)
        job = await wait_for_job(job_id, JobStatus.FAILED)

        assert "timed out" in job.last_error

    async def test_delayed_job_waits(
        self,
        engine: JobEngine,
        wait_for_job,
    ):
        await engine.start()
        job_id = await engine.enqueue("echo", {"x": 1}, delay_ms=300)

        await asyncio.sleep(0.1)
        early = await engine.store.get_job(job_id)
        assert early.status == JobStatus.PENDING

        job = await wait_for_job(job_id, JobStatus.COMPLETED)
        assert job.result == {"echo": {"x": 1}}


class TestCancellation:
    async def test_cancel_pending_never_runs(
        self,
        engine: JobEngine,
        registry: HandlerRegistry,
    ):
        """A job cancelled before dispatch is never handed to a handler."""
        calls: list[str] = []

        @registry.handler("count", schema=CountPayload)
        async def count(payload: CountPayload, context: JobContext) -> JobResult:
            calls.append(payload.label)
            return JobResult.ok()

        job_id = await engine.enqueue("count", {"label": "doomed"})
        cancelled = await engine.admin.cancel(job_id)
        assert cancelled.status == JobStatus.CANCELLED

        await engine.start()
        await asyncio.sleep(0.3)

        job = await engine.store.get_job(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.attempts == 0
        assert calls == []

    async def test_cancel_processing_at_checkpoint(
        self,
        engine: JobEngine,
        wait_for_job,
    ):
        """Cancelling a running job is relayed by the heartbeat."""
        await engine.start()
        job_id = await engine.enqueue(
            "sleep", {"duration_seconds": 10, "checkpoint_interval": 0.02}
        )
        await wait_for_job(job_id, JobStatus.PROCESSING)

        requested = await engine.admin.cancel(job_id)
        assert requested.status == JobStatus.PROCESSING
        assert requested.cancel_requested is True

        job = await wait_for_job(job_id, JobStatus.CANCELLED, timeout=3.0)
        assert job.completed_at is not None
        assert job.lease_owner is None


class TestBackpressure:
    async def test_dispatch_bounded_by_free_slots(
        self,
        engine: JobEngine,
        registry: HandlerRegistry,
    ):
        """The scheduler never claims more jobs than the pool can run."""
        release = asyncio.Event()

        @registry.handler("gate")
        async def gate(payload: dict, context: JobContext) -> JobResult:
            await release.wait()
            return JobResult.ok()

        for _ in range(6):
            await engine.store.enqueue("gate", {})
        await engine.pool.start()

        try:
            assert await engine.scheduler.dispatch() == 4
            assert engine.pool.active == 4
            assert engine.pool.free_slots == 0
            assert await engine.scheduler.dispatch() == 0

            counts = await engine.aggregator.status_counts()
            assert counts.processing == 4
            assert counts.pending == 2

            release.set()
            await engine.pool.drain()
            assert await engine.scheduler.dispatch() == 2
            await engine.pool.drain()
        finally:
            release.set()
            await engine.pool.shutdown()

        counts = await engine.aggregator.status_counts()
        assert counts.completed == 6

    async def test_shutdown_stops_accepting(self, engine: JobEngine):
        await engine.pool.start()
        await engine.pool.shutdown()

        assert engine.pool.free_slots == 0
        with pytest.raises(RuntimeError):
            engine.pool.submit(object())


class TestLeaseRecovery:
    """Jobs held by a crashed worker come back after their lease expires."""

    @pytest_asyncio.fixture
    async def short_lease_engine(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: HandlerRegistry,
        test_settings: Settings,
        transport,
    ) -> AsyncGenerator[JobEngine]:
        settings = test_settings.model_copy(
            update={
                "worker_lease_duration_seconds": 0.3,
                "worker_heartbeat_interval_seconds": 0.05,
                "reaper_interval_seconds": 0.1,
            }
        )
        job_engine = JobEngine(
            session_factory,
            settings=settings,
            registry=registry,
            transport=transport,
            worker_id="survivor",
        )
        yield job_engine
        await job_engine.close()

    async def test_crashed_worker_job_recovered(
        self,
        short_lease_engine: JobEngine,
        wait_for_job,
    ):
        engine = short_lease_engine
        job_id = await engine.enqueue("echo", {"n": 1})
        # Claimed by a worker that never reports back
        crashed = await engine.store.claim_next("crashed-worker", lease_token="gone")
        assert crashed.id == job_id

        await engine.start()
        job = await wait_for_job(job_id, JobStatus.COMPLETED)

        assert job.attempts == 2
        assert job.lease_owner is None

    async def test_heartbeat_keeps_long_job(
        self,
        short_lease_engine: JobEngine,
        wait_for_job,
    ):
        """A job running well past the lease duration is not reaped."""
        engine = short_lease_engine
        await engine.start()

        job_id = await engine.enqueue("sleep", {"duration_seconds": 1.0})
        job = await wait_for_job(job_id, JobStatus.COMPLETED, timeout=5.0)

        assert job.attempts == 1


class TestDiagnostics:
    async def test_trigger_test_waits_for_outcome(self, engine: JobEngine):
        await engine.start()

        response = await engine.admin.trigger_test(
            "echo", {"ping": True}, timeout_seconds=5.0
        )

        assert response.finished is True
        assert response.status == JobStatus.COMPLETED
        assert response.result == {"echo": {"ping": True}}

    async def test_trigger_test_without_wait(self, engine: JobEngine):
        response = await engine.admin.trigger_test("echo", {}, wait=False)

        assert response.finished is False
        assert response.status == JobStatus.PENDING

    async def test_stats_after_processing(self, engine: JobEngine, wait_for_job):
        await engine.start()
        ids = [await engine.enqueue("echo", {"i": i}) for i in range(3)]
        for job_id in ids:
            await wait_for_job(job_id, JobStatus.COMPLETED)
        await engine.pool.drain()

        stats = await engine.admin.stats()

        assert stats.queue.completed == 3
        assert stats.queue.total == 3
        assert stats.workers.total_succeeded == 3
        assert stats.avg_processing_time_ms >= 0.0
        assert {entry.job_id for entry in stats.recent_activity} == set(ids)


class TestSharedStore:
    async def test_two_engines_never_run_a_job_twice(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        transport,
        wait_for_job,
    ):
        runs: list[str] = []

        async def count(payload: CountPayload, context: JobContext) -> JobResult:
            runs.append(payload.label)
            await asyncio.sleep(0.01)
            return JobResult.ok()

        engines = []
        for name in ("worker-a", "worker-b"):
            registry = HandlerRegistry()
            registry.register("count", count, schema=CountPayload)
            engines.append(
                JobEngine(
                    session_factory,
                    settings=test_settings,
                    registry=registry,
                    transport=transport,
                    worker_id=name,
                )
            )

        try:
            ids = [
                await engines[0].enqueue("count", {"label": f"job-{i}"})
                for i in range(8)
            ]
            for job_engine in engines:
                await job_engine.start()
            for job_id in ids:
                job = await wait_for_job(job_id, JobStatus.COMPLETED, timeout=10.0)
                assert job.attempts == 1
        finally:
            for job_engine in engines:
                await job_engine.close()

        assert sorted(runs) == sorted(f"job-{i}" for i in range(8))
