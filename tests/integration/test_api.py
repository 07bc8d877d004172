"""
Integration tests for the API endpoints.
"""

from collections.abc import AsyncGenerator
from uuid import uuid4

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobrelay.api import main as api_main
from jobrelay.api.main import create_app, lifespan
from jobrelay.config import Settings
from jobrelay.constants import JobStatus
from jobrelay.engine import JobEngine


class TestJobAPI:
    """Integration tests for job API endpoints."""

    @pytest_asyncio.fixture
    async def created_job(self, client: AsyncClient) -> dict:
        """Create a job for testing."""
        response = await client.post(
            "/v1/jobs",
            json={"type": "echo", "payload": {"test": True}},
        )
        return response.json()

    async def test_create_job_success(self, client: AsyncClient):
        """Test successful job creation."""
        response = await client.post(
            "/v1/jobs",
            json={
                "type": "echo",
                "payload": {"message": "hello"},
                "options": {"max_attempts": 2, "delay_ms": 0},
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert "id" in data
        assert data["status"] == JobStatus.PENDING.value

    async def test_create_job_unknown_type(self, client: AsyncClient):
        response = await client.post("/v1/jobs", json={"type": "teleport", "payload": {}})

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    async def test_create_job_with_tags(self, client: AsyncClient):
        response = await client.post(
            "/v1/jobs",
            json={
                "type": "echo",
                "payload": {},
                "options": {"delay_ms": 60000, "tags": ["nightly"], "created_by": "cron"},
            },
        )
        job_id = response.json()["id"]

        job = (await client.get(f"/v1/jobs/{job_id}")).json()

        assert job["tags"] == ["nightly"]
        assert job["created_by"] == "cron"

    async def test_create_job_invalid_payload(self, client: AsyncClient):
        """Payloads are checked against the handler's schema."""
        response = await client.post(
            "/v1/jobs",
            json={"type": "notify", "payload": {"title": "missing recipient"}},
        )

        assert response.status_code == 400

    async def test_create_job_invalid_options(self, client: AsyncClient):
        response = await client.post(
            "/v1/jobs",
            json={"type": "echo", "options": {"max_attempts": 0}},
        )

        assert response.status_code == 422

    async def test_get_job(self, client: AsyncClient, created_job: dict, wait_for_job):
        await wait_for_job(created_job["id"], JobStatus.COMPLETED)

        response = await client.get(f"/v1/jobs/{created_job['id']}")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == created_job["id"]
        assert data["job_type"] == "echo"
        assert data["status"] == "completed"
        assert data["attempts"] == 1
        assert data["result"] == {"echo": {"test": True}}

    async def test_get_job_not_found(self, client: AsyncClient):
        response = await client.get(f"/v1/jobs/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    async def test_list_jobs(self, client: AsyncClient, created_job: dict):
        await client.post("/v1/jobs", json={"type": "sleep", "payload": {"duration_seconds": 0}})

        response = await client.get("/v1/jobs", params={"type": "echo"})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert [job["id"] for job in data["jobs"]] == [created_job["id"]]

        everything = await client.get("/v1/jobs", params={"limit": 10})
        assert everything.json()["total"] == 2


class TestAdminAPI:
    """Integration tests for the admin endpoints."""

    async def test_stats(self, client: AsyncClient, wait_for_job):
        created = await client.post("/v1/jobs", json={"type": "echo", "payload": {}})
        await wait_for_job(created.json()["id"], JobStatus.COMPLETED)

        response = await client.get("/v1/admin/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["queue"]["completed"] == 1
        assert data["queue"]["total"] == 1
        assert data["job_types"][0]["job_type"] == "echo"
        assert "avg_processing_time_ms" in data
        assert len(data["recent_activity"]) == 1

    async def test_split_views(self, client: AsyncClient):
        types = await client.get("/v1/admin/stats/types")
        workers = await client.get("/v1/admin/stats/workers")
        activity = await client.get("/v1/admin/activity", params={"limit": 5})

        assert types.status_code == 200
        assert types.json() == []
        assert workers.json()["total_processed"] == 0
        assert activity.json() == []

    async def test_cancel_pending(self, client: AsyncClient):
        created = await client.post(
            "/v1/jobs",
            json={"type": "echo", "payload": {}, "options": {"delay_ms": 60000}},
        )
        job_id = created.json()["id"]

        response = await client.post(f"/v1/admin/jobs/{job_id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        again = await client.post(f"/v1/admin/jobs/{job_id}/cancel")
        assert again.status_code == 409

    async def test_job_logs(self, client: AsyncClient, wait_for_job):
        created = await client.post(
            "/v1/jobs",
            json={"type": "echo", "payload": {"message": "hi"}},
        )
        job_id = created.json()["id"]
        await wait_for_job(job_id, JobStatus.COMPLETED)

        response = await client.get(f"/v1/admin/jobs/{job_id}/logs")

        assert response.status_code == 200
        logs = response.json()
        assert logs[0]["message"] == "Job completed successfully"
        assert logs[-1]["message"] == "Job created: echo"
        assert logs[-1]["data"] == {"payload": {"message": "hi"}}
        assert {entry["job_id"] for entry in logs} == {job_id}

    async def test_job_logs_unknown_job(self, client: AsyncClient):
        response = await client.get(f"/v1/admin/jobs/{uuid4()}/logs")

        assert response.status_code == 404
        assert again.json()["error"] == "invalid_transition"

    async def test_cancel_unknown(self, client: AsyncClient):
        response = await client.post(f"/v1/admin/jobs/{uuid4()}/cancel")

        assert response.status_code == 404

    async def test_requeue_failed(self, client: AsyncClient, wait_for_job):
        # No endpoints registered for the recipient, so delivery fails permanently
        created = await client.post(
            "/v1/jobs",
            json={"type": "notify", "payload": {"recipient": "nobody", "title": "Hi"}},
        )
        job_id = created.json()["id"]
        await wait_for_job(job_id, JobStatus.FAILED)

        response = await client.post(f"/v1/admin/jobs/{job_id}/requeue")

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["attempts"] == 0

    async def test_requeue_not_failed(self, client: AsyncClient):
        created = await client.post(
            "/v1/jobs",
            json={"type": "echo", "payload": {}, "options": {"delay_ms": 60000}},
        )

        response = await client.post(f"/v1/admin/jobs/{created.json()['id']}/requeue")

        assert response.status_code == 409

    async def test_trigger_test_job(self, client: AsyncClient):
        response = await client.post(
            "/v1/admin/jobs/test",
            json={"type": "echo", "payload": {"probe": 1}, "timeout_seconds": 5},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["finished"] is True
        assert data["status"] == "completed"
        assert data["result"] == {"echo": {"probe": 1}}


class TestBuildPhaseAPI:
    """During the build phase the dashboard is served all zeros."""

    @pytest_asyncio.fixture
    async def build_client(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry,
        test_settings: Settings,
        transport,
    ) -> AsyncGenerator[AsyncClient]:
        settings = test_settings.model_copy(update={"build_phase": True})
        job_engine = JobEngine(
            session_factory,
            settings=settings,
            registry=registry,
            transport=transport,
            worker_id="build-worker",
        )
        app = create_app(job_engine)
        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as client:
            yield client
        await job_engine.close()

    async def test_stats_zero(self, build_client: AsyncClient, store):
        await store.enqueue("echo", {})

        response = await build_client.get("/v1/admin/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["queue"]["total"] == 0
        assert data["queue"]["pending"] == 0
        assert data["recent_activity"] == []

    async def test_lifespan_does_not_start_engine(self, monkeypatch, tmp_path):
        database_path = tmp_path / "build.db"
        settings = Settings(
            database_url=f"sqlite+aiosqlite:///{database_path}",
            database_auto_create=True,
            api_run_engine=True,
            build_phase=True,
            otel_enabled=False,
        )
        monkeypatch.setattr(api_main, "get_settings", lambda: settings)
        monkeypatch.setattr(api_main, "setup_logging", lambda: None)
        monkeypatch.setattr(api_main, "setup_tracing", lambda: None)
        app = create_app()

        async with lifespan(app):
            engine = app.state.engine
            assert engine is not None
            assert engine.started is False
            assert engine.scheduler.running is False
            assert engine.pool.running is False

        assert app.state.engine is None
        # No schema was created, so nothing ever connected to the database
        assert not database_path.exists()


class TestSubscriptionAPI:
    async def test_register_and_remove(self, client: AsyncClient):
        response = await client.post(
            "/v1/subscriptions",
            json={
                "recipient": "user-1",
                "endpoint": "https://push.example/device",
                "keys": {"p256dh": "key", "auth": "secret"},
            },
        )

        assert response.status_code == 201
        subscription_id = response.json()["id"]
        assert response.json()["recipient"] == "user-1"

        removed = await client.delete(f"/v1/subscriptions/{subscription_id}")
        assert removed.status_code == 204

        missing = await client.delete(f"/v1/subscriptions/{subscription_id}")
        assert missing.status_code == 404

    async def test_register_requires_keys(self, client: AsyncClient):
        response = await client.post(
            "/v1/subscriptions",
            json={"recipient": "user-1", "endpoint": "https://push.example/device"},
        )

        assert response.status_code == 422


class TestHealthAPI:
    """Integration tests for health endpoints."""

    async def test_health_check(self, client: AsyncClient):
        """Test health check endpoint."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert "version" in data

    async def test_readiness_check(self, client: AsyncClient):
        response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json() == {"ready": True}

    async def test_liveness_check(self, client: AsyncClient):
        """Test liveness check endpoint."""
        response = await client.get("/live")

        assert response.status_code == 200
        assert response.json()["alive"] is True

    async def test_metrics(self, client: AsyncClient):
        await client.post("/v1/jobs", json={"type": "echo", "payload": {}})

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "jobrelay_jobs_enqueued_total" in response.text
