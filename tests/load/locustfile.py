"""
Locust load testing for the job queue API.

Run with:
    locust -f tests/load/locustfile.py --host=http://localhost:8000

Or headless:
    locust -f tests/load/locustfile.py --host=http://localhost:8000 \
        --headless -u 100 -r 10 --run-time 5m
"""

import random
import uuid
from typing import Any

from locust import HttpUser, between, task


class JobQueueUser(HttpUser):
    """
    Simulated client of the job queue.

    Simulates realistic traffic patterns:
    - Job submissions (most common)
    - Job status checks
    - Job listing
    - Dashboard queries
    """

    wait_time = between(0.5, 2)

    def on_start(self):
        """Called when a user starts."""
        self.created_job_ids: list[str] = []

    @task(10)
    def submit_job(self):
        """Submit a new job."""
        job_type = random.choice(["echo", "sleep"])

        payload: dict[str, Any]
        if job_type == "echo":
            payload = {"message": f"Load test at {uuid.uuid4().hex[:8]}"}
        else:
            payload = {"duration_seconds": random.uniform(0.1, 1.0)}

        response = self.client.post(
            "/v1/jobs",
            json={
                "type": job_type,
                "payload": payload,
                "options": {"max_attempts": 3},
            },
            name="/v1/jobs [POST]",
        )

        if response.status_code == 201:
            job_id = response.json().get("id")
            if job_id:
                self.created_job_ids.append(job_id)
                # Keep only recent job IDs
                if len(self.created_job_ids) > 100:
                    self.created_job_ids = self.created_job_ids[-100:]

    @task(5)
    def get_job_status(self):
        """Check status of a previously created job."""
        if not self.created_job_ids:
            return

        job_id = random.choice(self.created_job_ids)
        self.client.get(f"/v1/jobs/{job_id}", name="/v1/jobs/{job_id} [GET]")

    @task(3)
    def list_jobs(self):
        status_filter = random.choice([None, "pending", "processing", "completed", "failed"])
        params: dict[str, Any] = {"limit": 20}
        if status_filter:
            params["status"] = status_filter

        self.client.get("/v1/jobs", params=params, name="/v1/jobs [GET]")

    @task(2)
    def get_stats(self):
        """Poll the admin dashboard."""
        self.client.get("/v1/admin/stats", name="/v1/admin/stats [GET]")

    @task(1)
    def health_check(self):
        self.client.get("/health", name="/health [GET]")


class BurstSubmissionUser(HttpUser):
    """
    User that submits jobs in bursts to exercise backpressure in the pool.
    """

    wait_time = between(5, 10)

    @task
    def burst_submit(self):
        """Submit a burst of jobs."""
        for _ in range(random.randint(10, 50)):
            self.client.post(
                "/v1/jobs",
                json={"type": "echo", "payload": {"burst": True}},
                name="/v1/jobs [POST] (burst)",
            )


class OperatorUser(HttpUser):
    """
    Operator cancelling delayed jobs while they are still pending.
    """

    wait_time = between(1, 3)

    @task
    def submit_and_cancel(self):
        response = self.client.post(
            "/v1/jobs",
            json={"type": "echo", "payload": {}, "options": {"delay_ms": 30000}},
            name="/v1/jobs [POST] (delayed)",
        )
        if response.status_code != 201:
            return

        job_id = response.json()["id"]
        with self.client.post(
            f"/v1/admin/jobs/{job_id}/cancel",
            name="/v1/admin/jobs/{job_id}/cancel [POST]",
            catch_response=True,
        ) as cancel:
            if cancel.status_code == 200 and cancel.json()["status"] != "cancelled":
                cancel.failure("Pending job was not cancelled")
