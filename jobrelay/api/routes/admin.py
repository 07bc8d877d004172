"""
Admin routes: dashboard statistics, operator commands and diagnostics.
"""

from uuid import UUID

from fastapi import APIRouter, Query

from jobrelay.api.dependencies import AdminDep
from jobrelay.constants import API_V1_PREFIX, MAX_JOB_LOGS, MAX_RECENT_ACTIVITY
from jobrelay.types.api import (
    DiagnosticJobRequest,
    DiagnosticJobResponse,
    JobLogResponse,
    JobStatusResponse,
)
from jobrelay.types.stats import ActivityEntry, JobTypeStat, QueueStats, WorkerStats

router = APIRouter(prefix=f"{API_V1_PREFIX}/admin", tags=["Admin"])


@router.get(
    "/stats",
    response_model=QueueStats,
    summary="Queue statistics",
    description="Status counts, per-type breakdown, worker counters and recent activity.",
)
async def get_stats(
    admin: AdminDep,
    activity_limit: int | None = Query(default=None, ge=0, le=MAX_RECENT_ACTIVITY),
) -> QueueStats:
    return await admin.stats(activity_limit)


@router.get("/stats/types", response_model=list[JobTypeStat], summary="Per job type statistics")
async def get_job_type_stats(admin: AdminDep) -> list[JobTypeStat]:
    return await admin.job_type_stats()


@router.get("/stats/workers", response_model=WorkerStats, summary="Worker counters")
async def get_worker_stats(admin: AdminDep) -> WorkerStats:
    return await admin.worker_stats()


@router.get(
    "/activity",
    response_model=list[ActivityEntry],
    summary="Recently finished jobs",
)
async def get_recent_activity(
    admin: AdminDep,
    limit: int | None = Query(default=None, ge=1, le=MAX_RECENT_ACTIVITY),
) -> list[ActivityEntry]:
    return await admin.recent_activity(limit)


@router.post(
    "/jobs/{job_id}/cancel",
    response_model=JobStatusResponse,
    summary="Cancel a job",
    description=(
        "Pending jobs are cancelled immediately. Processing jobs get a "
        "cancellation request that the handler honours at its next checkpoint."
    ),
)
async def cancel_job(job_id: UUID, admin: AdminDep) -> JobStatusResponse:
    job = await admin.cancel(job_id)
    return JobStatusResponse(
        id=job.id,
        status=job.status,
        cancel_requested=job.cancel_requested,
        attempts=job.attempts,
    )


@router.post(
    "/jobs/{job_id}/requeue",
    response_model=JobStatusResponse,
    summary="Requeue a failed job",
)
async def requeue_job(job_id: UUID, admin: AdminDep) -> JobStatusResponse:
    job = await admin.requeue(job_id)
    return JobStatusResponse(
        id=job.id,
        status=job.status,
        cancel_requested=job.cancel_requested,
        attempts=job.attempts,
    )


@router.post(
    "/jobs/test",
    response_model=DiagnosticJobResponse,
    summary="Trigger a diagnostic job",
    description="Enqueue one job and optionally wait for its outcome.",
)
async def trigger_test_job(
    request: DiagnosticJobRequest,
    admin: AdminDep,
) -> DiagnosticJobResponse:
    return await admin.trigger_test(
        request.type,
        request.payload,
        wait=request.wait,
        timeout_seconds=request.timeout_seconds,
    )


@router.get(
    "/jobs/{job_id}/logs",
    response_model=list[JobLogResponse],
    summary="Job execution log",
    description="Lifecycle entries recorded by the job store, newest first.",
)
async def get_job_logs(
    job_id: UUID,
    admin: AdminDep,
    limit: int = Query(default=MAX_JOB_LOGS, ge=1, le=MAX_JOB_LOGS),
) -> list[JobLogResponse]:
    logs = await admin.job_logs(job_id, limit)
    return [JobLogResponse.model_validate(entry) for entry in logs]
