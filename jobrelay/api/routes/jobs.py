"""
Job submission and lookup routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Query, status

from jobrelay.api.dependencies import AdminDep, EngineDep
from jobrelay.constants import API_V1_PREFIX, JobStatus
from jobrelay.types.api import (
    CreateJobRequest,
    CreateJobResponse,
    JobListResponse,
    JobResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


@router.post(
    "",
    response_model=CreateJobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a job",
    description="Enqueue a job of a registered type. Unknown types and invalid payloads are rejected.",
)
async def create_job(request: CreateJobRequest, engine: EngineDep) -> CreateJobResponse:
    """
    Create a new job.

    Args:
        request: Job creation request.
        engine: The job engine.

    Returns:
        CreateJobResponse with the new job id.
    """
    job_id = await engine.enqueue(
        request.type,
        request.payload,
        delay_ms=request.options.delay_ms,
        max_attempts=request.options.max_attempts,
        priority=request.options.priority,
        tags=request.options.tags,
        created_by=request.options.created_by,
    )
    return CreateJobResponse(id=job_id, status=JobStatus.PENDING)


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
)
async def get_job(job_id: UUID, admin: AdminDep) -> JobResponse:
    job = await admin.get_job(job_id)
    return JobResponse.model_validate(job)


@router.get(
    "",
    response_model=JobListResponse,
    summary="List jobs",
    description="List jobs, newest first, with optional filtering.",
)
async def list_jobs(
    admin: AdminDep,
    status: JobStatus | None = Query(default=None),
    job_type: str | None = Query(default=None, alias="type"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> JobListResponse:
    jobs, total = await admin.list_jobs(
        status=status, job_type=job_type, limit=limit, offset=offset
    )
    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )
