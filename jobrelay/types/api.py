"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from jobrelay.constants import MAX_ALLOWED_ATTEMPTS, MAX_TAGS, JobStatus


class EnqueueOptions(BaseModel):
    """Optional execution settings for a new job."""

    delay_ms: int = Field(default=0, ge=0, description="Delay before first execution")
    max_attempts: int | None = Field(
        default=None, ge=1, le=MAX_ALLOWED_ATTEMPTS, description="Maximum attempts"
    )
    priority: int | None = Field(default=None, description="Accepted and ignored")
    tags: list[str] = Field(default_factory=list, max_length=MAX_TAGS)
    created_by: str | None = Field(default=None, max_length=255)


class CreateJobRequest(BaseModel):
    """Request body for creating a new job."""

    type: str = Field(..., min_length=1, description="Registered job type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload data")
    options: EnqueueOptions = Field(default_factory=EnqueueOptions)


class CreateJobResponse(BaseModel):
    """Response body after creating a job."""

    id: UUID
    status: JobStatus
    message: str = "Job created successfully"


class JobResponse(BaseModel):
    """Full job details response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_type: str
    payload: dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    cancel_requested: bool
    lease_owner: str | None
    lease_expires_at: datetime | None
    scheduled_at: datetime
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    last_error: str | None
    result: dict[str, Any] | None
    tags: list[str]
    created_by: str | None


class JobLogResponse(BaseModel):
    """One execution log entry."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_id: UUID
    level: str
    message: str
    data: dict[str, Any] | None
    created_at: datetime


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobStatusResponse(BaseModel):
    """Result of an admin command."""

    id: UUID
    status: JobStatus
    cancel_requested: bool = False
    attempts: int


class DiagnosticJobRequest(BaseModel):
    """Manual trigger for operational verification."""

    type: str = Field(default="notify")
    payload: dict[str, Any] = Field(default_factory=dict)
    wait: bool = Field(default=True, description="Wait for a terminal outcome")
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)


class DiagnosticJobResponse(BaseModel):
    """Outcome of a diagnostic job."""

    id: UUID
    status: JobStatus
    finished: bool
    attempts: int
    last_error: str | None = None
    result: dict[str, Any] | None = None


class SubscriptionKeys(BaseModel):
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)


class RegisterSubscriptionRequest(BaseModel):
    """Register a push delivery endpoint for a recipient."""

    recipient: str = Field(..., min_length=1)
    endpoint: str = Field(..., min_length=1)
    keys: SubscriptionKeys
    user_agent: str | None = None


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    recipient: str
    endpoint: str
    created_at: datetime


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
