"""
Statistics views served to the admin dashboard.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from jobrelay.constants import JobStatus


class StatusCounts(BaseModel):
    """Job counts by status. total always equals the sum of the others."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total: int = 0

    @classmethod
    def from_counts(cls, counts: dict[str, int]) -> "StatusCounts":
        """Build from a status -> count mapping, deriving total."""
        values = {status.value: int(counts.get(status.value, 0)) for status in JobStatus}
        return cls(**values, total=sum(values.values()))


class JobTypeStat(StatusCounts):
    """Per job type breakdown across all statuses."""

    job_type: str

    @classmethod
    def for_type(cls, job_type: str, counts: dict[str, int]) -> "JobTypeStat":
        return cls(job_type=job_type, **StatusCounts.from_counts(counts).model_dump())


class WorkerStats(BaseModel):
    """Process-wide worker counters."""

    active: int = 0
    total_processed: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    avg_processing_time_ms: float = 0.0


class ActivityEntry(BaseModel):
    """A recently finished job."""

    job_id: UUID
    job_type: str
    status: JobStatus
    attempts: int
    last_error: str | None = None
    finished_at: datetime | None = None


class QueueStats(BaseModel):
    """Full dashboard snapshot."""

    queue: StatusCounts = Field(default_factory=StatusCounts)
    job_types: list[JobTypeStat] = Field(default_factory=list)
    workers: WorkerStats = Field(default_factory=WorkerStats)
    avg_processing_time_ms: float = 0.0
    recent_activity: list[ActivityEntry] = Field(default_factory=list)
