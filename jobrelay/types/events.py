"""
Event type definitions for the status-change channel and WebSocket streaming.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from jobrelay.clock import utcnow
from jobrelay.constants import (
    EVENT_JOB_CANCEL_REQUESTED,
    EVENT_JOB_CANCELLED,
    EVENT_JOB_COMPLETED,
    EVENT_JOB_CREATED,
    EVENT_JOB_FAILED,
    EVENT_JOB_REAPED,
    EVENT_JOB_REQUEUED,
    EVENT_JOB_RETRIED,
    EVENT_JOB_STARTED,
    TERMINAL_STATUSES,
    JobStatus,
)

_EVENT_TYPES_BY_STATUS: dict[JobStatus, str] = {
    JobStatus.COMPLETED: EVENT_JOB_COMPLETED,
    JobStatus.FAILED: EVENT_JOB_FAILED,
    JobStatus.CANCELLED: EVENT_JOB_CANCELLED,
}


class JobEvent(BaseModel):
    """
    Event emitted when job state changes.
    Published by the job store after every committed transition.
    """

    event_type: str
    job_id: UUID
    job_type: str
    status: JobStatus
    attempts: int
    timestamp: datetime
    data: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def job_created(cls, job: Any) -> "JobEvent":
        """Create a job created event."""
        return cls._from_job(EVENT_JOB_CREATED, job)

    @classmethod
    def job_started(cls, job: Any) -> "JobEvent":
        """Create a job started event."""
        return cls._from_job(
            EVENT_JOB_STARTED, job, {"lease_owner": job.lease_owner}
        )

    @classmethod
    def job_finished(cls, job: Any) -> "JobEvent":
        """Create an event for a job that left processing."""
        if job.status == JobStatus.PENDING:
            return cls._from_job(
                EVENT_JOB_RETRIED,
                job,
                {"error": job.last_error, "retry_at": job.scheduled_at.isoformat()},
            )
        return cls._from_job(
            _EVENT_TYPES_BY_STATUS[job.status], job, {"error": job.last_error}
        )

    @classmethod
    def cancel_requested(cls, job: Any) -> "JobEvent":
        return cls._from_job(EVENT_JOB_CANCEL_REQUESTED, job)

    @classmethod
    def job_requeued(cls, job: Any) -> "JobEvent":
        return cls._from_job(EVENT_JOB_REQUEUED, job)

    @classmethod
    def job_reaped(cls, job: Any) -> "JobEvent":
        """Create an event for a job recovered from an expired lease."""
        return cls._from_job(EVENT_JOB_REAPED, job, {"error": job.last_error})

    @classmethod
    def _from_job(
        cls,
        event_type: str,
        job: Any,
        data: dict[str, Any] | None = None,
    ) -> "JobEvent":
        return cls(
            event_type=event_type,
            job_id=job.id,
            job_type=job.job_type,
            status=job.status,
            attempts=job.attempts,
            timestamp=utcnow(),
            data=data,
        )


class WebSocketMessage(BaseModel):
    """
    Message format for WebSocket communication.
    """

    type: str
    payload: dict[str, Any]
    timestamp: datetime

    @classmethod
    def from_event(cls, event: JobEvent) -> "WebSocketMessage":
        """Create a WebSocket message from a job event."""
        return cls(
            type=event.event_type,
            payload={
                "job_id": str(event.job_id),
                "job_type": event.job_type,
                "status": event.status,
                "attempts": event.attempts,
                "data": event.data,
            },
            timestamp=event.timestamp,
        )
