"""
Job-related type definitions for internal use.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from jobrelay.errors import JobCancelledError


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    retryable: bool = True

    @classmethod
    def ok(cls, output: dict[str, Any] | None = None) -> "JobResult":
        """Successful execution with optional output."""
        return cls(success=True, output=output)

    @classmethod
    def retry(cls, error: str) -> "JobResult":
        """Retryable failure."""
        return cls(success=False, error=error, retryable=True)

    @classmethod
    def permanent(cls, error: str) -> "JobResult":
        """Terminal failure, never retried."""
        return cls(success=False, error=error, retryable=False)


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and the cooperative cancellation signal.
    """

    job_id: UUID
    job_type: str
    attempt: int
    max_attempts: int
    lease_owner: str
    lease_expires_at: datetime | None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        """Whether an operator asked for this job to be cancelled."""
        return self.cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise JobCancelledError if cancellation has been requested."""
        if self.cancel_event.is_set():
            raise JobCancelledError(f"Job {self.job_id} was cancelled")

    async def checkpoint(self) -> None:
        """Yield to the event loop, then honour a pending cancellation."""
        await asyncio.sleep(0)
        self.raise_if_cancelled()


@dataclass
class LeaseInfo:
    """
    Information about a job lease held by this process.
    Used by the worker pool to track its in-flight jobs.
    """

    job_id: UUID
    job_type: str
    lease_owner: str
    acquired_at: datetime
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
