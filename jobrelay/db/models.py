"""
SQLAlchemy database models.
Defines the Job, JobLog and PushSubscription tables.
"""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobrelay.clock import utcnow
from jobrelay.constants import TERMINAL_STATUSES, JobStatus

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of deferred work.

    This is the authoritative source of truth for job state.
    All job lifecycle transitions are conditional updates on this table.

    Key constraints:
    - attempts never exceeds max_attempts
    - lease_owner and lease_expires_at are set only while processing
    - terminal rows (completed, failed, cancelled) are not mutated again,
      except for an operator requeue of a failed job
    """

    __tablename__ = "jobs"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )

    # Handler routing and opaque payload
    job_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    payload: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobStatus.PENDING,
        index=True,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=3,
    )

    # Lease management
    lease_owner: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(),
        nullable=True,
    )
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    # Scheduling
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(),
        nullable=False,
        default=utcnow,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(),
        nullable=False,
        default=utcnow,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(),
        nullable=True,
    )

    # Diagnostics and output
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    result: Mapped[dict | None] = mapped_column(
        JSONType,
        nullable=True,
    )

    # Provenance
    tags: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )
    created_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    __table_args__ = (
        # Claim polling: oldest eligible pending job first
        Index("ix_jobs_claim", "status", "scheduled_at", "created_at"),
        # Stale lease scan
        Index("ix_jobs_lease_expiry", "status", "lease_expires_at"),
        # Recent activity view
        Index("ix_jobs_completed_at", "completed_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_retryable(self) -> bool:
        """Check if the job has attempts left."""
        return self.attempts < self.max_attempts

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, type={self.job_type}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )


class JobLog(Base):
    """
    Execution log entry for a job.

    Written by the job store in the same transaction as each lifecycle
    transition, so the log never disagrees with the job row.
    """

    __tablename__ = "job_logs"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    job_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    level: Mapped[str] = mapped_column(String(10), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (Index("ix_job_logs_job_created", "job_id", "created_at"),)

    def __repr__(self) -> str:
        return f"JobLog(job_id={self.job_id}, level={self.level}, message={self.message!r})"


class PushSubscription(Base):
    """
    A registered push delivery endpoint for a notification recipient.
    """

    __tablename__ = "push_subscriptions"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    recipient: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    endpoint: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        unique=True,
    )
    p256dh: Mapped[str] = mapped_column(Text, nullable=False)
    auth: Mapped[str] = mapped_column(Text, nullable=False)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(),
        nullable=False,
        default=utcnow,
    )
    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"PushSubscription(id={self.id}, recipient={self.recipient})"
