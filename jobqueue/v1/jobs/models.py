"""
Job record model: the durable unit of work and its lifecycle state.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from jobqueue.infra.database import Base, UTCDateTime

# Submission bounds
JOB_ID_MAX_LENGTH = 100
JOB_TYPE_MAX_LENGTH = 50
MIN_PRIORITY = 1
MAX_PRIORITY = 20
DEFAULT_PRIORITY = 5
MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 10
DEFAULT_MAX_ATTEMPTS = 3
MIN_BACKOFF_DELAY_MS = 100
DEFAULT_BACKOFF_DELAY_MS = 1000

# Stored failure details are truncated to these lengths
MAX_ERROR_LENGTH = 1000
MAX_ERROR_STACK_LENGTH = 5000


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    BATCHED = "batched"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BackoffType(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


# The complete status transition graph
JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.BATCHED, JobStatus.CANCELLED}),
    JobStatus.BATCHED: frozenset(
        {JobStatus.PROCESSING, JobStatus.PENDING, JobStatus.CANCELLED}
    ),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.PENDING}
    ),
    JobStatus.FAILED: frozenset({JobStatus.PENDING, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})


def can_transition(current: JobStatus | str, target: JobStatus | str) -> bool:
    """Check a status change against the transition graph."""
    return JobStatus(target) in JOB_TRANSITIONS[JobStatus(current)]


def truncate(text: str | None, limit: int) -> str | None:
    """Truncate text to ``limit`` characters, marking the cut with '...'."""
    if text is None or len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


class Job(Base):
    """
    Job record.

    A record is claimed by the batch loader (pending -> batched), leased by a
    worker (batched -> processing) and then deleted on completion or handed to
    the failure policy. ``lock_timeout`` is set only while processing and
    ``batch_id`` only while batched.
    """

    __tablename__ = "jobs"

    # Identity
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    job_id: Mapped[str] = mapped_column(
        String(JOB_ID_MAX_LENGTH),
        nullable=False,
        unique=True,
        comment="Externally visible job id",
    )

    # Classification
    type: Mapped[str] = mapped_column(
        String(JOB_TYPE_MAX_LENGTH), nullable=False, comment="Namespaced job type"
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=DEFAULT_PRIORITY,
        comment="Priority 1-20, higher is more urgent",
    )
    data: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Job payload"
    )

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.PENDING.value
    )
    attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=DEFAULT_MAX_ATTEMPTS
    )
    backoff_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BackoffType.EXPONENTIAL.value
    )
    backoff_delay: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_BACKOFF_DELAY_MS
    )

    # Scheduling
    scheduled_for: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Not claimable before this time"
    )

    # Claim and lease
    batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    batched_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    lock_timeout: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Lease expiry"
    )

    # Results
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_stack: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    processing_time: Mapped[int | None] = mapped_column(
        Integer, nullable=True, comment="Handler run time in ms"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'batched', 'processing', 'completed', 'failed', 'cancelled')",
            name="jobs_status_check",
        ),
        CheckConstraint("priority BETWEEN 1 AND 20", name="jobs_priority_check"),
        CheckConstraint("max_attempts BETWEEN 1 AND 10", name="jobs_max_attempts_check"),
    )

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def is_claimable(self, now: datetime) -> bool:
        """Check whether the loader may claim this record at ``now``."""
        return self.status == JobStatus.PENDING.value and (
            self.scheduled_for is None or self.scheduled_for <= now
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "type": self.type,
            "priority": self.priority,
            "data": self.data,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "backoff_type": self.backoff_type,
            "backoff_delay": self.backoff_delay,
            "scheduled_for": self.scheduled_for,
            "batch_id": self.batch_id,
            "worker_id": self.worker_id,
            "locked_at": self.locked_at,
            "lock_timeout": self.lock_timeout,
            "result": self.result,
            "error": self.error,
            "processed_at": self.processed_at,
            "processing_time": self.processing_time,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# Claim query: status = pending ORDER BY priority DESC, created_at
Index("ix_jobs_claim", Job.status, Job.priority.desc(), Job.created_at)
Index("ix_jobs_lease", Job.status, Job.lock_timeout)
Index("ix_jobs_type", Job.type)
