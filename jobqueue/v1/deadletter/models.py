"""
Dead-letter record model: the durable snapshot of a permanently failed job.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, CheckConstraint, Index, Integer, SmallInteger, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from jobqueue.infra.database import Base, UTCDateTime

MAX_FAILURE_REASON_LENGTH = 2000
MAX_STACK_LENGTH = 10000
MAX_RESOLUTION_LENGTH = 1000
MAX_REPROCESS_ATTEMPTS = 3


class DeadLetterStatus(str, Enum):
    PENDING = "pending"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    IGNORED = "ignored"
    REPROCESSED = "reprocessed"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DLQReason(str, Enum):
    EXHAUSTED_RETRIES = "exhausted_retries"
    PERMANENT_FAILURE = "permanent_failure"
    TIMEOUT = "timeout"
    VALIDATION_ERROR = "validation_error"
    SYSTEM_ERROR = "system_error"
    MANUAL_MOVE = "manual_move"
    DEPENDENCY_FAILURE = "dependency_failure"


# Statuses no triage query treats as open
CLOSED_DLQ_STATUSES = frozenset(
    {DeadLetterStatus.RESOLVED, DeadLetterStatus.IGNORED, DeadLetterStatus.REPROCESSED}
)

SEVERITY_RANK = {
    Severity.CRITICAL.value: 4,
    Severity.HIGH.value: 3,
    Severity.MEDIUM.value: 2,
    Severity.LOW.value: 1,
}


class DeadLetter(Base):
    """
    Dead-letter record.

    The snapshot fields are written once on escalation. Only the triage fields
    (status, reprocess counters, resolution metadata) change afterwards.
    """

    __tablename__ = "dead_letters"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Snapshot of the failed job
    original_job_id: Mapped[str] = mapped_column(String(100), nullable=False)
    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    job_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    priority: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    max_attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    failure_reason: Mapped[str] = mapped_column(Text, nullable=False)
    error_stack: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_class: Mapped[str | None] = mapped_column(String(255), nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processing_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    original_created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    moved_to_dlq_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )

    # Classification
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    dlq_reason: Mapped[str] = mapped_column(String(32), nullable=False)

    # Triage
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeadLetterStatus.PENDING.value
    )
    reprocess_attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    max_reprocess_attempts: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=MAX_REPROCESS_ATTEMPTS
    )
    reprocessed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_reprocessed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Business impact
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    impact_level: Mapped[str | None] = mapped_column(String(20), nullable=True)
    business_context: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'investigating', 'resolved', 'ignored', 'reprocessed')",
            name="dead_letters_status_check",
        ),
        CheckConstraint(
            "severity IN ('low', 'medium', 'high', 'critical')",
            name="dead_letters_severity_check",
        ),
        CheckConstraint(
            "reprocess_attempts <= max_reprocess_attempts",
            name="dead_letters_reprocess_bound_check",
        ),
    )

    def can_be_reprocessed(self) -> bool:
        return (
            self.status == DeadLetterStatus.PENDING.value
            and self.reprocess_attempts < self.max_reprocess_attempts
        )

    def age_days(self, now: datetime | None = None) -> float:
        now = now or datetime.now(UTC)
        return (now - self.moved_to_dlq_at).total_seconds() / 86400


# Triage query: status = ? ORDER BY moved_to_dlq_at
Index("ix_dead_letters_triage", DeadLetter.status, DeadLetter.moved_to_dlq_at)
Index("ix_dead_letters_type_status", DeadLetter.job_type, DeadLetter.status)
Index("ix_dead_letters_original_job_id", DeadLetter.original_job_id)
