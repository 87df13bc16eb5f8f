"""
Job submission and monitoring schemas.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from jobqueue.v1.jobs.models import (
    DEFAULT_BACKOFF_DELAY_MS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    JOB_ID_MAX_LENGTH,
    JOB_TYPE_MAX_LENGTH,
    MAX_MAX_ATTEMPTS,
    MAX_PRIORITY,
    MIN_BACKOFF_DELAY_MS,
    MIN_MAX_ATTEMPTS,
    MIN_PRIORITY,
    BackoffType,
)

JOB_TYPE_PATTERN = r"^[a-z][a-z0-9]*:[a-z][a-z0-9]*$"
JOB_ID_PATTERN = r"^[A-Za-z0-9_-]+$"


class JobSubmitRequest(BaseModel):
    """Schema for submitting a new job."""

    type: str = Field(
        ...,
        min_length=1,
        max_length=JOB_TYPE_MAX_LENGTH,
        pattern=JOB_TYPE_PATTERN,
        description='Namespaced job type, e.g. "email:send"',
    )
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload")
    job_id: str | None = Field(
        default=None,
        min_length=1,
        max_length=JOB_ID_MAX_LENGTH,
        pattern=JOB_ID_PATTERN,
        description="Caller-supplied job id; generated when omitted",
    )
    priority: int = Field(
        default=DEFAULT_PRIORITY,
        ge=MIN_PRIORITY,
        le=MAX_PRIORITY,
        description="Priority (20=most urgent, 1=least)",
    )
    max_attempts: int = Field(
        default=DEFAULT_MAX_ATTEMPTS, ge=MIN_MAX_ATTEMPTS, le=MAX_MAX_ATTEMPTS
    )
    scheduled_for: datetime | None = Field(
        default=None, description="Earliest time the job may run"
    )
    delay_ms: int | None = Field(
        default=None, ge=0, description="Run no earlier than now + delay"
    )
    backoff_type: BackoffType = Field(default=BackoffType.EXPONENTIAL)
    backoff_delay: int = Field(
        default=DEFAULT_BACKOFF_DELAY_MS,
        ge=MIN_BACKOFF_DELAY_MS,
        description="Base retry delay in ms",
    )

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @model_validator(mode="after")
    def check_schedule(self):
        if self.scheduled_for is not None and self.delay_ms is not None:
            raise ValueError("Use either scheduled_for or delay_ms, not both")
        return self


class JobSubmitResponse(BaseModel):
    """Schema for job submission response."""

    job_id: str
    status: str
    scheduled_for: datetime | None = None


class JobResponse(BaseModel):
    """Schema for job API responses."""

    job_id: str
    type: str
    priority: int
    data: dict[str, Any]
    status: str
    attempts: int
    max_attempts: int
    backoff_type: str
    backoff_delay: int
    scheduled_for: datetime | None = None

    # Claim and lease
    batch_id: str | None = None
    worker_id: str | None = None
    locked_at: datetime | None = None
    lock_timeout: datetime | None = None

    # Results
    result: dict[str, Any] | None = None
    error: str | None = None
    processed_at: datetime | None = None
    processing_time: int | None = None

    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobTypeStats(BaseModel):
    count: int
    avg_processing_time: float | None = None


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, JobTypeStats]
    ready: int
    dispatch_queue_size: int | None = None


class CleanupResponse(BaseModel):
    deleted: int
    retention_days: int
