"""
Dead-letter triage schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from jobqueue.v1.deadletter.models import MAX_RESOLUTION_LENGTH


class DeadLetterResponse(BaseModel):
    """Schema for dead-letter API responses."""

    id: UUID
    original_job_id: str
    job_type: str
    job_data: dict[str, Any]
    priority: int
    attempts: int
    max_attempts: int
    failure_reason: str
    error_stack: str | None = None
    error_class: str | None = None
    worker_id: str | None = None
    processing_time: int | None = None
    last_processed_at: datetime | None = None
    original_created_at: datetime
    moved_to_dlq_at: datetime

    severity: str
    dlq_reason: str

    status: str
    reprocess_attempts: int
    max_reprocess_attempts: int
    reprocessed_by: str | None = None
    last_reprocessed_at: datetime | None = None
    resolved_by: str | None = None
    resolution: str | None = None
    resolved_at: datetime | None = None

    user_id: str | None = None
    impact_level: str | None = None

    class Config:
        from_attributes = True


class DeadLetterListResponse(BaseModel):
    dead_letters: list[DeadLetterResponse]
    total: int
    limit: int
    offset: int


class ResolveRequest(BaseModel):
    """Schema for resolving a dead letter."""

    resolution: str = Field(..., min_length=1, max_length=MAX_RESOLUTION_LENGTH)

    @field_validator("resolution")
    @classmethod
    def strip_resolution(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Resolution cannot be blank")
        return v


class IgnoreRequest(BaseModel):
    """Schema for ignoring a dead letter."""

    reason: str = Field(..., min_length=1, max_length=MAX_RESOLUTION_LENGTH)


class ReprocessBatchRequest(BaseModel):
    """Schema for bulk reprocessing by job type."""

    job_type: str = Field(..., min_length=1, max_length=50)
    max_entries: int = Field(default=10, ge=1, le=100)


class ReprocessError(BaseModel):
    id: str
    error: str


class ReprocessBatchResponse(BaseModel):
    processed: int
    errors: list[ReprocessError]


class ResubmitResponse(BaseModel):
    dead_letter: DeadLetterResponse
    job_id: str


class DeadLetterStatsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    by_severity: dict[str, int]
    by_reason: dict[str, int]
    by_type: dict[str, int]
