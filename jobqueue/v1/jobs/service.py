"""
Job service: producer-facing submission plus job monitoring and maintenance.
"""

import random
import string
import time
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings
from jobqueue.v1.core.exceptions import InvalidTransition, NotFoundError, ValidationError
from jobqueue.v1.jobs.models import Job, JobStatus
from jobqueue.v1.jobs.schemas import (
    JobStatsResponse,
    JobSubmitRequest,
    JobSubmitResponse,
    JobTypeStats,
)
from jobqueue.v1.jobs.store import JobStore, job_store

logger = get_logger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_job_id(job_type: str, now_ms: int | None = None) -> str:
    """Build ``{type with ':' -> '-'}-{epoch ms}-{6 random base36 chars}``."""
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(random.choices(_ID_ALPHABET, k=6))
    return f"{job_type.replace(':', '-')}-{timestamp}-{suffix}"


def _validation_details(error: PydanticValidationError) -> dict[str, Any]:
    return {
        "errors": [
            {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
            for e in error.errors()
        ]
    }


class JobService:
    """Service for submitting and managing jobs."""

    def __init__(self, settings: Settings, store: JobStore = job_store):
        self.settings = settings
        self.store = store

    async def submit(
        self,
        session: AsyncSession,
        job_type: str,
        payload: dict[str, Any] | None = None,
        **options: Any,
    ) -> JobSubmitResponse:
        """
        Validate and persist a new pending job.

        Options: job_id, priority, max_attempts, scheduled_for, delay_ms,
        backoff_type, backoff_delay. Malformed input raises ValidationError
        before anything is written. The session is committed by the caller.

        Returns:
            The job id and initial status
        """
        try:
            request = JobSubmitRequest(type=job_type, payload=payload or {}, **options)
        except PydanticValidationError as e:
            raise ValidationError("Invalid job submission", _validation_details(e)) from e
        return await self.submit_request(session, request)

    async def submit_request(
        self, session: AsyncSession, request: JobSubmitRequest
    ) -> JobSubmitResponse:
        now = datetime.now(UTC)
        job_id = request.job_id or generate_job_id(request.type)

        scheduled_for = request.scheduled_for
        if scheduled_for is not None and scheduled_for.tzinfo is None:
            scheduled_for = scheduled_for.replace(tzinfo=UTC)
        if request.delay_ms:
            scheduled_for = now + timedelta(milliseconds=request.delay_ms)

        job = Job(
            job_id=job_id,
            type=request.type,
            data=request.payload,
            priority=request.priority,
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=request.max_attempts,
            backoff_type=request.backoff_type.value,
            backoff_delay=request.backoff_delay,
            scheduled_for=scheduled_for,
            created_at=now,
            updated_at=now,
        )
        await self.store.create(session, job)

        logger.info(
            "Job submitted",
            job_id=job_id,
            job_type=request.type,
            priority=request.priority,
            max_attempts=request.max_attempts,
            scheduled_for=scheduled_for.isoformat() if scheduled_for else None,
        )

        return JobSubmitResponse(
            job_id=job_id, status=job.status, scheduled_for=scheduled_for
        )

    async def get_job(self, session: AsyncSession, job_id: str) -> Job:
        job = await self.store.get(session, job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found", {"job_id": job_id})
        return job

    async def list_jobs(
        self,
        session: AsyncSession,
        status: str | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        return await self.store.list_jobs(session, status, job_type, limit, offset)

    async def cancel_job(self, session: AsyncSession, job_id: str) -> Job:
        """
        Cancel a job that has not started.

        Pending and failed jobs always cancel; a batched job is cancelled on a
        best-effort basis since a worker may pick it up concurrently. Jobs that
        are already processing run to completion.
        """
        cancelled = await self.store.cancel(session, job_id, datetime.now(UTC))
        if cancelled is not None:
            logger.info("Job cancelled", job_id=job_id, job_type=cancelled.type)
            return cancelled

        job = await self.get_job(session, job_id)
        raise InvalidTransition(
            f"Job {job_id} cannot be cancelled in status {job.status}",
            {"job_id": job_id, "status": job.status},
        )

    async def get_stats(
        self, session: AsyncSession, dispatch_queue_size: int | None = None
    ) -> JobStatsResponse:
        by_status = await self.store.count_by_status(session)
        by_type = await self.store.count_by_type(session)
        ready = await self.store.count_ready(session, datetime.now(UTC))
        return JobStatsResponse(
            total_jobs=sum(by_status.values()),
            by_status=by_status,
            by_type={name: JobTypeStats(**stats) for name, stats in by_type.items()},
            ready=ready,
            dispatch_queue_size=dispatch_queue_size,
        )

    async def cleanup(
        self, session: AsyncSession, retention_days: int | None = None
    ) -> int:
        """Delete completed and cancelled jobs older than the retention window."""
        days = (
            retention_days if retention_days is not None else self.settings.job_retention_days
        )
        cutoff = datetime.now(UTC) - timedelta(days=days)
        deleted = await self.store.cleanup(session, cutoff)
        logger.info("Job cleanup finished", deleted_count=deleted, retention_days=days)
        return deleted
