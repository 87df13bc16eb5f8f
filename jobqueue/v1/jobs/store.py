"""
Record store adapter for job records.

Every method takes the caller's ``AsyncSession`` and never commits, so that a
multi-step change (fail then requeue, fail then escalate) is one transaction.
Every lifecycle write is a single conditional UPDATE/DELETE keyed on the
expected current status; a write that matches zero rows means another
component owns the record and is not an error.
"""

import random
import string
import time
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.config.logging import get_logger
from jobqueue.v1.core.exceptions import InvalidTransition, ValidationError
from jobqueue.v1.deadletter.models import DeadLetter
from jobqueue.v1.jobs.models import (
    MAX_ERROR_LENGTH,
    MAX_ERROR_STACK_LENGTH,
    TERMINAL_JOB_STATUSES,
    Job,
    JobStatus,
    can_transition,
    truncate,
)

logger = get_logger(__name__)

# Lease and batch fields cleared whenever a record leaves processing/batched
_RELEASED = {
    "worker_id": None,
    "locked_at": None,
    "lock_timeout": None,
    "batch_id": None,
    "batched_at": None,
}


def _checked(sources: Iterable[JobStatus], target: JobStatus) -> list[str]:
    """Return the source status values after checking each edge of the graph."""
    values = []
    for source in sources:
        if not can_transition(source, target):
            raise InvalidTransition(
                f"Job status cannot change from {source.value} to {target.value}",
                {"from": source.value, "to": target.value},
            )
        values.append(source.value)
    return values


def generate_batch_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"batch_{int(time.time() * 1000)}_{suffix}"


def claim_sort_key(job: Job) -> tuple:
    return (-job.priority, job.created_at, job.id)


class JobStore:
    """CRUD and atomic-claim operations over job records."""

    async def create(self, session: AsyncSession, job: Job) -> Job:
        """Insert a new pending record. A duplicate job id is rejected."""
        existing = await self.get(session, job.job_id)
        if existing is not None:
            raise ValidationError(
                f"Job with ID {job.job_id} already exists", {"job_id": job.job_id}
            )
        session.add(job)
        try:
            await session.flush()
        except IntegrityError as e:
            raise ValidationError(
                f"Job with ID {job.job_id} already exists", {"job_id": job.job_id}
            ) from e
        return job

    async def get(self, session: AsyncSession, job_id: str) -> Job | None:
        result = await session.execute(select(Job).where(Job.job_id == job_id))
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        session: AsyncSession,
        status: str | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List records newest first with the total count for pagination."""
        filters = []
        if status:
            filters.append(Job.status == status)
        if job_type:
            filters.append(Job.type == job_type)

        total = (
            await session.execute(select(func.count(Job.id)).where(*filters))
        ).scalar() or 0
        result = await session.execute(
            select(Job)
            .where(*filters)
            .order_by(Job.created_at.desc(), Job.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total

    async def claim_batch(
        self,
        session: AsyncSession,
        limit: int,
        now: datetime,
        batch_id: str | None = None,
    ) -> list[Job]:
        """
        Atomically move up to ``limit`` eligible pending records to batched.

        Selection and update are one statement conditional on
        ``status = 'pending'``, with row locks skipped on PostgreSQL, so a
        record is handed to exactly one concurrent caller. Returned records are
        ordered by priority desc, created_at asc.
        """
        sources = _checked([JobStatus.PENDING], JobStatus.BATCHED)
        batch_id = batch_id or generate_batch_id()

        candidates = (
            select(Job.id)
            .where(
                Job.status.in_(sources),
                or_(Job.scheduled_for.is_(None), Job.scheduled_for <= now),
            )
            .order_by(Job.priority.desc(), Job.created_at, Job.id)
            .limit(limit)
        )
        if session.bind.dialect.name == "postgresql":
            candidates = candidates.with_for_update(skip_locked=True)

        result = await session.execute(
            update(Job)
            .where(Job.id.in_(candidates), Job.status.in_(sources))
            .values(
                status=JobStatus.BATCHED.value,
                batch_id=batch_id,
                batched_at=now,
                updated_at=now,
            )
            .returning(Job)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        claimed = sorted(result.scalars().all(), key=claim_sort_key)

        if claimed:
            logger.info(
                "Jobs claimed", batch_id=batch_id, job_count=len(claimed)
            )
        return claimed

    async def mark_processing(
        self,
        session: AsyncSession,
        job_id: str,
        worker_id: str,
        lease_ms: int,
        now: datetime,
    ) -> Job | None:
        """Lease a batched record to a worker. None if it is no longer batched."""
        sources = _checked([JobStatus.BATCHED], JobStatus.PROCESSING)
        result = await session.execute(
            update(Job)
            .where(Job.job_id == job_id, Job.status.in_(sources))
            .values(
                status=JobStatus.PROCESSING.value,
                worker_id=worker_id,
                locked_at=now,
                lock_timeout=now + timedelta(milliseconds=lease_ms),
                batch_id=None,
                batched_at=None,
                updated_at=now,
            )
            .returning(Job)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def extend_lease(
        self,
        session: AsyncSession,
        job_id: str,
        worker_id: str,
        lease_ms: int,
        now: datetime,
    ) -> bool:
        """Push the lease expiry of a record this worker still holds."""
        result = await session.execute(
            update(Job)
            .where(
                Job.job_id == job_id,
                Job.status == JobStatus.PROCESSING.value,
                Job.worker_id == worker_id,
            )
            .values(
                lock_timeout=now + timedelta(milliseconds=lease_ms), updated_at=now
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def mark_completed(
        self,
        session: AsyncSession,
        job_id: str,
        worker_id: str,
        result: dict[str, Any] | None,
        processing_time: int,
        now: datetime,
        retain: bool = False,
    ) -> bool:
        """
        Finish a record held by ``worker_id``.

        The record is deleted unless ``retain`` is set. Returns False when the
        lease was lost in the meantime.
        """
        sources = _checked([JobStatus.PROCESSING], JobStatus.COMPLETED)
        held = and_(
            Job.job_id == job_id,
            Job.status.in_(sources),
            Job.worker_id == worker_id,
        )
        if retain:
            statement = (
                update(Job)
                .where(held)
                .values(
                    status=JobStatus.COMPLETED.value,
                    result=result,
                    processed_at=now,
                    processing_time=processing_time,
                    updated_at=now,
                    **_RELEASED,
                )
            )
        else:
            statement = delete(Job).where(held)
        outcome = await session.execute(
            statement.execution_options(synchronize_session=False)
        )
        return outcome.rowcount > 0

    async def mark_failed(
        self,
        session: AsyncSession,
        job_id: str,
        worker_id: str,
        error: str,
        error_stack: str | None,
        processing_time: int | None,
        now: datetime,
    ) -> Job | None:
        """
        Record a failed attempt: processing -> failed, attempts + 1.

        Returns None when the lease was lost and the failure must be dropped.
        """
        sources = _checked([JobStatus.PROCESSING], JobStatus.FAILED)
        result = await session.execute(
            update(Job)
            .where(
                Job.job_id == job_id,
                Job.status.in_(sources),
                Job.worker_id == worker_id,
            )
            .values(
                status=JobStatus.FAILED.value,
                attempts=Job.attempts + 1,
                error=truncate(error, MAX_ERROR_LENGTH),
                error_stack=truncate(error_stack, MAX_ERROR_STACK_LENGTH),
                processed_at=now,
                processing_time=processing_time,
                updated_at=now,
                **_RELEASED,
            )
            .returning(Job)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def requeue(
        self,
        session: AsyncSession,
        job_id: str,
        scheduled_for: datetime | None,
        now: datetime,
    ) -> bool:
        """Return a failed record to pending, eligible again at ``scheduled_for``."""
        sources = _checked([JobStatus.FAILED], JobStatus.PENDING)
        result = await session.execute(
            update(Job)
            .where(Job.job_id == job_id, Job.status.in_(sources))
            .values(
                status=JobStatus.PENDING.value,
                scheduled_for=scheduled_for,
                updated_at=now,
                **_RELEASED,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def release_batch(
        self,
        session: AsyncSession,
        batch_id: str,
        job_ids: Iterable[str] | None = None,
        now: datetime | None = None,
    ) -> int:
        """Roll claimed but undispatched records of a batch back to pending."""
        sources = _checked([JobStatus.BATCHED], JobStatus.PENDING)
        filters = [Job.batch_id == batch_id, Job.status.in_(sources)]
        if job_ids is not None:
            filters.append(Job.job_id.in_(list(job_ids)))
        values = {"status": JobStatus.PENDING.value, **_RELEASED}
        if now is not None:
            values["updated_at"] = now
        result = await session.execute(
            update(Job)
            .where(*filters)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def reclaim_stale_leases(
        self,
        session: AsyncSession,
        now: datetime,
        batched_grace_ms: int | None = None,
    ) -> list[Job]:
        """
        Requeue records whose owner has gone away.

        Processing records with an expired lease, and, when a grace period is
        given, batched records claimed longer ago than the grace period, go
        back to pending. Attempts are left unchanged.
        """
        processing = _checked([JobStatus.PROCESSING], JobStatus.PENDING)
        result = await session.execute(
            update(Job)
            .where(Job.status.in_(processing), Job.lock_timeout < now)
            .values(status=JobStatus.PENDING.value, updated_at=now, **_RELEASED)
            .returning(Job)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        reclaimed = list(result.scalars().all())
        for job in reclaimed:
            logger.warning(
                "Stale lease reclaimed",
                event_type="StaleLeaseReclaimed",
                job_id=job.job_id,
                job_type=job.type,
                attempts=job.attempts,
            )

        if batched_grace_ms is not None:
            batched = _checked([JobStatus.BATCHED], JobStatus.PENDING)
            cutoff = now - timedelta(milliseconds=batched_grace_ms)
            result = await session.execute(
                update(Job)
                .where(Job.status.in_(batched), Job.batched_at < cutoff)
                .values(status=JobStatus.PENDING.value, updated_at=now, **_RELEASED)
                .returning(Job)
                .execution_options(synchronize_session=False, populate_existing=True)
            )
            stranded = list(result.scalars().all())
            for job in stranded:
                logger.warning(
                    "Batched job reclaimed", job_id=job.job_id, job_type=job.type
                )
            reclaimed.extend(stranded)

        return reclaimed

    async def escalate_to_dead_letter(
        self, session: AsyncSession, job: Job, dead_letter: DeadLetter
    ) -> DeadLetter | None:
        """
        Delete a failed record and insert its dead-letter snapshot.

        Both writes happen in the caller's transaction. Returns None when the
        record is no longer failed, in which case nothing is inserted.
        """
        result = await session.execute(
            delete(Job)
            .where(Job.job_id == job.job_id, Job.status == JobStatus.FAILED.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        session.add(dead_letter)
        await session.flush()
        return dead_letter

    async def cancel(
        self, session: AsyncSession, job_id: str, now: datetime
    ) -> Job | None:
        """Cancel a pending, batched or failed record. None if not cancellable."""
        sources = _checked(
            [JobStatus.PENDING, JobStatus.BATCHED, JobStatus.FAILED],
            JobStatus.CANCELLED,
        )
        result = await session.execute(
            update(Job)
            .where(Job.job_id == job_id, Job.status.in_(sources))
            .values(status=JobStatus.CANCELLED.value, updated_at=now, **_RELEASED)
            .returning(Job)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def count_by_status(self, session: AsyncSession) -> dict[str, int]:
        result = await session.execute(
            select(Job.status, func.count(Job.id)).group_by(Job.status)
        )
        counts = {status.value: 0 for status in JobStatus}
        counts.update(dict(result.all()))
        return counts

    async def count_by_type(self, session: AsyncSession) -> dict[str, dict[str, Any]]:
        result = await session.execute(
            select(Job.type, func.count(Job.id), func.avg(Job.processing_time))
            .group_by(Job.type)
            .order_by(Job.type)
        )
        return {
            job_type: {
                "count": count,
                "avg_processing_time": float(avg) if avg is not None else None,
            }
            for job_type, count, avg in result.all()
        }

    async def count_ready(self, session: AsyncSession, now: datetime) -> int:
        result = await session.execute(
            select(func.count(Job.id)).where(
                Job.status == JobStatus.PENDING.value,
                or_(Job.scheduled_for.is_(None), Job.scheduled_for <= now),
            )
        )
        return result.scalar() or 0

    async def cleanup(self, session: AsyncSession, older_than: datetime) -> int:
        """Delete completed and cancelled records last touched before ``older_than``."""
        result = await session.execute(
            delete(Job)
            .where(
                Job.status.in_([status.value for status in TERMINAL_JOB_STATUSES]),
                Job.updated_at < older_than,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


# Shared adapter instance
job_store = JobStore()
