"""
Reprocessor and triage operations over dead-letter records.

Dead letters are only changed by these operator-driven operations. Nothing
here ever returns a record to ``pending`` on its own; ``reopen`` is the only
way back and it is explicit.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings
from jobqueue.v1.core.exceptions import (
    InvalidTransition,
    NotFoundError,
    NotReprocessable,
)
from jobqueue.v1.deadletter.models import (
    MAX_RESOLUTION_LENGTH,
    SEVERITY_RANK,
    DeadLetter,
    DeadLetterStatus,
    DLQReason,
    Severity,
)
from jobqueue.v1.jobs.models import truncate
from jobqueue.v1.jobs.schemas import JobSubmitResponse
from jobqueue.v1.jobs.service import JobService

logger = get_logger(__name__)

# Open records, as seen by the stale query
OPEN_STATUSES = [DeadLetterStatus.PENDING.value, DeadLetterStatus.INVESTIGATING.value]

severity_order = case(
    {name: rank for name, rank in SEVERITY_RANK.items()},
    value=DeadLetter.severity,
    else_=0,
)


@dataclass
class ReprocessBatchResult:
    processed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


class DeadLetterService:
    """Triage surface and reprocessor for dead letters."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def get(self, session: AsyncSession, dead_letter_id: UUID) -> DeadLetter:
        result = await session.execute(
            select(DeadLetter).where(DeadLetter.id == dead_letter_id)
        )
        dead_letter = result.scalar_one_or_none()
        if dead_letter is None:
            raise NotFoundError(
                f"Dead letter {dead_letter_id} not found",
                {"dead_letter_id": str(dead_letter_id)},
            )
        return dead_letter

    async def list_dead_letters(
        self,
        session: AsyncSession,
        status: str | None = None,
        severity: str | None = None,
        job_type: str | None = None,
        dlq_reason: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[DeadLetter], int]:
        """List dead letters newest first, with the total for pagination."""
        filters = []
        if status:
            filters.append(DeadLetter.status == status)
        if severity:
            filters.append(DeadLetter.severity == severity)
        if job_type:
            filters.append(DeadLetter.job_type == job_type)
        if dlq_reason:
            filters.append(DeadLetter.dlq_reason == dlq_reason)

        total = (
            await session.execute(select(func.count(DeadLetter.id)).where(*filters))
        ).scalar() or 0
        result = await session.execute(
            select(DeadLetter)
            .where(*filters)
            .order_by(DeadLetter.moved_to_dlq_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total

    async def find_reprocessable(
        self, session: AsyncSession, limit: int = 50, job_type: str | None = None
    ) -> list[DeadLetter]:
        """Reprocessable records, most severe first, then oldest."""
        query = select(DeadLetter).where(
            DeadLetter.status == DeadLetterStatus.PENDING.value,
            DeadLetter.reprocess_attempts < DeadLetter.max_reprocess_attempts,
        )
        if job_type:
            query = query.where(DeadLetter.job_type == job_type)
        result = await session.execute(
            query.order_by(severity_order.desc(), DeadLetter.moved_to_dlq_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def reprocess_one(
        self, session: AsyncSession, dead_letter_id: UUID, actor: str
    ) -> DeadLetter:
        """
        Mark a pending dead letter as reprocessed.

        The precondition (pending, reprocess budget left) and the update are
        one conditional statement. This does not submit a new job; see
        ``resubmit``.

        Raises:
            NotFoundError: no such record
            NotReprocessable: not pending or reprocess budget exhausted
        """
        now = datetime.now(UTC)
        result = await session.execute(
            update(DeadLetter)
            .where(
                DeadLetter.id == dead_letter_id,
                DeadLetter.status == DeadLetterStatus.PENDING.value,
                DeadLetter.reprocess_attempts < DeadLetter.max_reprocess_attempts,
            )
            .values(
                status=DeadLetterStatus.REPROCESSED.value,
                reprocess_attempts=DeadLetter.reprocess_attempts + 1,
                reprocessed_by=actor,
                last_reprocessed_at=now,
                updated_at=now,
            )
            .returning(DeadLetter)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        dead_letter = result.scalar_one_or_none()

        if dead_letter is None:
            current = await self.get(session, dead_letter_id)
            raise NotReprocessable(
                f"Dead letter {dead_letter_id} cannot be reprocessed",
                {
                    "dead_letter_id": str(dead_letter_id),
                    "status": current.status,
                    "reprocess_attempts": current.reprocess_attempts,
                    "max_reprocess_attempts": current.max_reprocess_attempts,
                },
            )

        logger.info(
            "Dead letter reprocessed",
            dead_letter_id=str(dead_letter_id),
            job_type=dead_letter.job_type,
            reprocess_attempts=dead_letter.reprocess_attempts,
            actor=actor,
        )
        return dead_letter

    async def reprocess_batch(
        self,
        session: AsyncSession,
        job_type: str,
        actor: str,
        max_entries: int = 10,
    ) -> ReprocessBatchResult:
        """
        Reprocess up to ``max_entries`` reprocessable dead letters of a type.

        Per-record failures are collected and returned; the batch carries on.
        """
        outcome = ReprocessBatchResult()
        candidates = await self.find_reprocessable(session, max_entries, job_type)

        for dead_letter in candidates:
            try:
                await self.reprocess_one(session, dead_letter.id, actor)
                outcome.processed += 1
            except (NotReprocessable, NotFoundError) as e:
                outcome.errors.append({"id": str(dead_letter.id), "error": e.message})

        logger.info(
            "Dead letter batch reprocessed",
            job_type=job_type,
            processed=outcome.processed,
            error_count=len(outcome.errors),
            actor=actor,
        )
        return outcome

    async def resubmit(
        self,
        session: AsyncSession,
        dead_letter_id: UUID,
        actor: str,
        job_service: JobService,
    ) -> tuple[DeadLetter, JobSubmitResponse]:
        """Reprocess a dead letter and submit a fresh job from its snapshot."""
        dead_letter = await self.reprocess_one(session, dead_letter_id, actor)
        submitted = await job_service.submit(
            session,
            dead_letter.job_type,
            dead_letter.job_data,
            priority=dead_letter.priority,
            max_attempts=dead_letter.max_attempts,
        )
        logger.info(
            "Dead letter resubmitted",
            dead_letter_id=str(dead_letter_id),
            job_id=submitted.job_id,
            actor=actor,
        )
        return dead_letter, submitted

    async def resolve(
        self,
        session: AsyncSession,
        dead_letter_id: UUID,
        actor: str,
        resolution: str,
    ) -> DeadLetter:
        """Close a dead letter as resolved. Idempotent once resolved."""
        return await self._close(
            session,
            dead_letter_id,
            DeadLetterStatus.RESOLVED,
            actor,
            resolution,
        )

    async def ignore(
        self,
        session: AsyncSession,
        dead_letter_id: UUID,
        reason: str,
        actor: str | None = None,
    ) -> DeadLetter:
        """Close a dead letter as ignored. Idempotent once ignored."""
        return await self._close(
            session,
            dead_letter_id,
            DeadLetterStatus.IGNORED,
            actor,
            reason,
        )

    async def _close(
        self,
        session: AsyncSession,
        dead_letter_id: UUID,
        status: DeadLetterStatus,
        actor: str | None,
        resolution: str,
    ) -> DeadLetter:
        dead_letter = await self.get(session, dead_letter_id)
        if dead_letter.status == status.value:
            return dead_letter

        now = datetime.now(UTC)
        dead_letter.status = status.value
        dead_letter.resolved_by = actor
        dead_letter.resolution = truncate(resolution, MAX_RESOLUTION_LENGTH)
        dead_letter.resolved_at = now
        dead_letter.updated_at = now
        await session.flush()

        logger.info(
            f"Dead letter {status.value}",
            dead_letter_id=str(dead_letter_id),
            job_type=dead_letter.job_type,
            actor=actor,
        )
        return dead_letter

    async def mark_investigating(
        self, session: AsyncSession, dead_letter_id: UUID, actor: str
    ) -> DeadLetter:
        return await self._move(
            session,
            dead_letter_id,
            [DeadLetterStatus.PENDING],
            DeadLetterStatus.INVESTIGATING,
            actor,
        )

    async def reopen(
        self, session: AsyncSession, dead_letter_id: UUID, actor: str
    ) -> DeadLetter:
        """Operator return of an investigating or reprocessed record to pending."""
        return await self._move(
            session,
            dead_letter_id,
            [DeadLetterStatus.INVESTIGATING, DeadLetterStatus.REPROCESSED],
            DeadLetterStatus.PENDING,
            actor,
        )

    async def _move(
        self,
        session: AsyncSession,
        dead_letter_id: UUID,
        sources: list[DeadLetterStatus],
        target: DeadLetterStatus,
        actor: str,
    ) -> DeadLetter:
        now = datetime.now(UTC)
        result = await session.execute(
            update(DeadLetter)
            .where(
                DeadLetter.id == dead_letter_id,
                DeadLetter.status.in_([s.value for s in sources]),
            )
            .values(status=target.value, updated_at=now)
            .returning(DeadLetter)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        dead_letter = result.scalar_one_or_none()
        if dead_letter is None:
            current = await self.get(session, dead_letter_id)
            raise InvalidTransition(
                f"Dead letter cannot move from {current.status} to {target.value}",
                {"dead_letter_id": str(dead_letter_id), "status": current.status},
            )

        logger.info(
            "Dead letter status changed",
            dead_letter_id=str(dead_letter_id),
            status=target.value,
            actor=actor,
        )
        return dead_letter

    async def get_stats(self, session: AsyncSession) -> dict[str, Any]:
        """Counts grouped by status, severity, reason and job type."""

        async def grouped(column, keys=None) -> dict[str, int]:
            result = await session.execute(
                select(column, func.count(DeadLetter.id)).group_by(column)
            )
            counts = {key: 0 for key in keys or []}
            counts.update(dict(result.all()))
            return counts

        by_status = await grouped(DeadLetter.status, [s.value for s in DeadLetterStatus])
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_severity": await grouped(
                DeadLetter.severity, [s.value for s in Severity]
            ),
            "by_reason": await grouped(
                DeadLetter.dlq_reason, [r.value for r in DLQReason]
            ),
            "by_type": await grouped(DeadLetter.job_type),
        }

    async def find_stale(
        self,
        session: AsyncSession,
        days: int | None = None,
        limit: int = 100,
    ) -> list[DeadLetter]:
        """Open dead letters that entered the queue more than ``days`` ago."""
        days = days if days is not None else self.settings.dlq_stale_days
        cutoff = datetime.now(UTC) - timedelta(days=days)
        result = await session.execute(
            select(DeadLetter)
            .where(
                DeadLetter.status.in_(OPEN_STATUSES),
                DeadLetter.moved_to_dlq_at < cutoff,
            )
            .order_by(DeadLetter.moved_to_dlq_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def cleanup(
        self, session: AsyncSession, retention_days: int | None = None
    ) -> int:
        """Delete resolved and ignored dead letters closed before the window."""
        days = (
            retention_days if retention_days is not None else self.settings.dlq_retention_days
        )
        cutoff = datetime.now(UTC) - timedelta(days=days)
        result = await session.execute(
            delete(DeadLetter)
            .where(
                DeadLetter.status.in_(
                    [DeadLetterStatus.RESOLVED.value, DeadLetterStatus.IGNORED.value]
                ),
                DeadLetter.resolved_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount
        logger.info(
            "Dead letter cleanup finished", deleted_count=deleted, retention_days=days
        )
        return deleted
