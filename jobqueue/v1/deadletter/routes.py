"""
Dead-letter triage API endpoints.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings, SettingsDep
from jobqueue.infra.database import get_session
from jobqueue.v1.core.exceptions import create_success_response
from jobqueue.v1.core.security import Principal, PrincipalDep
from jobqueue.v1.deadletter.models import DeadLetterStatus, DLQReason, Severity
from jobqueue.v1.deadletter.schemas import (
    DeadLetterListResponse,
    DeadLetterResponse,
    DeadLetterStatsResponse,
    IgnoreRequest,
    ReprocessBatchRequest,
    ReprocessBatchResponse,
    ResolveRequest,
    ResubmitResponse,
)
from jobqueue.v1.deadletter.service import DeadLetterService
from jobqueue.v1.jobs.schemas import CleanupResponse
from jobqueue.v1.jobs.service import JobService

logger = get_logger(__name__)
router = APIRouter(prefix="/dead-letters", tags=["dead-letters"])


def _dump(dead_letter) -> dict[str, Any]:
    return DeadLetterResponse.model_validate(dead_letter).model_dump(mode="json")


@router.get("", response_model=dict)
async def list_dead_letters(
    status: DeadLetterStatus | None = Query(default=None),
    severity: Severity | None = Query(default=None),
    job_type: str | None = Query(default=None),
    dlq_reason: DLQReason | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List dead letters with filtering and pagination."""

    service = DeadLetterService(settings)
    dead_letters, total = await service.list_dead_letters(
        session,
        status=status.value if status else None,
        severity=severity.value if severity else None,
        job_type=job_type,
        dlq_reason=dlq_reason.value if dlq_reason else None,
        limit=limit,
        offset=offset,
    )

    response = DeadLetterListResponse(
        dead_letters=[DeadLetterResponse.model_validate(d) for d in dead_letters],
        total=total,
        limit=limit,
        offset=offset,
    )
    return create_success_response(data=response.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_dead_letter_stats(
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Counts by status, severity, reason and job type."""

    stats = await DeadLetterService(settings).get_stats(session)
    return create_success_response(data=DeadLetterStatsResponse(**stats).model_dump())


@router.get("/stale", response_model=dict)
async def get_stale_dead_letters(
    days: int | None = Query(default=None, ge=1, description="Age threshold in days"),
    limit: int = Query(default=100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Open dead letters older than the stale threshold."""

    stale = await DeadLetterService(settings).find_stale(session, days, limit)
    return create_success_response(
        data={
            "days": days or settings.dlq_stale_days,
            "dead_letters": [_dump(d) for d in stale],
        }
    )


@router.post("/reprocess-batch", response_model=dict)
async def reprocess_batch(
    request: ReprocessBatchRequest,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Reprocess up to ``max_entries`` dead letters of a job type."""

    outcome = await DeadLetterService(settings).reprocess_batch(
        session, request.job_type, principal.actor, request.max_entries
    )
    await session.commit()

    response = ReprocessBatchResponse(processed=outcome.processed, errors=outcome.errors)
    return create_success_response(data=response.model_dump())


@router.post("/cleanup", response_model=dict)
async def cleanup_dead_letters(
    retention_days: int | None = Query(default=None, ge=1),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Delete resolved and ignored dead letters older than the retention window."""

    deleted = await DeadLetterService(settings).cleanup(session, retention_days)
    await session.commit()

    logger.info(
        "Dead letter cleanup via API", deleted_count=deleted, user_id=principal.user_id
    )
    response = CleanupResponse(
        deleted=deleted, retention_days=retention_days or settings.dlq_retention_days
    )
    return create_success_response(data=response.model_dump())


@router.get("/{dead_letter_id}", response_model=dict)
async def get_dead_letter(
    dead_letter_id: UUID,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get a specific dead letter by ID."""

    dead_letter = await DeadLetterService(settings).get(session, dead_letter_id)
    return create_success_response(data=_dump(dead_letter))


@router.post("/{dead_letter_id}/reprocess", response_model=dict)
async def reprocess_dead_letter(
    dead_letter_id: UUID,
    resubmit: bool = Query(
        default=False, description="Also submit a new job from the snapshot"
    ),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Mark a dead letter reprocessed, optionally resubmitting its job."""

    service = DeadLetterService(settings)
    if resubmit:
        dead_letter, submitted = await service.resubmit(
            session, dead_letter_id, principal.actor, JobService(settings)
        )
        await session.commit()
        response = ResubmitResponse(
            dead_letter=DeadLetterResponse.model_validate(dead_letter),
            job_id=submitted.job_id,
        )
        return create_success_response(data=response.model_dump(mode="json"))

    dead_letter = await service.reprocess_one(session, dead_letter_id, principal.actor)
    await session.commit()
    return create_success_response(data=_dump(dead_letter))


@router.post("/{dead_letter_id}/resolve", response_model=dict)
async def resolve_dead_letter(
    dead_letter_id: UUID,
    request: ResolveRequest,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Close a dead letter as resolved."""

    dead_letter = await DeadLetterService(settings).resolve(
        session, dead_letter_id, principal.actor, request.resolution
    )
    await session.commit()
    return create_success_response(data=_dump(dead_letter))


@router.post("/{dead_letter_id}/ignore", response_model=dict)
async def ignore_dead_letter(
    dead_letter_id: UUID,
    request: IgnoreRequest,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Close a dead letter as ignored."""

    dead_letter = await DeadLetterService(settings).ignore(
        session, dead_letter_id, request.reason, principal.actor
    )
    await session.commit()
    return create_success_response(data=_dump(dead_letter))


@router.post("/{dead_letter_id}/investigate", response_model=dict)
async def investigate_dead_letter(
    dead_letter_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Mark a pending dead letter as under investigation."""

    dead_letter = await DeadLetterService(settings).mark_investigating(
        session, dead_letter_id, principal.actor
    )
    await session.commit()
    return create_success_response(data=_dump(dead_letter))


@router.post("/{dead_letter_id}/reopen", response_model=dict)
async def reopen_dead_letter(
    dead_letter_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Return an investigating or reprocessed dead letter to pending."""

    dead_letter = await DeadLetterService(settings).reopen(
        session, dead_letter_id, principal.actor
    )
    await session.commit()
    return create_success_response(data=_dump(dead_letter))
