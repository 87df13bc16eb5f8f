"""
Job API endpoints.

Producer-facing submission plus job monitoring and maintenance.
"""

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings, SettingsDep
from jobqueue.infra.database import get_session
from jobqueue.infra.dispatch import DispatchDep, DispatchQueue
from jobqueue.v1.core.exceptions import DispatchUnavailable, create_success_response
from jobqueue.v1.core.security import Principal, PrincipalDep
from jobqueue.v1.jobs.models import JobStatus
from jobqueue.v1.jobs.schemas import (
    CleanupResponse,
    JobListResponse,
    JobResponse,
    JobSubmitRequest,
)
from jobqueue.v1.jobs.service import JobService

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=dict, status_code=201)
async def submit_job(
    job_request: JobSubmitRequest,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Submit a new job. Returns immediately with the job id."""

    job_service = JobService(settings)
    result = await job_service.submit_request(session, job_request)
    await session.commit()

    logger.info(
        "Job submitted via API",
        job_id=result.job_id,
        job_type=job_request.type,
        user_id=principal.user_id,
    )

    return create_success_response(data=result.model_dump(mode="json"))


@router.get("", response_model=dict)
async def list_jobs(
    status: JobStatus | None = Query(default=None, description="Filter by status"),
    type: str | None = Query(default=None, description="Filter by job type"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List jobs with filtering and pagination."""

    job_service = JobService(settings)
    jobs, total = await job_service.list_jobs(
        session, status.value if status else None, type, limit, offset
    )

    response_data = JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )

    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
    dispatch: DispatchQueue = DispatchDep,
) -> dict[str, Any]:
    """Get job counts by status and type, plus the dispatch queue backlog."""

    try:
        queue_size = await dispatch.size()
    except DispatchUnavailable:
        queue_size = None

    job_service = JobService(settings)
    stats = await job_service.get_stats(session, dispatch_queue_size=queue_size)

    return create_success_response(data=stats.model_dump(mode="json"))


@router.post("/cleanup", response_model=dict)
async def cleanup_jobs(
    retention_days: int | None = Query(default=None, ge=1, description="Override retention"),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Delete completed and cancelled jobs older than the retention window."""

    job_service = JobService(settings)
    deleted = await job_service.cleanup(session, retention_days)
    await session.commit()

    logger.info("Job cleanup via API", deleted_count=deleted, user_id=principal.user_id)

    response = CleanupResponse(
        deleted=deleted, retention_days=retention_days or settings.job_retention_days
    )
    return create_success_response(data=response.model_dump())


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: str,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""

    job_service = JobService(settings)
    job = await job_service.get_job(session, job_id)

    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(
    job_id: str,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Cancel a pending, batched or failed job."""

    job_service = JobService(settings)
    job = await job_service.cancel_job(session, job_id)
    await session.commit()

    logger.info("Job cancelled via API", job_id=job_id, user_id=principal.user_id)

    return create_success_response(
        data={"success": True, "job_id": job.job_id, "status": job.status}
    )
