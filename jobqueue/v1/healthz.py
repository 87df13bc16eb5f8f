from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.config.settings import Settings, SettingsDep
from jobqueue.infra.database import get_session
from jobqueue.infra.dispatch import DispatchDep, DispatchQueue
from jobqueue.v1.core.exceptions import DispatchUnavailable, create_success_response
from jobqueue.v1.jobs.models import Job, JobStatus

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class DispatchHealth(BaseModel):
    """Dispatch queue health status."""

    connected: bool
    backend: str
    queue_size: int | None = None


class WorkerHealth(BaseModel):
    """Worker health derived from leases in the record store."""

    active_workers: int
    processing_jobs: int = 0
    expired_leases: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep,
    session: AsyncSession = Depends(get_session),
    dispatch: DispatchQueue = DispatchDep,
):
    """Health check with database, dispatch queue and worker status."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(session)
    dispatch_health = await _check_dispatch_health(dispatch, settings)

    worker_health = None
    if db_health.connected:
        worker_health = await _check_worker_health(session)

    health_data = {
        "ok": db_health.connected and dispatch_health.connected,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "dispatch": dispatch_health.model_dump(),
        "worker": worker_health.model_dump() if worker_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_dispatch_health(
    dispatch: DispatchQueue, settings: Settings
) -> DispatchHealth:
    connected = await dispatch.ping()
    queue_size = None
    if connected:
        try:
            queue_size = await dispatch.size()
        except DispatchUnavailable:
            connected = False
    return DispatchHealth(
        connected=connected,
        backend=settings.dispatch_backend.value,
        queue_size=queue_size,
    )


async def _check_worker_health(session: AsyncSession) -> WorkerHealth:
    """Count workers holding leases and leases that have already expired."""
    now = datetime.now(UTC)

    active_workers_result = await session.execute(
        select(func.count(func.distinct(Job.worker_id))).where(
            Job.status == JobStatus.PROCESSING.value, Job.lock_timeout > now
        )
    )
    processing_result = await session.execute(
        select(func.count(Job.id)).where(Job.status == JobStatus.PROCESSING.value)
    )
    expired_result = await session.execute(
        select(func.count(Job.id)).where(
            Job.status == JobStatus.PROCESSING.value, Job.lock_timeout <= now
        )
    )

    return WorkerHealth(
        active_workers=active_workers_result.scalar() or 0,
        processing_jobs=processing_result.scalar() or 0,
        expired_leases=expired_result.scalar() or 0,
    )
