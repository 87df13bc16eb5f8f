from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.config.settings import DispatchBackend, Settings, get_settings
from jobqueue.infra.database import Database, get_database
from jobqueue.infra.dispatch import InMemoryDispatchQueue, get_dispatch_queue
from jobqueue.main import create_app
from jobqueue.v1.core.registries import JobRegistry

# Import models to ensure they're registered
from jobqueue.v1.deadletter import models as deadletter_models  # noqa: F401
from jobqueue.v1.jobs import models as job_models  # noqa: F401
from jobqueue.v1.jobs.models import Job, JobStatus


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite file and the in-memory queue."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        dispatch_backend=DispatchBackend.MEMORY,
        environment="test",
        job_concurrency=2,
        job_poll_interval_ms=50,
        store_retry_attempts=2,
        store_retry_base_ms=1,
        store_retry_max_ms=2,
    )


@pytest.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    """Create a fresh database with all tables for each test."""
    database = Database(settings)
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
async def db_session(database) -> AsyncGenerator[AsyncSession, None]:
    async with database.session() as session:
        yield session


@pytest.fixture
def dispatch() -> InMemoryDispatchQueue:
    return InMemoryDispatchQueue(visibility_timeout_ms=60_000)


@pytest.fixture
def registry() -> JobRegistry:
    """A private job registry so tests never touch the global one."""
    return JobRegistry()


@pytest.fixture
def app(settings, database, dispatch):
    """Create a test FastAPI application wired to the test database and queue."""
    app = create_app()

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_database] = lambda: database
    app.dependency_overrides[get_dispatch_queue] = lambda: dispatch

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_job():
    """Build a pending job record with explicit timestamps."""

    def _make_job(
        job_id: str,
        type: str = "report:build",
        priority: int = 5,
        created_at: datetime | None = None,
        **fields,
    ) -> Job:
        created_at = created_at or datetime.now(UTC)
        values = {
            "job_id": job_id,
            "type": type,
            "data": {"name": job_id},
            "priority": priority,
            "status": JobStatus.PENDING.value,
            "attempts": 0,
            "max_attempts": 3,
            "backoff_type": "exponential",
            "backoff_delay": 1000,
            "created_at": created_at,
            "updated_at": created_at,
        }
        values.update(fields)
        return Job(**values)

    return _make_job


@pytest.fixture
def later():
    """A point in time past any retry backoff used in the tests."""
    return datetime.now(UTC) + timedelta(hours=2)
