import re
from datetime import UTC, datetime, timedelta

import pytest

from jobqueue.v1.core.exceptions import InvalidTransition, NotFoundError, ValidationError
from jobqueue.v1.jobs.models import JobStatus
from jobqueue.v1.jobs.service import JobService, generate_job_id
from jobqueue.v1.jobs.store import job_store

JOB_ID_FORMAT = re.compile(r"^email-send-\d{13}-[a-z0-9]{6}$")


@pytest.fixture
def service(settings):
    return JobService(settings)


def test_generated_job_id_format():
    assert JOB_ID_FORMAT.match(generate_job_id("email:send"))
    assert generate_job_id("email:send", now_ms=1700000000000).startswith(
        "email-send-1700000000000-"
    )


@pytest.mark.asyncio
async def test_submit_persists_pending_job(db_session, service):
    submitted = await service.submit(
        db_session, "email:send", {"to": "a@example.com"}, priority=10
    )

    assert submitted.status == JobStatus.PENDING.value
    assert JOB_ID_FORMAT.match(submitted.job_id)
    job = await job_store.get(db_session, submitted.job_id)
    assert job.priority == 10
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.backoff_type == "exponential"
    assert job.data == {"to": "a@example.com"}


@pytest.mark.asyncio
async def test_submit_with_caller_job_id(db_session, service):
    submitted = await service.submit(db_session, "report:build", job_id="nightly_2024-01-01")

    assert submitted.job_id == "nightly_2024-01-01"
    with pytest.raises(ValidationError, match="already exists"):
        await service.submit(db_session, "report:build", job_id="nightly_2024-01-01")


@pytest.mark.asyncio
async def test_submit_with_delay_sets_schedule(db_session, service):
    before = datetime.now(UTC)
    submitted = await service.submit(db_session, "report:build", delay_ms=60_000)

    assert submitted.scheduled_for >= before + timedelta(seconds=60)


@pytest.mark.asyncio
async def test_submit_naive_schedule_is_utc(db_session, service):
    submitted = await service.submit(
        db_session, "report:build", scheduled_for=datetime(2030, 1, 1, 12, 0)
    )

    assert submitted.scheduled_for == datetime(2030, 1, 1, 12, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_submit_normalizes_type(db_session, service):
    submitted = await service.submit(db_session, "  Email:Send ")

    job = await job_store.get(db_session, submitted.job_id)
    assert job.type == "email:send"


@pytest.mark.parametrize(
    "job_type, options",
    [
        ("emailsend", {}),
        ("email:", {}),
        ("email:send", {"priority": 0}),
        ("email:send", {"priority": 21}),
        ("email:send", {"max_attempts": 11}),
        ("email:send", {"backoff_delay": 10}),
        ("email:send", {"backoff_type": "linear"}),
        ("email:send", {"job_id": "has spaces"}),
        ("email:send", {"delay_ms": 10, "scheduled_for": datetime(2030, 1, 1)}),
    ],
)
@pytest.mark.asyncio
async def test_submit_rejects_invalid_input(db_session, service, job_type, options):
    with pytest.raises(ValidationError) as exc_info:
        await service.submit(db_session, job_type, {}, **options)

    assert exc_info.value.status_code == 422
    assert exc_info.value.details["errors"]
    _, total = await job_store.list_jobs(db_session)
    assert total == 0


@pytest.mark.asyncio
async def test_get_unknown_job(db_session, service):
    with pytest.raises(NotFoundError):
        await service.get_job(db_session, "missing")


@pytest.mark.asyncio
async def test_cancel_pending_job(db_session, service):
    submitted = await service.submit(db_session, "report:build")

    cancelled = await service.cancel_job(db_session, submitted.job_id)

    assert cancelled.status == JobStatus.CANCELLED.value
    with pytest.raises(InvalidTransition):
        await service.cancel_job(db_session, submitted.job_id)


@pytest.mark.asyncio
async def test_stats(db_session, service):
    await service.submit(db_session, "email:send")
    await service.submit(db_session, "email:send", delay_ms=3_600_000)
    cancelled = await service.submit(db_session, "report:build")
    await service.cancel_job(db_session, cancelled.job_id)

    stats = await service.get_stats(db_session, dispatch_queue_size=4)

    assert stats.total_jobs == 3
    assert stats.by_status["pending"] == 2
    assert stats.by_status["cancelled"] == 1
    assert stats.by_type["email:send"].count == 2
    assert stats.ready == 1
    assert stats.dispatch_queue_size == 4


@pytest.mark.asyncio
async def test_list_jobs_filters_and_paginates(db_session, service):
    for _ in range(3):
        await service.submit(db_session, "email:send")
    await service.submit(db_session, "report:build")

    jobs, total = await service.list_jobs(db_session, job_type="email:send", limit=2)

    assert total == 3
    assert len(jobs) == 2
    assert {job.type for job in jobs} == {"email:send"}


@pytest.mark.asyncio
async def test_cleanup_with_zero_retention_days(db_session, service, make_job):
    finished = datetime.now(UTC) - timedelta(seconds=5)
    db_session.add(
        make_job("just-done", status=JobStatus.COMPLETED.value, updated_at=finished)
    )
    await db_session.flush()

    assert await service.cleanup(db_session) == 0
    assert await service.cleanup(db_session, retention_days=0) == 1
