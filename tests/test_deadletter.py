import uuid
from datetime import UTC, datetime, timedelta

import pytest

from jobqueue.v1.core.exceptions import InvalidTransition, NotFoundError, NotReprocessable
from jobqueue.v1.deadletter.models import DeadLetterStatus, DLQReason
from jobqueue.v1.deadletter.service import DeadLetterService
from jobqueue.v1.jobs.policy import build_dead_letter
from jobqueue.v1.jobs.service import JobService
from jobqueue.v1.jobs.store import job_store


@pytest.fixture
def service(settings):
    return DeadLetterService(settings)


@pytest.fixture
def add_dead_letter(database, settings, make_job):
    """Insert a dead letter built from a failed job snapshot."""

    async def _add(
        job_id: str,
        type: str = "report:build",
        reason: DLQReason = DLQReason.EXHAUSTED_RETRIES,
        attempts: int = 3,
        moved_at: datetime | None = None,
        **fields,
    ):
        job = make_job(job_id, type=type, attempts=attempts, error="boom")
        dead_letter = build_dead_letter(job, reason, settings, moved_at or datetime.now(UTC))
        for name, value in fields.items():
            setattr(dead_letter, name, value)
        async with database.session() as session:
            session.add(dead_letter)
            await session.commit()
        return dead_letter.id

    return _add


@pytest.mark.asyncio
async def test_reprocess_batch_skips_closed_records(database, service, add_dead_letter):
    """Three email:send dead letters with one resolved: two are reprocessed."""
    ids = [await add_dead_letter(f"email-{i}", type="email:send") for i in range(3)]
    async with database.session() as session:
        await service.resolve(session, ids[0], "ops", "sent manually")
        await session.commit()

    async with database.session() as session:
        outcome = await service.reprocess_batch(session, "email:send", "ops", max_entries=10)
        await session.commit()

    assert outcome.processed == 2
    assert outcome.errors == []
    async with database.session() as session:
        resolved = await service.get(session, ids[0])
        reprocessed = [await service.get(session, i) for i in ids[1:]]
    assert resolved.status == DeadLetterStatus.RESOLVED.value
    assert resolved.reprocess_attempts == 0
    for dead_letter in reprocessed:
        assert dead_letter.status == DeadLetterStatus.REPROCESSED.value
        assert dead_letter.reprocess_attempts == 1
        assert dead_letter.reprocessed_by == "ops"


@pytest.mark.asyncio
async def test_reprocess_batch_limits_entries(db_session, service, add_dead_letter):
    for i in range(4):
        await add_dead_letter(f"report-{i}")

    outcome = await service.reprocess_batch(db_session, "report:build", "ops", max_entries=3)

    assert outcome.processed == 3
    remaining = await service.find_reprocessable(db_session, job_type="report:build")
    assert len(remaining) == 1


@pytest.mark.asyncio
async def test_reprocess_budget_is_bounded(db_session, service, add_dead_letter):
    dead_letter_id = await add_dead_letter("worn-out", reprocess_attempts=2)

    reprocessed = await service.reprocess_one(db_session, dead_letter_id, "ops")
    assert reprocessed.reprocess_attempts == 3

    await service.reopen(db_session, dead_letter_id, "ops")
    with pytest.raises(NotReprocessable) as exc_info:
        await service.reprocess_one(db_session, dead_letter_id, "ops")
    assert exc_info.value.details["reprocess_attempts"] == 3


@pytest.mark.asyncio
async def test_reprocess_requires_pending(db_session, service, add_dead_letter):
    dead_letter_id = await add_dead_letter("closed")
    await service.ignore(db_session, dead_letter_id, "known issue", actor="ops")

    with pytest.raises(NotReprocessable):
        await service.reprocess_one(db_session, dead_letter_id, "ops")


@pytest.mark.asyncio
async def test_reprocess_unknown_record(db_session, service):
    with pytest.raises(NotFoundError):
        await service.reprocess_one(db_session, uuid.uuid4(), "ops")


@pytest.mark.asyncio
async def test_find_reprocessable_orders_by_severity_then_age(
    db_session, service, add_dead_letter
):
    old = datetime.now(UTC) - timedelta(hours=2)
    low_old = await add_dead_letter("low-old", attempts=1, moved_at=old)
    low_new = await add_dead_letter("low-new", attempts=1)
    high = await add_dead_letter("high", reason=DLQReason.VALIDATION_ERROR)

    found = await service.find_reprocessable(db_session)

    assert [d.id for d in found] == [high, low_old, low_new]


@pytest.mark.asyncio
async def test_resolve_is_idempotent(db_session, service, add_dead_letter):
    dead_letter_id = await add_dead_letter("fixed")

    first = await service.resolve(db_session, dead_letter_id, "alice", "patched upstream")
    resolved_at = first.resolved_at
    second = await service.resolve(db_session, dead_letter_id, "bob", "again")

    assert second.status == DeadLetterStatus.RESOLVED.value
    assert second.resolved_by == "alice"
    assert second.resolution == "patched upstream"
    assert second.resolved_at == resolved_at


@pytest.mark.asyncio
async def test_ignore_records_reason(db_session, service, add_dead_letter):
    dead_letter_id = await add_dead_letter("noise")

    ignored = await service.ignore(db_session, dead_letter_id, "test traffic")

    assert ignored.status == DeadLetterStatus.IGNORED.value
    assert ignored.resolution == "test traffic"
    assert ignored.resolved_at is not None


@pytest.mark.asyncio
async def test_investigate_and_reopen(db_session, service, add_dead_letter):
    dead_letter_id = await add_dead_letter("look")

    investigating = await service.mark_investigating(db_session, dead_letter_id, "ops")
    assert investigating.status == DeadLetterStatus.INVESTIGATING.value

    with pytest.raises(InvalidTransition):
        await service.mark_investigating(db_session, dead_letter_id, "ops")

    reopened = await service.reopen(db_session, dead_letter_id, "ops")
    assert reopened.status == DeadLetterStatus.PENDING.value


@pytest.mark.asyncio
async def test_reopen_pending_is_rejected(db_session, service, add_dead_letter):
    dead_letter_id = await add_dead_letter("fresh")

    with pytest.raises(InvalidTransition):
        await service.reopen(db_session, dead_letter_id, "ops")


@pytest.mark.asyncio
async def test_resubmit_creates_new_job(db_session, settings, service, add_dead_letter):
    dead_letter_id = await add_dead_letter("to-retry", type="email:send")

    dead_letter, submitted = await service.resubmit(
        db_session, dead_letter_id, "ops", JobService(settings)
    )

    assert dead_letter.status == DeadLetterStatus.REPROCESSED.value
    assert submitted.job_id != "to-retry"
    assert submitted.job_id.startswith("email-send-")
    job = await job_store.get(db_session, submitted.job_id)
    assert job.data == {"name": "to-retry"}
    assert job.attempts == 0
    assert job.priority == dead_letter.priority


@pytest.mark.asyncio
async def test_stats(db_session, service, add_dead_letter):
    await add_dead_letter("a", type="email:send")
    await add_dead_letter("b", reason=DLQReason.TIMEOUT, attempts=1)
    ignored = await add_dead_letter("c")
    await service.ignore(db_session, ignored, "noise")

    stats = await service.get_stats(db_session)

    assert stats["total"] == 3
    assert stats["by_status"]["pending"] == 2
    assert stats["by_status"]["ignored"] == 1
    assert stats["by_status"]["reprocessed"] == 0
    assert stats["by_severity"]["critical"] == 1
    assert stats["by_reason"]["timeout"] == 1
    assert stats["by_type"] == {"email:send": 1, "report:build": 2}


@pytest.mark.asyncio
async def test_find_stale_only_open_records(db_session, service, add_dead_letter):
    old = datetime.now(UTC) - timedelta(days=45)
    stale = await add_dead_letter("stale", moved_at=old)
    investigating = await add_dead_letter("stale-investigating", moved_at=old)
    closed = await add_dead_letter("stale-closed", moved_at=old)
    await add_dead_letter("recent")
    await service.mark_investigating(db_session, investigating, "ops")
    await service.ignore(db_session, closed, "noise")

    found = await service.find_stale(db_session, days=30)

    assert {d.id for d in found} == {stale, investigating}


@pytest.mark.asyncio
async def test_cleanup_removes_old_closed_records(db_session, service, add_dead_letter):
    long_ago = datetime.now(UTC) - timedelta(days=60)
    await add_dead_letter(
        "old-resolved",
        status=DeadLetterStatus.RESOLVED.value,
        resolved_at=long_ago,
    )
    await add_dead_letter("old-open", moved_at=long_ago)
    await add_dead_letter(
        "recent-ignored",
        status=DeadLetterStatus.IGNORED.value,
        resolved_at=datetime.now(UTC),
    )

    deleted = await service.cleanup(db_session, retention_days=30)
    _, total = await service.list_dead_letters(db_session)

    assert deleted == 1
    assert total == 2


@pytest.mark.asyncio
async def test_list_filters(db_session, service, add_dead_letter):
    await add_dead_letter("a", type="email:send")
    await add_dead_letter("b")

    critical, total = await service.list_dead_letters(db_session, severity="critical")

    assert total == 1
    assert critical[0].job_type == "email:send"


@pytest.mark.asyncio
async def test_find_stale_with_zero_days(db_session, service, add_dead_letter):
    fresh = await add_dead_letter("fresh", moved_at=datetime.now(UTC) - timedelta(seconds=5))

    assert await service.find_stale(db_session) == []
    assert [d.id for d in await service.find_stale(db_session, days=0)] == [fresh]
