"""Tests for the job record store: claims, leases and lifecycle writes."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from jobqueue.v1.core.exceptions import InvalidTransition, ValidationError
from jobqueue.v1.deadletter.models import DeadLetter, DLQReason
from jobqueue.v1.jobs.models import Job, JobStatus, can_transition
from jobqueue.v1.jobs.policy import build_dead_letter
from jobqueue.v1.jobs.store import _checked, generate_batch_id, job_store


async def fetch(database, job_id: str) -> Job | None:
    async with database.session() as session:
        return await job_store.get(session, job_id)


@pytest.mark.asyncio
async def test_claim_orders_by_priority_then_age(database, make_job):
    """Priorities [5, 10, 1] submitted as A, B, C are claimed as B, A, C."""
    base = datetime.now(UTC) - timedelta(minutes=1)
    async with database.session() as session:
        session.add(make_job("A", priority=5, created_at=base))
        session.add(make_job("B", priority=10, created_at=base + timedelta(seconds=1)))
        session.add(make_job("C", priority=1, created_at=base + timedelta(seconds=2)))
        await session.commit()

        claimed = await job_store.claim_batch(session, 3, datetime.now(UTC))
        await session.commit()

    assert [job.job_id for job in claimed] == ["B", "A", "C"]
    assert {job.status for job in claimed} == {JobStatus.BATCHED.value}
    assert len({job.batch_id for job in claimed}) == 1


@pytest.mark.asyncio
async def test_claim_equal_priority_is_fifo(database, make_job):
    base = datetime.now(UTC) - timedelta(minutes=1)
    async with database.session() as session:
        for offset, job_id in enumerate(["first", "second", "third"]):
            session.add(make_job(job_id, created_at=base + timedelta(seconds=offset)))
        await session.commit()

        claimed = await job_store.claim_batch(session, 2, datetime.now(UTC))
        await session.commit()

    assert [job.job_id for job in claimed] == ["first", "second"]
    remaining = await fetch(database, "third")
    assert remaining.status == JobStatus.PENDING.value


@pytest.mark.asyncio
async def test_claim_hands_each_record_to_one_caller(database, make_job):
    async with database.session() as session:
        for i in range(10):
            session.add(make_job(f"job-{i}"))
        await session.commit()

    async def claim() -> list[str]:
        async with database.session() as session:
            jobs = await job_store.claim_batch(session, 10, datetime.now(UTC))
            await session.commit()
            return [job.job_id for job in jobs]

    first, second = await asyncio.gather(claim(), claim())

    assert not set(first) & set(second)
    assert sorted(first + second) == sorted(f"job-{i}" for i in range(10))


@pytest.mark.asyncio
async def test_racing_claimers_get_single_record_once(database, make_job):
    async with database.session() as session:
        session.add(make_job("contested"))
        await session.commit()

    async def claim() -> list[str]:
        async with database.session() as session:
            jobs = await job_store.claim_batch(session, 1, datetime.now(UTC))
            await session.commit()
            return [job.job_id for job in jobs]

    results = await asyncio.gather(*(claim() for _ in range(8)))

    assert sorted(results, key=len) == [[]] * 7 + [["contested"]]
    assert (await fetch(database, "contested")).status == JobStatus.BATCHED.value


@pytest.mark.asyncio
async def test_claim_skips_records_scheduled_in_future(database, make_job):
    now = datetime.now(UTC)
    async with database.session() as session:
        session.add(make_job("later", scheduled_for=now + timedelta(hours=1)))
        await session.commit()

        assert await job_store.claim_batch(session, 10, now) == []

        claimed = await job_store.claim_batch(session, 10, now + timedelta(hours=1, seconds=1))
        await session.commit()

    assert [job.job_id for job in claimed] == ["later"]


@pytest.mark.asyncio
async def test_create_rejects_duplicate_job_id(db_session, make_job):
    await job_store.create(db_session, make_job("dup"))
    await db_session.commit()

    with pytest.raises(ValidationError, match="already exists"):
        await job_store.create(db_session, make_job("dup"))


@pytest.mark.asyncio
async def test_mark_processing_sets_lease(database, make_job):
    now = datetime.now(UTC)
    async with database.session() as session:
        session.add(make_job("leased"))
        await session.commit()
        await job_store.claim_batch(session, 1, now)

        job = await job_store.mark_processing(session, "leased", "worker-1", 60_000, now)
        await session.commit()

    assert job.status == JobStatus.PROCESSING.value
    assert job.worker_id == "worker-1"
    assert job.lock_timeout == now + timedelta(milliseconds=60_000)
    assert job.batch_id is None


@pytest.mark.asyncio
async def test_mark_processing_requires_batched(database, make_job):
    async with database.session() as session:
        session.add(make_job("still-pending"))
        await session.commit()

        job = await job_store.mark_processing(
            session, "still-pending", "worker-1", 60_000, datetime.now(UTC)
        )

    assert job is None


@pytest.mark.asyncio
async def test_reclaim_returns_expired_lease_to_pending(database, make_job):
    """A 1 second lease left alone is reclaimed 2 seconds later, attempts unchanged."""
    started = datetime.now(UTC)
    async with database.session() as session:
        session.add(make_job("abandoned", attempts=1))
        await session.commit()
        await job_store.claim_batch(session, 1, started)
        await job_store.mark_processing(session, "abandoned", "gone", 1000, started)
        await session.commit()

        reclaimed = await job_store.reclaim_stale_leases(
            session, started + timedelta(seconds=2)
        )
        await session.commit()

    assert [job.job_id for job in reclaimed] == ["abandoned"]
    job = await fetch(database, "abandoned")
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 1
    assert job.worker_id is None
    assert job.locked_at is None
    assert job.lock_timeout is None


@pytest.mark.asyncio
async def test_reclaim_leaves_live_leases(database, make_job):
    now = datetime.now(UTC)
    async with database.session() as session:
        session.add(make_job("busy"))
        await session.commit()
        await job_store.claim_batch(session, 1, now)
        await job_store.mark_processing(session, "busy", "worker-1", 60_000, now)
        await session.commit()

        reclaimed = await job_store.reclaim_stale_leases(session, now + timedelta(seconds=30))

    assert reclaimed == []


@pytest.mark.asyncio
async def test_reclaim_requeues_batched_past_grace(database, make_job):
    now = datetime.now(UTC)
    async with database.session() as session:
        session.add(make_job("stranded"))
        await session.commit()
        await job_store.claim_batch(session, 1, now)
        await session.commit()

        early = await job_store.reclaim_stale_leases(
            session, now + timedelta(seconds=30), batched_grace_ms=120_000
        )
        late = await job_store.reclaim_stale_leases(
            session, now + timedelta(minutes=3), batched_grace_ms=120_000
        )
        await session.commit()

    assert early == []
    assert [job.job_id for job in late] == ["stranded"]
    job = await fetch(database, "stranded")
    assert job.status == JobStatus.PENDING.value
    assert job.batch_id is None


@pytest.mark.asyncio
async def test_mark_failed_increments_attempts_once(database, make_job):
    now = datetime.now(UTC)
    async with database.session() as session:
        session.add(make_job("flaky"))
        await session.commit()
        await job_store.claim_batch(session, 1, now)
        await job_store.mark_processing(session, "flaky", "worker-1", 60_000, now)

        failed = await job_store.mark_failed(
            session, "flaky", "worker-1", "x" * 2000, "stack", 15, now
        )
        again = await job_store.mark_failed(
            session, "flaky", "worker-1", "boom", None, 15, now
        )
        await session.commit()

    assert failed.attempts == 1
    assert failed.status == JobStatus.FAILED.value
    assert len(failed.error) == 1000
    assert failed.error.endswith("...")
    assert again is None


@pytest.mark.asyncio
async def test_mark_failed_ignores_other_workers(database, make_job):
    now = datetime.now(UTC)
    async with database.session() as session:
        session.add(make_job("owned"))
        await session.commit()
        await job_store.claim_batch(session, 1, now)
        await job_store.mark_processing(session, "owned", "worker-1", 60_000, now)

        result = await job_store.mark_failed(
            session, "owned", "worker-2", "boom", None, 5, now
        )

    assert result is None


@pytest.mark.asyncio
async def test_mark_completed_deletes_record(database, make_job):
    now = datetime.now(UTC)
    async with database.session() as session:
        session.add(make_job("done"))
        await session.commit()
        await job_store.claim_batch(session, 1, now)
        await job_store.mark_processing(session, "done", "worker-1", 60_000, now)

        assert await job_store.mark_completed(
            session, "done", "worker-1", {"ok": True}, 12, now
        )
        await session.commit()

    assert await fetch(database, "done") is None


@pytest.mark.asyncio
async def test_mark_completed_can_retain_record(database, make_job):
    now = datetime.now(UTC)
    async with database.session() as session:
        session.add(make_job("kept"))
        await session.commit()
        await job_store.claim_batch(session, 1, now)
        await job_store.mark_processing(session, "kept", "worker-1", 60_000, now)
        await job_store.mark_completed(
            session, "kept", "worker-1", {"ok": True}, 12, now, retain=True
        )
        await session.commit()

    job = await fetch(database, "kept")
    assert job.status == JobStatus.COMPLETED.value
    assert job.result == {"ok": True}
    assert job.lock_timeout is None


@pytest.mark.asyncio
async def test_release_batch_restores_pending(database, make_job):
    now = datetime.now(UTC)
    batch_id = generate_batch_id()
    async with database.session() as session:
        session.add(make_job("one"))
        session.add(make_job("two"))
        await session.commit()
        await job_store.claim_batch(session, 2, now, batch_id)

        released = await job_store.release_batch(session, batch_id, ["one"])
        await session.commit()

    assert released == 1
    assert (await fetch(database, "one")).status == JobStatus.PENDING.value
    assert (await fetch(database, "two")).status == JobStatus.BATCHED.value


@pytest.mark.asyncio
async def test_escalation_replaces_record_with_dead_letter(database, settings, make_job):
    now = datetime.now(UTC)
    async with database.session() as session:
        session.add(make_job("doomed", max_attempts=1))
        await session.commit()
        await job_store.claim_batch(session, 1, now)
        await job_store.mark_processing(session, "doomed", "worker-1", 60_000, now)
        failed = await job_store.mark_failed(
            session, "doomed", "worker-1", "boom", None, 5, now
        )

        dead_letter = build_dead_letter(failed, DLQReason.EXHAUSTED_RETRIES, settings, now)
        escalated = await job_store.escalate_to_dead_letter(session, failed, dead_letter)
        second = await job_store.escalate_to_dead_letter(
            session,
            failed,
            build_dead_letter(failed, DLQReason.EXHAUSTED_RETRIES, settings, now),
        )
        await session.commit()

    assert escalated is dead_letter
    assert second is None
    assert await fetch(database, "doomed") is None
    async with database.session() as session:
        count = len((await session.execute(DeadLetter.__table__.select())).all())
    assert count == 1


@pytest.mark.asyncio
async def test_cancel_only_before_processing(database, make_job):
    now = datetime.now(UTC)
    async with database.session() as session:
        session.add(make_job("waiting"))
        session.add(make_job("running"))
        await session.commit()

        cancelled = await job_store.cancel(session, "waiting", now)
        await job_store.claim_batch(session, 1, now)
        await job_store.mark_processing(session, "running", "worker-1", 60_000, now)
        refused = await job_store.cancel(session, "running", now)
        await session.commit()

    assert cancelled.status == JobStatus.CANCELLED.value
    assert refused is None


@pytest.mark.asyncio
async def test_counts_and_cleanup(database, make_job):
    now = datetime.now(UTC)
    old = now - timedelta(days=30)
    async with database.session() as session:
        session.add(make_job("fresh"))
        session.add(make_job("scheduled", scheduled_for=now + timedelta(hours=1)))
        session.add(make_job("stale", status=JobStatus.CANCELLED.value, created_at=old))
        await session.commit()

        by_status = await job_store.count_by_status(session)
        ready = await job_store.count_ready(session, now)
        deleted = await job_store.cleanup(session, now - timedelta(days=7))
        await session.commit()

    assert by_status[JobStatus.PENDING.value] == 2
    assert by_status[JobStatus.CANCELLED.value] == 1
    assert by_status[JobStatus.FAILED.value] == 0
    assert ready == 1
    assert deleted == 1


def test_transition_graph():
    assert can_transition(JobStatus.PENDING, JobStatus.BATCHED)
    assert can_transition(JobStatus.PROCESSING, JobStatus.PENDING)
    assert not can_transition(JobStatus.COMPLETED, JobStatus.PENDING)
    assert not can_transition(JobStatus.PENDING, JobStatus.PROCESSING)

    with pytest.raises(InvalidTransition):
        _checked([JobStatus.CANCELLED], JobStatus.PENDING)


def test_batch_id_format():
    batch_id = generate_batch_id()
    prefix, millis, suffix = batch_id.split("_")
    assert prefix == "batch"
    assert millis.isdigit()
    assert len(suffix) == 9
