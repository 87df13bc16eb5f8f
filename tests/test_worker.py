import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from jobqueue.infra.dispatch import InMemoryDispatchQueue
from jobqueue.v1.core.exceptions import HandlerError
from jobqueue.v1.deadletter.models import DeadLetter
from jobqueue.v1.jobs.loader import BatchLoader
from jobqueue.v1.jobs.models import JobStatus
from jobqueue.v1.jobs.policy import FailureOutcome
from jobqueue.v1.jobs.store import JobStore, job_store
from jobqueue.v1.jobs.worker import WorkerPool


class RecordingHandler:
    def __init__(self, result=None):
        self.result = result or {"done": True}
        self.calls = []

    async def handle(self, payload, context):
        self.calls.append((payload, context))
        return self.result


class FailingHandler:
    def __init__(self, exc=None):
        self.exc = exc or RuntimeError("handler exploded")
        self.calls = 0

    async def handle(self, payload, context):
        self.calls += 1
        raise self.exc


class BlockingHandler:
    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def handle(self, payload, context):
        self.started.set()
        await self.release.wait()
        return None


async def insert(database, job):
    async with database.session() as session:
        session.add(job)
        await session.commit()


async def fetch(database, job_id):
    async with database.session() as session:
        return await job_store.get(session, job_id)


async def dispatch_ready(database, dispatch, now=None):
    """Claim everything claimable at ``now`` and push it to the dispatch queue."""
    async with database.session() as session:
        jobs = await job_store.claim_batch(session, 100, now or datetime.now(UTC))
        await session.commit()
    for job in jobs:
        await dispatch.enqueue(
            job.job_id, job.type, job.data, job.priority, attempts=job.attempts
        )
    return jobs


@pytest.fixture
def pool(settings, database, dispatch, registry):
    return WorkerPool(settings, database, dispatch, registry=registry, worker_id="worker-1")


@pytest.mark.asyncio
async def test_process_completes_and_deletes_record(database, dispatch, registry, pool, make_job):
    handler = RecordingHandler()
    registry.register("report:build", handler)
    await insert(database, make_job("ok"))
    await dispatch_ready(database, dispatch)

    item = await dispatch.pull(0)
    outcome = await pool.process(item)

    assert outcome == "completed"
    assert await fetch(database, "ok") is None
    assert await dispatch.size() == 0
    payload, context = handler.calls[0]
    assert payload == {"name": "ok"}
    assert context.attempt == 1
    assert context.worker_id == "worker-1"
    assert not context.is_last_attempt


@pytest.mark.asyncio
async def test_process_retains_completed_when_configured(
    settings, database, dispatch, registry, make_job
):
    settings.job_retain_completed = True
    registry.register("report:build", RecordingHandler({"rows": 3}))
    pool = WorkerPool(settings, database, dispatch, registry=registry, worker_id="worker-1")
    await insert(database, make_job("kept"))
    await dispatch_ready(database, dispatch)

    await pool.process(await dispatch.pull(0))

    job = await fetch(database, "kept")
    assert job.status == JobStatus.COMPLETED.value
    assert job.result == {"rows": 3}
    assert job.processing_time is not None


@pytest.mark.asyncio
async def test_process_skips_record_that_is_not_batched(
    database, dispatch, registry, pool, make_job
):
    handler = RecordingHandler()
    registry.register("report:build", handler)
    await insert(database, make_job("cancelled-meanwhile"))
    await dispatch_ready(database, dispatch)
    async with database.session() as session:
        await job_store.cancel(session, "cancelled-meanwhile", datetime.now(UTC))
        await session.commit()

    outcome = await pool.process(await dispatch.pull(0))

    assert outcome == "skipped"
    assert handler.calls == []
    assert await dispatch.size() == 0


@pytest.mark.asyncio
async def test_missing_handler_counts_as_failed_attempt(database, dispatch, pool, make_job):
    await insert(database, make_job("orphan", type="unknown:type"))
    await dispatch_ready(database, dispatch)

    outcome = await pool.process(await dispatch.pull(0))

    assert outcome == FailureOutcome.RETRIED
    job = await fetch(database, "orphan")
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 1
    assert "No handler registered" in job.error


@pytest.mark.asyncio
async def test_failing_job_is_escalated_after_max_attempts(
    database, dispatch, registry, pool, make_job, later
):
    """maxAttempts=2 and a handler that always fails ends in a low severity dead letter."""
    handler = FailingHandler()
    registry.register("report:build", handler)
    await insert(database, make_job("doomed", max_attempts=2))

    outcomes = []
    for _ in range(2):
        # Past any backoff the first failure scheduled
        await dispatch_ready(database, dispatch, now=later)
        outcomes.append(await pool.process(await dispatch.pull(0)))

    assert outcomes == [FailureOutcome.RETRIED, FailureOutcome.ESCALATED]
    assert handler.calls == 2
    assert await fetch(database, "doomed") is None

    async with database.session() as session:
        [dead_letter] = (await session.execute(select(DeadLetter))).scalars().all()
    assert dead_letter.original_job_id == "doomed"
    assert dead_letter.attempts == 2
    assert dead_letter.dlq_reason == "exhausted_retries"
    assert dead_letter.severity == "low"
    assert dead_letter.status == "pending"
    assert dead_letter.failure_reason == "handler exploded"


@pytest.mark.asyncio
async def test_permanent_handler_error_goes_straight_to_dead_letter(
    database, dispatch, registry, pool, make_job
):
    registry.register(
        "report:build",
        FailingHandler(HandlerError("bad input", dlq_reason="validation_error", permanent=True)),
    )
    await insert(database, make_job("bad"))
    await dispatch_ready(database, dispatch)

    outcome = await pool.process(await dispatch.pull(0))

    assert outcome == FailureOutcome.ESCALATED
    async with database.session() as session:
        [dead_letter] = (await session.execute(select(DeadLetter))).scalars().all()
    assert dead_letter.dlq_reason == "validation_error"
    assert dead_letter.attempts == 1


@pytest.mark.asyncio
async def test_heartbeat_extends_active_leases(database, dispatch, registry, pool, make_job):
    handler = BlockingHandler()
    registry.register("report:build", handler)
    await insert(database, make_job("long"))
    await dispatch_ready(database, dispatch)

    task = asyncio.create_task(pool.process(await dispatch.pull(0)))
    await asyncio.wait_for(handler.started.wait(), timeout=5)
    before = (await fetch(database, "long")).lock_timeout

    await asyncio.sleep(0.01)
    assert await pool.heartbeat() == 1
    after = (await fetch(database, "long")).lock_timeout

    handler.release.set()
    assert await task == "completed"
    assert after > before


@pytest.mark.asyncio
async def test_reclaim_requeues_expired_leases(database, pool, make_job):
    past = datetime.now(UTC) - timedelta(minutes=10)
    await insert(
        database,
        make_job(
            "crashed",
            status=JobStatus.PROCESSING.value,
            attempts=1,
            worker_id="dead-worker",
            locked_at=past,
            lock_timeout=past + timedelta(minutes=5),
        ),
    )

    reclaimed = await pool.reclaim()

    assert [job.job_id for job in reclaimed] == ["crashed"]
    job = await fetch(database, "crashed")
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 1


@pytest.mark.asyncio
async def test_started_pool_drains_loader_output(
    settings, database, dispatch, registry, make_job
):
    handler = RecordingHandler()
    registry.register("report:build", handler)
    for i in range(4):
        await insert(database, make_job(f"job-{i}"))

    loader = BatchLoader(settings, database, dispatch)
    pool = WorkerPool(settings, database, dispatch, registry=registry)
    await loader.tick()
    await pool.start()
    assert pool.running
    with pytest.raises(RuntimeError):
        await pool.start()

    for _ in range(100):
        if len(handler.calls) == 4:
            break
        await asyncio.sleep(0.05)
    await pool.stop(timeout=5)

    assert not pool.running
    assert len(handler.calls) == 4
    async with database.session() as session:
        jobs, total = await job_store.list_jobs(session)
    assert total == 0


@pytest.mark.asyncio
async def test_stop_waits_for_active_job(settings, database, dispatch, registry, make_job):
    handler = BlockingHandler()
    registry.register("report:build", handler)
    await insert(database, make_job("in-flight"))
    await dispatch_ready(database, dispatch)

    pool = WorkerPool(settings, database, dispatch, registry=registry)
    await pool.start()
    await asyncio.wait_for(handler.started.wait(), timeout=5)

    stopping = asyncio.create_task(pool.stop(timeout=5))
    await asyncio.sleep(0.05)
    assert not stopping.done()

    handler.release.set()
    await stopping
    assert await fetch(database, "in-flight") is None


class OutageStore(JobStore):
    """Job store whose first ``failures`` lease attempts raise ``error``."""

    def __init__(self, failures: int, error: Exception):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def mark_processing(self, session, *args, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return await super().mark_processing(session, *args, **kwargs)


async def wait_for_calls(handler, count, timeout=5.0):
    for _ in range(int(timeout / 0.02)):
        if len(handler.calls) >= count:
            return
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_refused_store_connection_releases_item(
    settings, database, dispatch, registry, make_job
):
    store = OutageStore(1, ConnectionRefusedError(111, "Connect call failed"))
    pool = WorkerPool(settings, database, dispatch, registry=registry, store=store)
    registry.register("report:build", RecordingHandler())
    await insert(database, make_job("during-outage"))
    await dispatch_ready(database, dispatch)

    outcome = await pool.process(await dispatch.pull(0))

    assert outcome == "released"
    assert (await fetch(database, "during-outage")).status == JobStatus.BATCHED.value
    assert await dispatch.size() == 1


@pytest.mark.asyncio
async def test_consumers_recover_once_store_is_back(
    settings, database, dispatch, registry, make_job
):
    store = OutageStore(2, ConnectionRefusedError(111, "Connect call failed"))
    handler = RecordingHandler()
    registry.register("report:build", handler)
    await insert(database, make_job("survivor"))
    await dispatch_ready(database, dispatch)

    pool = WorkerPool(settings, database, dispatch, registry=registry, store=store)
    await pool.start()
    await wait_for_calls(handler, 1)
    consumers_alive = not any(task.done() for task in pool._consumers)
    await pool.stop(timeout=5)

    assert len(handler.calls) == 1
    assert store.calls == 3
    assert consumers_alive
    assert await fetch(database, "survivor") is None


@pytest.mark.asyncio
async def test_consumer_survives_unexpected_error(settings, database, registry, make_job):
    dispatch = InMemoryDispatchQueue(visibility_timeout_ms=50)
    store = OutageStore(1, RuntimeError("driver bug"))
    handler = RecordingHandler()
    registry.register("report:build", handler)
    await insert(database, make_job("redelivered"))
    await dispatch_ready(database, dispatch)

    pool = WorkerPool(settings, database, dispatch, registry=registry, store=store)
    await pool.start()
    await wait_for_calls(handler, 1)
    consumers_alive = not any(task.done() for task in pool._consumers)
    await pool.stop(timeout=5)

    assert len(handler.calls) == 1
    assert consumers_alive
    assert await fetch(database, "redelivered") is None


@pytest.mark.asyncio
async def test_periodic_task_keeps_running_after_crash(pool):
    calls = 0

    async def sweep():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("sweep failed")
        pool._stopping.set()

    await asyncio.wait_for(pool._periodic(sweep, 10, "reclaim"), timeout=5)

    assert calls == 2
