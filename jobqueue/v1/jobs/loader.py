"""
Batch loader: moves ready job records from the record store into the
dispatch queue on a fixed interval.
"""

import asyncio
from dataclasses import dataclass, field

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings
from jobqueue.infra.database import Database, utcnow
from jobqueue.infra.dispatch import DispatchQueue
from jobqueue.v1.core.exceptions import DispatchUnavailable, StoreUnavailable
from jobqueue.v1.jobs.store import JobStore, generate_batch_id, job_store

logger = get_logger(__name__)


def error_backoff_s(settings: Settings, consecutive_errors: int) -> float:
    """Capped exponential delay for loops recovering from infrastructure errors."""
    delay_ms = min(
        settings.store_retry_base_ms * (2 ** max(consecutive_errors - 1, 0)),
        settings.store_retry_max_ms,
    )
    return delay_ms / 1000


@dataclass
class LoaderTick:
    batch_id: str | None = None
    claimed: int = 0
    dispatched: int = 0
    failed_job_ids: list[str] = field(default_factory=list)


class BatchLoader:
    """
    Claims pending jobs in batches and pushes them to the dispatch queue.

    The loader never waits on worker capacity. Jobs whose push fails stay
    batched and are returned to pending by the reclaim sweep once the batched
    grace period passes; if no push in a batch succeeds the whole batch is
    released right away.
    """

    def __init__(
        self,
        settings: Settings,
        database: Database,
        dispatch: DispatchQueue,
        store: JobStore = job_store,
    ):
        self.settings = settings
        self.database = database
        self.dispatch = dispatch
        self.store = store
        self._stopping = asyncio.Event()

    async def tick(self) -> LoaderTick:
        """Run one claim-and-dispatch cycle."""
        batch_id = generate_batch_id()
        async with self.database.session() as session:
            jobs = await self.store.claim_batch(
                session, self.settings.job_batch_size, utcnow(), batch_id
            )
            await session.commit()

        outcome = LoaderTick(batch_id=batch_id, claimed=len(jobs))
        if not jobs:
            return outcome

        for job in jobs:
            try:
                await self.dispatch.enqueue(
                    job.job_id,
                    job.type,
                    job.data,
                    job.priority,
                    attempts=job.attempts,
                    backoff={"type": job.backoff_type, "delay": job.backoff_delay},
                    batch_id=batch_id,
                )
                outcome.dispatched += 1
            except DispatchUnavailable:
                outcome.failed_job_ids.append(job.job_id)

        if outcome.failed_job_ids and outcome.dispatched == 0:
            async with self.database.session() as session:
                released = await self.store.release_batch(
                    session, batch_id, now=utcnow()
                )
                await session.commit()
            logger.warning(
                "Dispatch failed, batch released",
                batch_id=batch_id,
                released=released,
            )
            raise DispatchUnavailable(details={"batch_id": batch_id})

        if outcome.failed_job_ids:
            logger.warning(
                "Dispatch failed for part of batch",
                batch_id=batch_id,
                failed_job_ids=outcome.failed_job_ids,
            )

        logger.info(
            "Batch dispatched",
            batch_id=batch_id,
            claimed=outcome.claimed,
            dispatched=outcome.dispatched,
        )
        return outcome

    async def run(self) -> None:
        """Tick every ``job_batch_interval_ms`` until stopped."""
        logger.info(
            "Starting batch loader",
            batch_size=self.settings.job_batch_size,
            interval_ms=self.settings.job_batch_interval_ms,
        )
        consecutive_errors = 0
        while not self._stopping.is_set():
            delay = self.settings.job_batch_interval_ms / 1000
            try:
                outcome = await self.tick()
                consecutive_errors = 0
                # A full batch suggests more work is waiting
                if outcome.claimed >= self.settings.job_batch_size:
                    delay = 0
            except (StoreUnavailable, DispatchUnavailable) as e:
                consecutive_errors += 1
                delay = error_backoff_s(self.settings, consecutive_errors)
                logger.warning(
                    "Batch loader tick failed",
                    error=e.message,
                    retry_in_ms=int(delay * 1000),
                )
            except Exception:
                consecutive_errors += 1
                delay = error_backoff_s(self.settings, consecutive_errors)
                logger.exception(
                    "Batch loader tick crashed", retry_in_ms=int(delay * 1000)
                )
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except TimeoutError:
                pass
        logger.info("Batch loader stopped")

    def stop(self) -> None:
        self._stopping.set()
