"""
Worker pool: bounded-concurrency consumers of the dispatch queue.
"""

import asyncio
import os
import socket
import time
from typing import Any

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings
from jobqueue.infra.database import Database, utcnow
from jobqueue.infra.dispatch import DispatchItem, DispatchQueue
from jobqueue.v1.core.exceptions import (
    DispatchUnavailable,
    NoHandlerError,
    StoreUnavailable,
)
from jobqueue.v1.core.registries import JobContext, JobRegistry, job_registry
from jobqueue.v1.jobs.loader import error_backoff_s
from jobqueue.v1.jobs.models import Job
from jobqueue.v1.jobs.policy import FailureOutcome, FailurePolicy, retry_store
from jobqueue.v1.jobs.store import JobStore, job_store

logger = get_logger(__name__)


class WorkerPool:
    """
    Runs job handlers for dispatched jobs.

    Features:
    - ``job_concurrency`` consumer tasks, each running one job at a time
    - Lease on every started job, renewed by a heartbeat loop
    - Stale lease sweep that requeues jobs of crashed workers
    - Failures handed to the failure policy, never to other consumers
    - Graceful stop that lets active jobs finish
    """

    def __init__(
        self,
        settings: Settings,
        database: Database,
        dispatch: DispatchQueue,
        registry: JobRegistry = job_registry,
        store: JobStore = job_store,
        policy: FailurePolicy | None = None,
        worker_id: str | None = None,
    ):
        self.settings = settings
        self.database = database
        self.dispatch = dispatch
        self.registry = registry
        self.store = store
        self.policy = policy or FailurePolicy(settings, database, store)
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.active_jobs: dict[str, Job] = {}
        self._stopping = asyncio.Event()
        self._consumers: list[asyncio.Task] = []
        self._background: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._consumers) and not self._stopping.is_set()

    async def start(self) -> None:
        """Spawn consumers and the heartbeat and reclaim loops."""
        if self.running:
            raise RuntimeError("Worker pool is already running")

        self._stopping.clear()
        logger.info(
            "Starting worker pool",
            worker_id=self.worker_id,
            concurrency=self.settings.job_concurrency,
            handlers=self.registry.list(),
        )
        self._consumers = [
            asyncio.create_task(self._consume(slot), name=f"consumer-{slot}")
            for slot in range(self.settings.job_concurrency)
        ]
        self._background = [
            asyncio.create_task(self._heartbeat_loop(), name="heartbeat"),
            asyncio.create_task(self._reclaim_loop(), name="reclaim"),
        ]

    async def stop(self, timeout: float | None = None) -> None:
        """Stop pulling new work and wait for active jobs, up to ``timeout`` seconds."""
        timeout = self.settings.worker_shutdown_timeout_s if timeout is None else timeout
        logger.info("Stopping worker pool", worker_id=self.worker_id)
        self._stopping.set()

        if self._consumers:
            _, pending = await asyncio.wait(self._consumers, timeout=timeout)
            if pending:
                logger.warning(
                    "Worker pool stopped with active jobs",
                    worker_id=self.worker_id,
                    active_jobs=list(self.active_jobs),
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._consumers = []
        self._background = []

    async def _consume(self, slot: int) -> None:
        poll_s = self.settings.job_poll_interval_ms / 1000
        consecutive_errors = 0
        while not self._stopping.is_set():
            try:
                item = await self.dispatch.pull(timeout=poll_s)
                consecutive_errors = 0
            except DispatchUnavailable:
                consecutive_errors += 1
                await asyncio.sleep(error_backoff_s(self.settings, consecutive_errors))
                continue
            if item is None:
                continue
            try:
                await self.process(item)
            except Exception:
                # The item stays unacknowledged and is redelivered after its
                # visibility timeout; a started job is recovered by its lease
                consecutive_errors += 1
                delay = error_backoff_s(self.settings, consecutive_errors)
                logger.exception(
                    "Consumer failed processing job",
                    job_id=item.job_id,
                    slot=slot,
                    worker_id=self.worker_id,
                    retry_in_ms=int(delay * 1000),
                )
                await asyncio.sleep(delay)

    async def process(self, item: DispatchItem) -> FailureOutcome | str:
        """
        Run one dispatched job end to end.

        Returns "completed", "skipped", "released" or the failure outcome.
        The dispatch item is acknowledged unless it had to be released.
        """
        try:
            async with self.database.session() as session:
                job = await self.store.mark_processing(
                    session,
                    item.job_id,
                    self.worker_id,
                    self.settings.job_lease_ms,
                    utcnow(),
                )
                await session.commit()
        except StoreUnavailable:
            await self._release(item)
            return "released"

        if job is None:
            # Cancelled, reclaimed or already handled elsewhere
            logger.info("Dispatched job not batched, skipping", job_id=item.job_id)
            await self._ack(item)
            return "skipped"

        self.active_jobs[job.job_id] = job
        job_logger = logger.bind(
            job_id=job.job_id,
            job_type=job.type,
            worker_id=self.worker_id,
            attempt=job.attempts + 1,
        )
        job_logger.info("Processing job started")
        started = time.monotonic()
        try:
            result = await self._run_handler(job, job_logger)
        except Exception as exc:
            elapsed = int((time.monotonic() - started) * 1000)
            if isinstance(exc, NoHandlerError):
                job_logger.error("No handler registered for job type")
            else:
                job_logger.warning(
                    "Job handler failed", error=str(exc), error_class=type(exc).__name__
                )
            outcome = await self.policy.handle_failure(
                job, self.worker_id, exc, processing_time=elapsed
            )
        else:
            elapsed = int((time.monotonic() - started) * 1000)
            outcome = await self._complete(job, result, elapsed, job_logger)
        finally:
            self.active_jobs.pop(job.job_id, None)

        await self._ack(item)
        return outcome

    async def _run_handler(self, job: Job, job_logger: Any) -> dict[str, Any] | None:
        if not self.registry.has(job.type):
            raise NoHandlerError(job.type)
        handler = self.registry.get(job.type)
        context = JobContext(
            job_id=job.job_id,
            job_type=job.type,
            attempt=job.attempts + 1,
            max_attempts=job.max_attempts,
            worker_id=self.worker_id,
            logger=job_logger,
        )
        return await handler.handle(dict(job.data or {}), context)

    async def _complete(
        self,
        job: Job,
        result: dict[str, Any] | None,
        processing_time: int,
        job_logger: Any,
    ) -> str:
        async def apply() -> bool:
            async with self.database.session() as session:
                done = await self.store.mark_completed(
                    session,
                    job.job_id,
                    self.worker_id,
                    result,
                    processing_time,
                    utcnow(),
                    retain=self.settings.job_retain_completed,
                )
                await session.commit()
                return done

        try:
            done = await retry_store(apply, self.settings, "mark_completed")
        except StoreUnavailable:
            job_logger.error("Completion not recorded, job left to lease expiry")
            return FailureOutcome.DEFERRED

        if not done:
            job_logger.warning("Lease lost, result discarded")
            return FailureOutcome.LEASE_LOST

        job_logger.info("Job completed", processing_time=processing_time)
        return "completed"

    async def _ack(self, item: DispatchItem) -> None:
        try:
            await self.dispatch.ack(item)
        except DispatchUnavailable:
            # Redelivery is harmless: the record is no longer batched
            logger.warning("Dispatch ack failed", job_id=item.job_id)

    async def _release(self, item: DispatchItem) -> None:
        delay_ms = self.settings.store_retry_base_ms
        try:
            await self.dispatch.release(item, delay_ms=delay_ms)
        except DispatchUnavailable:
            logger.warning("Dispatch release failed", job_id=item.job_id)

    async def heartbeat(self) -> int:
        """Extend the lease of every active job. Returns how many were extended."""
        extended = 0
        now = utcnow()
        async with self.database.session() as session:
            for job_id in list(self.active_jobs):
                if await self.store.extend_lease(
                    session, job_id, self.worker_id, self.settings.job_lease_ms, now
                ):
                    extended += 1
                else:
                    logger.warning(
                        "Lease lost during heartbeat",
                        job_id=job_id,
                        worker_id=self.worker_id,
                    )
            await session.commit()
        return extended

    async def reclaim(self) -> list[Job]:
        """Requeue jobs with expired leases and batched jobs past the grace period."""
        async with self.database.session() as session:
            reclaimed = await self.store.reclaim_stale_leases(
                session, utcnow(), self.settings.job_batched_grace_ms
            )
            await session.commit()
        if reclaimed:
            logger.info("Reclaim sweep finished", reclaimed=len(reclaimed))
        return reclaimed

    async def _heartbeat_loop(self) -> None:
        await self._periodic(
            self.heartbeat, self.settings.job_heartbeat_interval_ms, "heartbeat"
        )

    async def _reclaim_loop(self) -> None:
        await self._periodic(
            self.reclaim, self.settings.job_reclaim_interval_ms, "reclaim"
        )

    async def _periodic(self, operation, interval_ms: int, name: str) -> None:
        consecutive_errors = 0
        while not self._stopping.is_set():
            delay = interval_ms / 1000
            try:
                await operation()
                consecutive_errors = 0
            except StoreUnavailable:
                consecutive_errors += 1
                delay = min(delay, error_backoff_s(self.settings, consecutive_errors))
                logger.warning(
                    "Periodic task failed",
                    task=name,
                    worker_id=self.worker_id,
                    retry_in_ms=int(delay * 1000),
                )
            except Exception:
                consecutive_errors += 1
                delay = min(delay, error_backoff_s(self.settings, consecutive_errors))
                logger.exception(
                    "Periodic task crashed",
                    task=name,
                    worker_id=self.worker_id,
                    retry_in_ms=int(delay * 1000),
                )
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except TimeoutError:
                pass
