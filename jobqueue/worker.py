"""
Worker process entry point.

Runs the batch loader and the worker pool side by side until SIGINT or
SIGTERM, then drains active jobs and closes connections.

    python -m jobqueue.worker
"""

import asyncio
import signal

from jobqueue.config.logging import bind_worker_context, get_logger, setup_logging
from jobqueue.config.settings import Settings, settings
from jobqueue.infra.database import Database
from jobqueue.infra.dispatch import create_dispatch_queue
from jobqueue.v1.jobs.loader import BatchLoader
from jobqueue.v1.jobs.registry_init import register_job_handlers
from jobqueue.v1.jobs.worker import WorkerPool

logger = get_logger(__name__)


async def run_worker(settings: Settings, stop_event: asyncio.Event | None = None) -> None:
    """Run loader and pool until ``stop_event`` is set."""
    stop_event = stop_event or asyncio.Event()

    database = Database(settings)
    dispatch = create_dispatch_queue(settings)
    registry = register_job_handlers(settings, database)

    loader = BatchLoader(settings, database, dispatch)
    pool = WorkerPool(settings, database, dispatch, registry=registry)

    bind_worker_context(pool.worker_id)
    loader_task = asyncio.create_task(loader.run(), name="batch-loader")
    await pool.start()
    logger.info("Worker process started", worker_id=pool.worker_id)

    try:
        await stop_event.wait()
    finally:
        loader.stop()
        try:
            await loader_task
        except Exception:
            logger.exception("Batch loader exited with an error")
        await pool.stop()
        await dispatch.close()
        await database.close()
        logger.info("Worker process stopped", worker_id=pool.worker_id)


async def main() -> None:
    setup_logging("worker", settings)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)

    await run_worker(settings, stop_event)


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
