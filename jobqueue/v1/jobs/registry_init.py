"""
Job registry initialization.

Registers the built-in job handlers with a job registry.
"""

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings
from jobqueue.infra.database import Database
from jobqueue.v1.core.registries import JobRegistry, job_registry
from jobqueue.v1.jobs.handlers import (
    EmailSendHandler,
    MaintenanceCleanupHandler,
    UserNotificationHandler,
)

logger = get_logger(__name__)


def register_job_handlers(
    settings: Settings, database: Database, registry: JobRegistry = job_registry
) -> JobRegistry:
    """Register all job handlers, freezing the registry outside development."""

    logger.info("Registering job handlers")

    # Business job handlers
    registry.register("email:send", EmailSendHandler(settings))
    registry.register("user:notification", UserNotificationHandler(settings))

    # Maintenance job handlers
    registry.register(
        "maintenance:cleanup", MaintenanceCleanupHandler(settings, database)
    )

    if settings.environment != "development":
        registry.freeze()

    logger.info("Job handlers registered", registered_handlers=registry.list())
    return registry
