import logging
import sys
from typing import Any

import structlog
from structlog.typing import EventDict, Processor

from .settings import Settings, settings


def service_context(component: str, app_settings: Settings) -> Processor:
    """Stamp every event with the service, environment and process role."""

    def processor(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", app_settings.app_name)
        event_dict.setdefault("environment", app_settings.environment)
        event_dict.setdefault("component", component)
        return event_dict

    return processor


def setup_logging(component: str = "api", app_settings: Settings | None = None) -> None:
    """
    Configure structured logging with structlog.

    ``component`` tells the API process ("api") apart from the worker
    process ("worker") in shared log streams.
    """
    app_settings = app_settings or settings
    level = getattr(logging, app_settings.log_level.upper())

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Processor] = [
        # Request id, worker id and job context bound upstream
        structlog.contextvars.merge_contextvars,
        service_context(component, app_settings),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
    ]
    if app_settings.debug:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
            )
        )
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def add_request_context(request_id: str, **context: Any) -> None:
    """Add request-specific context to all log messages."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)


def bind_worker_context(worker_id: str) -> None:
    """Tag everything logged from this worker process with its id."""
    structlog.contextvars.bind_contextvars(worker_id=worker_id)
