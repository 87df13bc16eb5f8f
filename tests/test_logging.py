import structlog

from jobqueue.config.logging import bind_worker_context, service_context


def test_service_context_stamps_events(settings):
    processor = service_context("worker", settings)

    event = processor(None, "info", {"event": "Job completed"})

    assert event["service"] == settings.app_name
    assert event["environment"] == "test"
    assert event["component"] == "worker"


def test_service_context_keeps_explicit_values(settings):
    processor = service_context("api", settings)

    event = processor(None, "info", {"event": "x", "component": "loader"})

    assert event["component"] == "loader"


def test_bind_worker_context():
    structlog.contextvars.clear_contextvars()
    bind_worker_context("host-1-42")

    assert structlog.contextvars.get_contextvars() == {"worker_id": "host-1-42"}
    structlog.contextvars.clear_contextvars()
