"""
Built-in job handlers.

Handlers implement the JobHandler protocol and are registered in the job
registry by ``register_job_handlers``. Delivery is at-least-once, so every
handler must tolerate running twice for the same job.
"""

import re
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings
from jobqueue.infra.database import Database
from jobqueue.v1.core.exceptions import HandlerError
from jobqueue.v1.core.registries import JobContext
from jobqueue.v1.deadletter.models import DLQReason

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Variables each email template needs
EMAIL_TEMPLATE_VARIABLES: dict[str, list[str]] = {
    "welcome": ["userName", "activationLink"],
    "password_reset": ["userName", "resetLink", "expiresIn"],
    "order_confirmation": ["orderNumber", "customerName", "orderItems", "totalAmount"],
    "invoice": ["invoiceNumber", "customerName", "amount", "dueDate", "downloadLink"],
    "newsletter": ["unsubscribeLink"],
    "system_alert": ["alertType", "message", "timestamp"],
    "custom": [],
}
MAX_ATTACHMENTS = 10

NOTIFICATION_TYPES = {"info", "warning", "success", "error"}
NOTIFICATION_CHANNELS = {"push", "email", "sms"}
MAX_NOTIFICATION_TITLE = 100
MAX_NOTIFICATION_MESSAGE = 500
DANGEROUS_PATTERNS = ("<script", "javascript:", "data:text/html", "onclick=", "onerror=")

Deliver = Callable[[dict[str, Any]], Awaitable[str]]


def invalid_payload(message: str) -> HandlerError:
    """A malformed payload will never succeed, so skip the remaining retries."""
    return HandlerError(
        message, dlq_reason=DLQReason.VALIDATION_ERROR.value, permanent=True
    )


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


async def log_delivery(message: dict[str, Any]) -> str:
    """Default transport: record the delivery in the log and return a message id."""
    message_id = f"msg_{uuid.uuid4().hex[:16]}"
    logger.info(
        "Message delivered",
        message_id=message_id,
        channel=message.get("channel", "email"),
        recipients=len(_as_list(message.get("to"))),
    )
    return message_id


class EmailSendHandler:
    """
    Job handler for ``email:send``.

    Payload expected:
    {
        "to": "user@example.com" | ["a@example.com", ...],
        "cc": optional, "bcc": optional,
        "template": "welcome" | "password_reset" | ... | "custom",
        "subject": "required for custom",
        "variables": {...},
        "customHtml" / "customText": "required for custom",
        "attachments": [...]  # at most 10
    }
    """

    def __init__(self, settings: Settings, deliver: Deliver | None = None):
        self.settings = settings
        self.deliver = deliver or log_delivery

    def validate(self, payload: dict[str, Any]) -> None:
        recipients = _as_list(payload.get("to"))
        if not recipients:
            raise invalid_payload("Email recipients (to) are required")

        everyone = recipients + _as_list(payload.get("cc")) + _as_list(payload.get("bcc"))
        invalid = [email for email in everyone if not EMAIL_PATTERN.match(str(email))]
        if invalid:
            raise invalid_payload(f"Invalid email addresses: {', '.join(map(str, invalid))}")

        template = payload.get("template")
        if template not in EMAIL_TEMPLATE_VARIABLES:
            raise invalid_payload(
                f"Invalid email template: {template}. "
                f"Must be one of: {', '.join(EMAIL_TEMPLATE_VARIABLES)}"
            )

        if template == "custom":
            if not payload.get("subject"):
                raise invalid_payload("Subject is required for custom email templates")
            if not payload.get("customHtml") and not payload.get("customText"):
                raise invalid_payload(
                    "Custom HTML or text content is required for custom email templates"
                )

        variables = payload.get("variables") or {}
        missing = [name for name in EMAIL_TEMPLATE_VARIABLES[template] if name not in variables]
        if missing:
            raise invalid_payload(
                f"Missing template variables for {template}: {', '.join(missing)}"
            )

        if len(payload.get("attachments") or []) > MAX_ATTACHMENTS:
            raise invalid_payload(f"Maximum of {MAX_ATTACHMENTS} attachments allowed per email")

    async def handle(
        self, payload: dict[str, Any], context: JobContext
    ) -> dict[str, Any] | None:
        """Validate the message and hand it to the transport."""
        self.validate(payload)

        message_id = await self.deliver({**payload, "channel": "email"})
        context.logger.info(
            "Email sent", template=payload["template"], message_id=message_id
        )
        return {
            "message_id": message_id,
            "template": payload["template"],
            "recipients": len(_as_list(payload.get("to"))),
        }


class UserNotificationHandler:
    """
    Job handler for ``user:notification``.

    Payload expected:
    {
        "userId": "user_123",
        "title": "...",  # at most 100 chars
        "message": "...",  # at most 500 chars
        "type": "info" | "warning" | "success" | "error",
        "channels": ["push", "email", "sms"]  # optional, defaults to push
    }

    Channels are delivered independently. The job fails only when every
    channel fails, so a retry re-sends to all channels.
    """

    def __init__(self, settings: Settings, deliver: Deliver | None = None):
        self.settings = settings
        self.deliver = deliver or log_delivery

    def validate(self, payload: dict[str, Any]) -> list[str]:
        user_id = payload.get("userId", payload.get("user_id"))
        if not user_id or not isinstance(user_id, str):
            raise invalid_payload("Valid userId is required for notification")
        for name in ("title", "message"):
            if not payload.get(name) or not isinstance(payload[name], str):
                raise invalid_payload(f"Notification {name} is required")
        if payload.get("type") not in NOTIFICATION_TYPES:
            raise invalid_payload(
                "Invalid notification type. Must be: info, warning, success, or error"
            )

        channels = payload.get("channels") or ["push"]
        unknown = [channel for channel in channels if channel not in NOTIFICATION_CHANNELS]
        if unknown:
            raise invalid_payload(f"Invalid notification channels: {', '.join(unknown)}")

        text = f"{payload['title']} {payload['message']}".lower()
        for pattern in DANGEROUS_PATTERNS:
            if pattern in text:
                raise invalid_payload(f"Potentially malicious content detected: {pattern}")

        if len(payload["title"]) > MAX_NOTIFICATION_TITLE:
            raise invalid_payload(
                f"Notification title cannot exceed {MAX_NOTIFICATION_TITLE} characters"
            )
        if len(payload["message"]) > MAX_NOTIFICATION_MESSAGE:
            raise invalid_payload(
                f"Notification message cannot exceed {MAX_NOTIFICATION_MESSAGE} characters"
            )
        return channels

    async def handle(
        self, payload: dict[str, Any], context: JobContext
    ) -> dict[str, Any] | None:
        channels = self.validate(payload)

        delivered: dict[str, str] = {}
        failed: dict[str, str] = {}
        for channel in channels:
            try:
                delivered[channel] = await self.deliver(
                    {**payload, "channel": channel, "to": payload.get("userId")}
                )
            except Exception as e:
                failed[channel] = str(e)

        if not delivered:
            raise HandlerError(
                "All notification channels failed",
                dlq_reason=DLQReason.DEPENDENCY_FAILURE.value,
                details={"failed": failed},
            )

        if failed:
            context.logger.warning(
                "Partial notification delivery", delivered=list(delivered), failed=failed
            )
        return {
            "delivered": delivered,
            "failed": failed,
            "total_channels": len(channels),
        }


class MaintenanceCleanupHandler:
    """
    Job handler for ``maintenance:cleanup``.

    Payload expected:
    {
        "tasks": ["cleanup_jobs", "cleanup_dead_letters"],  # optional, defaults to all
        "dry_run": false  # optional
    }
    """

    def __init__(self, settings: Settings, database: Database):
        self.settings = settings
        self.database = database

    async def handle(
        self, payload: dict[str, Any], context: JobContext
    ) -> dict[str, Any] | None:
        """Run retention cleanup of jobs and dead letters."""
        from jobqueue.v1.deadletter.service import DeadLetterService
        from jobqueue.v1.jobs.service import JobService

        tasks = payload.get("tasks") or ["cleanup_jobs", "cleanup_dead_letters"]
        dry_run = bool(payload.get("dry_run", False))
        results: dict[str, Any] = {}

        context.logger.info("Starting maintenance tasks", tasks=tasks, dry_run=dry_run)

        if dry_run:
            for task in tasks:
                results[task] = {"status": "dry_run"}
        else:
            async with self.database.session() as session:
                if "cleanup_jobs" in tasks:
                    deleted = await JobService(self.settings).cleanup(session)
                    results["cleanup_jobs"] = {"status": "completed", "deleted_count": deleted}
                if "cleanup_dead_letters" in tasks:
                    deleted = await DeadLetterService(self.settings).cleanup(session)
                    results["cleanup_dead_letters"] = {
                        "status": "completed",
                        "deleted_count": deleted,
                    }
                await session.commit()

        context.logger.info("Maintenance tasks completed", results=results)
        return {
            "status": "completed",
            "tasks_processed": tasks,
            "dry_run": dry_run,
            "results": results,
        }
