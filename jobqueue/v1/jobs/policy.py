"""
Failure and escalation policy.

Decides, for a failed attempt, whether the job goes back to pending with a
backoff or is escalated to a dead-letter record, and performs that write as a
single transaction.
"""

import asyncio
import traceback
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import TypeVar

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings
from jobqueue.infra.database import Database, utcnow
from jobqueue.v1.core.exceptions import HandlerError, StoreUnavailable
from jobqueue.v1.deadletter.models import (
    MAX_FAILURE_REASON_LENGTH,
    MAX_STACK_LENGTH,
    DeadLetter,
    DeadLetterStatus,
    DLQReason,
    Severity,
)
from jobqueue.v1.jobs.models import BackoffType, Job, truncate
from jobqueue.v1.jobs.store import JobStore, job_store

logger = get_logger(__name__)

T = TypeVar("T")


class FailureOutcome(str, Enum):
    RETRIED = "retried"
    ESCALATED = "escalated"
    LEASE_LOST = "lease_lost"
    DEFERRED = "deferred"


def compute_backoff_ms(
    backoff_type: BackoffType | str, delay_ms: int, attempts: int, cap_ms: int
) -> int:
    """
    Delay before a failed job becomes claimable again.

    fixed: ``delay_ms``; exponential: ``delay_ms * 2^(attempts-1)``; both
    capped at ``cap_ms``.
    """
    if BackoffType(backoff_type) == BackoffType.FIXED:
        return min(delay_ms, cap_ms)
    exponent = max(attempts - 1, 0)
    # Stop doubling once past the cap
    if exponent >= 63 or delay_ms * (2**exponent) >= cap_ms:
        return cap_ms
    return delay_ms * (2**exponent)


def determine_severity(
    job_type: str,
    failure_reason: str,
    attempts: int,
    *,
    critical_job_types: list[str] | tuple[str, ...],
    critical_failures: list[str] | tuple[str, ...],
    error_class: str | None = None,
) -> Severity:
    """Classify a dead letter. Pure: same inputs, same severity."""
    if job_type in critical_job_types:
        return Severity.CRITICAL
    if failure_reason in critical_failures or (
        error_class is not None and error_class in critical_failures
    ):
        return Severity.HIGH
    if attempts >= 5:
        return Severity.HIGH
    if attempts >= 3:
        return Severity.MEDIUM
    return Severity.LOW


def classify_failure(exc: BaseException) -> DLQReason:
    """Dead-letter reason for an error that ends a job's life."""
    if isinstance(exc, HandlerError):
        if exc.dlq_reason in {reason.value for reason in DLQReason}:
            return DLQReason(exc.dlq_reason)
        if exc.permanent:
            return DLQReason.PERMANENT_FAILURE
    if isinstance(exc, TimeoutError):
        return DLQReason.TIMEOUT
    return DLQReason.EXHAUSTED_RETRIES


def is_permanent(exc: BaseException) -> bool:
    return isinstance(exc, HandlerError) and exc.permanent


def format_error(exc: BaseException) -> tuple[str, str]:
    message = str(exc) or exc.__class__.__name__
    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return message, stack


def payload_user_id(data: dict) -> str | None:
    user_id = data.get("user_id", data.get("userId"))
    return str(user_id) if user_id is not None else None


def build_dead_letter(
    job: Job,
    reason: DLQReason,
    settings: Settings,
    now: datetime,
    error_message: str | None = None,
    error_stack: str | None = None,
    error_class: str | None = None,
    worker_id: str | None = None,
) -> DeadLetter:
    """Snapshot a failed job as a new dead-letter record."""
    severity = determine_severity(
        job.type,
        reason.value,
        job.attempts,
        critical_job_types=settings.dlq_critical_job_types,
        critical_failures=settings.dlq_critical_failures,
        error_class=error_class,
    )
    return DeadLetter(
        original_job_id=job.job_id,
        job_type=job.type,
        job_data=job.data,
        priority=job.priority,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        failure_reason=truncate(
            error_message or job.error or reason.value, MAX_FAILURE_REASON_LENGTH
        ),
        error_stack=truncate(error_stack or job.error_stack, MAX_STACK_LENGTH),
        error_class=error_class,
        worker_id=worker_id or job.worker_id,
        processing_time=job.processing_time,
        last_processed_at=job.processed_at,
        original_created_at=job.created_at,
        moved_to_dlq_at=now,
        severity=severity.value,
        dlq_reason=reason.value,
        status=DeadLetterStatus.PENDING.value,
        reprocess_attempts=0,
        max_reprocess_attempts=settings.dlq_max_reprocess_attempts,
        user_id=payload_user_id(job.data),
        created_at=now,
        updated_at=now,
    )


async def retry_store(
    operation: Callable[[], Awaitable[T]],
    settings: Settings,
    name: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation``, retrying StoreUnavailable with capped exponential backoff."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except StoreUnavailable:
            if attempt >= settings.store_retry_attempts:
                raise
            delay_ms = min(
                settings.store_retry_base_ms * (2 ** (attempt - 1)),
                settings.store_retry_max_ms,
            )
            logger.warning(
                "Store unavailable, retrying",
                operation=name,
                attempt=attempt,
                retry_in_ms=delay_ms,
            )
            await sleep(delay_ms / 1000)


class FailurePolicy:
    """Applies the retry or escalate decision for failed attempts."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        store: JobStore = job_store,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.database = database
        self.store = store
        self._sleep = sleep

    async def handle_failure(
        self,
        job: Job,
        worker_id: str,
        exc: BaseException,
        processing_time: int | None = None,
    ) -> FailureOutcome:
        """
        Record a failed attempt of ``job`` and requeue or escalate it.

        If the store stays unavailable the record is left processing; lease
        expiry returns it to pending later.
        """
        message, stack = format_error(exc)
        error_class = exc.__class__.__name__
        job_logger = logger.bind(
            job_id=job.job_id, job_type=job.type, worker_id=worker_id
        )

        async def apply() -> FailureOutcome:
            now = utcnow()
            async with self.database.session() as session:
                failed = await self.store.mark_failed(
                    session, job.job_id, worker_id, message, stack, processing_time, now
                )
                if failed is None:
                    await session.rollback()
                    return FailureOutcome.LEASE_LOST

                if failed.attempts < failed.max_attempts and not is_permanent(exc):
                    delay_ms = compute_backoff_ms(
                        failed.backoff_type,
                        failed.backoff_delay,
                        failed.attempts,
                        self.settings.job_max_backoff_ms,
                    )
                    scheduled_for = now + timedelta(milliseconds=delay_ms)
                    await self.store.requeue(session, failed.job_id, scheduled_for, now)
                    await session.commit()
                    job_logger.info(
                        "Job retry scheduled",
                        attempts=failed.attempts,
                        max_attempts=failed.max_attempts,
                        retry_in_ms=delay_ms,
                        error=failed.error,
                    )
                    return FailureOutcome.RETRIED

                reason = classify_failure(exc)
                dead_letter = build_dead_letter(
                    failed,
                    reason,
                    self.settings,
                    now,
                    error_message=message,
                    error_stack=stack,
                    error_class=error_class,
                    worker_id=worker_id,
                )
                escalated = await self.store.escalate_to_dead_letter(
                    session, failed, dead_letter
                )
                if escalated is None:
                    await session.rollback()
                    return FailureOutcome.LEASE_LOST
                await session.commit()
                job_logger.error(
                    "Job escalated to dead letter",
                    dead_letter_id=str(escalated.id),
                    dlq_reason=escalated.dlq_reason,
                    severity=escalated.severity,
                    attempts=escalated.attempts,
                )
                return FailureOutcome.ESCALATED

        try:
            outcome = await retry_store(
                apply, self.settings, "handle_failure", sleep=self._sleep
            )
        except StoreUnavailable:
            job_logger.error(
                "Failure not recorded, job left to lease expiry", error=message
            )
            return FailureOutcome.DEFERRED

        if outcome == FailureOutcome.LEASE_LOST:
            job_logger.warning("Lease lost, failure discarded", error=message)
        return outcome
