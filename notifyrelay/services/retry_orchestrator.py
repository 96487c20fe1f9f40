from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Sequence
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyrelay.core.config import DELIVERY_PROVIDER_CIRCUIT, get_settings
from notifyrelay.domain.models import (
    STATUS_DLQ,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
    UserNotification,
    utc_now,
)
from notifyrelay.persistence.repos.notifications import (
    claim_for_retry,
    count_notifications,
    find_retry_candidates,
    get_notification,
    mark_failed,
    mark_sent,
    reset_for_retry,
)
from notifyrelay.providers.delivery.base import DeliveryProvider, describe_failure, extract_error_code
from notifyrelay.services.dead_letter import add_to_dlq
from notifyrelay.services.error_classifier import ERROR_TOKEN_INVALID, classify_error
from notifyrelay.services.resilience import STATE_CLOSED, STATE_HALF_OPEN, CircuitBreakerRegistry
from notifyrelay.services.telemetry import increment_counter, set_gauge
from notifyrelay.services.token_cleanup import cleanup_invalid_token


logger = logging.getLogger(__name__)

OUTCOME_SENT = "sent"
OUTCOME_FAILED = "failed"
OUTCOME_DLQ = "dlq"
OUTCOME_SKIPPED = "skipped"

RUN_COMPLETED = "completed"
RUN_SKIPPED = "skipped"
RUN_ERROR = "error"


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    backoff_intervals_minutes: tuple[int, ...] = (1, 5, 15)
    batch_size: int = 100


def retry_config_from_settings() -> RetryConfig:
    settings = get_settings()
    return RetryConfig(
        max_retries=settings.retry_max_retries,
        backoff_intervals_minutes=tuple(settings.retry_backoff_intervals_minutes),
        batch_size=settings.retry_batch_size,
    )


@dataclass
class RetryRunReport:
    status: str = RUN_COMPLETED
    found: int = 0
    succeeded: int = 0
    failed: int = 0
    moved_to_dlq: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def record(self, outcome: str) -> None:
        if outcome == OUTCOME_SENT:
            self.succeeded += 1
        elif outcome == OUTCOME_FAILED:
            self.failed += 1
        elif outcome == OUTCOME_DLQ:
            self.moved_to_dlq += 1
        else:
            self.skipped += 1


def _batches(items: Sequence[UserNotification], size: int) -> list[Sequence[UserNotification]]:
    size = max(1, size)
    return [items[idx : idx + size] for idx in range(0, len(items), size)]


class RetryOrchestrator:
    """Periodic redelivery of failed notifications with bounded attempts.

    Each scan honours the delivery-provider circuit, holds every
    notification to its backoff window, and quarantines work that is
    non-retryable or has used up its retry budget.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        provider: DeliveryProvider,
        breakers: CircuitBreakerRegistry,
        config: RetryConfig | None = None,
        default_workflow_id: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._breakers = breakers
        self._config = config or retry_config_from_settings()
        self._default_workflow_id = default_workflow_id or get_settings().default_workflow_id

    @property
    def config(self) -> RetryConfig:
        return self._config

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    async def aclose(self) -> None:
        close = getattr(self._provider, "aclose", None)
        if close is not None:
            await close()

    async def process_failed_notifications(self) -> RetryRunReport:
        # One scheduled scan; never raises so the scheduler stays alive.
        report = RetryRunReport()
        try:
            if self._breakers.is_open(DELIVERY_PROVIDER_CIRCUIT):
                logger.warning("retry_run_skipped reason=circuit_open circuit=%s", DELIVERY_PROVIDER_CIRCUIT)
                increment_counter("retry_runs_skipped_total")
                report.status = RUN_SKIPPED
                return report

            async with self._session_factory() as session:
                candidates = await find_retry_candidates(
                    session,
                    max_retries=self._config.max_retries,
                    backoff_minutes=self._config.backoff_intervals_minutes,
                    limit=self._config.batch_size,
                )
            report.found = len(candidates)
            set_gauge("retry_last_run_found", report.found)
            if not candidates:
                logger.info("retry_run_empty")
                return report

            logger.info("retry_run_start found=%s", report.found)
            if self._breakers.get_state(DELIVERY_PROVIDER_CIRCUIT) == STATE_HALF_OPEN:
                # Recovery trial: one item goes first and the rest wait for the circuit to close.
                await self._process_batch(candidates[:1], report)
                candidates = candidates[1:]
                if candidates and self._breakers.get_state(DELIVERY_PROVIDER_CIRCUIT) != STATE_CLOSED:
                    logger.warning("retry_run_trial_unresolved deferred=%s", len(candidates))
                    report.skipped += len(candidates)
                    candidates = []
            for batch in _batches(candidates, self._config.batch_size):
                await self._process_batch(batch, report)
            logger.info(
                "retry_run_done found=%s succeeded=%s failed=%s dlq=%s skipped=%s errors=%s",
                report.found,
                report.succeeded,
                report.failed,
                report.moved_to_dlq,
                report.skipped,
                len(report.errors),
            )
        except Exception as exc:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("retry_run_failed")
            report.status = RUN_ERROR
            report.errors.append(str(exc))
        increment_counter(f"retry_runs_total.{report.status}")
        return report

    async def _process_batch(self, batch: Sequence[UserNotification], report: RetryRunReport) -> None:
        # Items run concurrently; one item's failure never aborts its siblings.
        semaphore = asyncio.Semaphore(max(1, self._config.batch_size))

        async def _bounded(notification: UserNotification) -> str:
            async with semaphore:
                return await self._retry_one(notification, expected_status=STATUS_FAILED)

        outcomes = await asyncio.gather(*(_bounded(item) for item in batch), return_exceptions=True)
        for notification, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "retry_item_error notification_id=%s error=%s",
                    notification.id,
                    outcome,
                    exc_info=outcome,
                )
                report.errors.append(f"{notification.id}: {outcome}")
                continue
            report.record(outcome)

    async def _retry_one(self, notification: UserNotification, *, expected_status: str) -> str:
        correlation_id = f"retry_{uuid4().hex[:12]}"
        async with self._session_factory() as session:
            claimed = await claim_for_retry(
                session,
                notification_id=notification.id,
                expected_status=expected_status,
                expected_retry_count=notification.retry_count,
            )
            if not claimed:
                logger.info(
                    "retry_item_claim_lost notification_id=%s correlation_id=%s",
                    notification.id,
                    correlation_id,
                )
                return OUTCOME_SKIPPED

            logger.info(
                "retry_item_attempt notification_id=%s user_id=%s attempt=%s correlation_id=%s",
                notification.id,
                notification.user_id,
                notification.retry_count + 1,
                correlation_id,
            )
            increment_counter("retry_attempts_total")
            data = dict(notification.data or {})
            workflow_id = data.get("workflowId") or self._default_workflow_id
            payload = {
                "title": notification.title,
                "body": notification.body,
                "data": data,
                "notificationId": notification.id,
            }
            try:
                delivery_id = await self._breakers.execute_with_delivery_config(
                    lambda: self._provider.send(workflow_id, [notification.user_id], payload)
                )
            except Exception as exc:  # noqa: BLE001 - every send failure is classified below
                return await self._handle_failure(session, notification, exc, correlation_id)

            await mark_sent(session, notification_id=notification.id, delivery_id=delivery_id or None)
            increment_counter("retry_success_total")
            logger.info(
                "retry_item_sent notification_id=%s delivery_id=%s correlation_id=%s",
                notification.id,
                delivery_id,
                correlation_id,
            )
            return OUTCOME_SENT

    async def _handle_failure(
        self,
        session: AsyncSession,
        notification: UserNotification,
        exc: BaseException,
        correlation_id: str,
    ) -> str:
        failure = describe_failure(exc)
        classification = classify_error(failure)
        logger.warning(
            "retry_item_failed notification_id=%s type=%s should_retry=%s cleanup=%s dlq=%s "
            "correlation_id=%s error=%s",
            notification.id,
            classification.type,
            classification.should_retry,
            classification.should_cleanup_token,
            classification.should_move_to_dlq,
            correlation_id,
            failure.message,
        )

        if classification.should_cleanup_token:
            # Secondary outcome only; the cleaner reports its own errors.
            cleanup = await cleanup_invalid_token(
                session,
                self._provider,
                notification.user_id,
                failure,
                ERROR_TOKEN_INVALID,
            )
            if cleanup.errors:
                logger.warning(
                    "retry_item_cleanup_incomplete notification_id=%s errors=%s",
                    notification.id,
                    "; ".join(cleanup.errors),
                )

        next_retry_at = None
        if classification.retry_after_seconds:
            next_retry_at = utc_now() + timedelta(seconds=classification.retry_after_seconds)
        await mark_failed(
            session,
            notification_id=notification.id,
            error_message=classification.user_friendly_message,
            error_code=extract_error_code(failure),
            next_retry_at=next_retry_at,
        )
        increment_counter("retry_failure_total")

        if classification.should_move_to_dlq or notification.retry_count + 1 >= self._config.max_retries:
            # DLQ write failures propagate and are reported by the batch.
            await add_to_dlq(session, notification, failure, {"retryCorrelationId": correlation_id})
            return OUTCOME_DLQ
        return OUTCOME_FAILED

    async def manual_retry(self, notification_id: str) -> dict[str, Any]:
        # Operator replay that bypasses the backoff window and restarts the retry budget.
        try:
            async with self._session_factory() as session:
                notification = await get_notification(session, notification_id)
                if notification is None:
                    return {"success": False, "message": "Notification not found"}
                if notification.status not in (STATUS_FAILED, STATUS_DLQ):
                    return {"success": False, "message": "Notification is not in failed or DLQ status"}
                await reset_for_retry(session, notification_id=notification_id)
                await session.refresh(notification)
            outcome = await self._retry_one(notification, expected_status=STATUS_PENDING)
        except Exception as exc:  # noqa: BLE001 - report operator-facing failures instead of raising
            logger.exception("manual_retry_failed notification_id=%s", notification_id)
            return {"success": False, "message": f"Retry failed: {exc}"}
        logger.info("manual_retry notification_id=%s outcome=%s", notification_id, outcome)
        return {"success": True, "message": "Notification retry initiated", "outcome": outcome}

    async def get_retry_statistics(self) -> dict[str, Any]:
        async with self._session_factory() as session:
            total_failed = await count_notifications(session, UserNotification.status == STATUS_FAILED)
            pending_retry = await count_notifications(
                session,
                UserNotification.status == STATUS_FAILED,
                UserNotification.retry_count < self._config.max_retries,
            )
            dlq_count = await count_notifications(session, UserNotification.status == STATUS_DLQ)
            retried_sent = await count_notifications(
                session,
                UserNotification.status == STATUS_SENT,
                UserNotification.retry_count > 0,
            )
            retried_total = await count_notifications(session, UserNotification.retry_count > 0)
        rate = (retried_sent / retried_total) * 100.0 if retried_total else 0.0
        return {
            "total_failed": total_failed,
            "pending_retry": pending_retry,
            "dlq_count": dlq_count,
            "retry_success_rate": round(rate, 2),
        }
