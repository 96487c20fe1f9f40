from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import event

from notifyrelay.core.config import DELIVERY_PROVIDER_CIRCUIT
from notifyrelay.core.errors import DeadLetterWriteError, ProviderError
from notifyrelay.domain.models import STATUS_DLQ, STATUS_FAILED, STATUS_PENDING, STATUS_SENT, utc_now
from notifyrelay.persistence.repos.notifications import find_retry_candidates, get_notification
from notifyrelay.providers.delivery.base import FailureDescriptor, extract_error_code
from notifyrelay.providers.delivery.fake import FakeDeliveryProvider
from notifyrelay.services import retry_orchestrator as orchestrator_module
from notifyrelay.services.resilience import (
    STATE_CLOSED,
    STATE_OPEN,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from notifyrelay.services.retry_orchestrator import RUN_SKIPPED, RetryConfig, RetryOrchestrator


def _provider_error(status: int, message: str, **extra) -> ProviderError:
    descriptor = FailureDescriptor(message=message, status=status, name="NovuApiError", **extra)
    return ProviderError(message, descriptor=descriptor)


def _orchestrator(session_factory, provider, breakers=None, **config) -> RetryOrchestrator:
    return RetryOrchestrator(
        session_factory=session_factory,
        provider=provider,
        breakers=breakers or CircuitBreakerRegistry(),
        config=RetryConfig(**config),
        default_workflow_id="default-push-workflow",
    )


@pytest.mark.asyncio
async def test_successful_retry_marks_sent(session, session_factory, make_notification) -> None:
    row = await make_notification(data={"workflowId": "order-updates", "orderId": "o-1"})
    provider = FakeDeliveryProvider()

    report = await _orchestrator(session_factory, provider).process_failed_notifications()

    assert report.found == 1
    assert report.succeeded == 1
    stored = await get_notification(session, row.id)
    assert stored.status == STATUS_SENT
    assert stored.retry_count == 1
    assert stored.sent_at is not None
    assert stored.delivery_id == provider.sent[0]["delivery_id"]
    sent = provider.sent[0]
    assert sent["workflow_id"] == "order-updates"
    assert sent["recipients"] == ["user-1"]
    assert sent["payload"]["notificationId"] == row.id
    assert sent["payload"]["data"]["orderId"] == "o-1"


@pytest.mark.asyncio
async def test_last_retry_with_server_error_moves_to_dlq(session, session_factory, make_notification) -> None:
    row = await make_notification(retry_count=2)
    provider = FakeDeliveryProvider()
    provider.fail_next(_provider_error(503, "Service unavailable"))

    report = await _orchestrator(session_factory, provider).process_failed_notifications()

    assert report.moved_to_dlq == 1
    stored = await get_notification(session, row.id)
    assert stored.status == STATUS_DLQ
    assert stored.retry_count == 3
    assert stored.data["dlqReason"] == "Service unavailable"


@pytest.mark.asyncio
async def test_retryable_failure_stays_failed(session, session_factory, make_notification) -> None:
    row = await make_notification(retry_count=0)
    provider = FakeDeliveryProvider()
    provider.fail_next(_provider_error(502, "Bad gateway"))

    report = await _orchestrator(session_factory, provider).process_failed_notifications()

    assert report.failed == 1
    stored = await get_notification(session, row.id)
    assert stored.status == STATUS_FAILED
    assert stored.retry_count == 1
    assert stored.error_code == "HTTP_502"
    assert stored.error_message == "Temporary server error. Will retry automatically."


@pytest.mark.asyncio
async def test_non_retryable_failure_goes_straight_to_dlq(session, session_factory, make_notification) -> None:
    row = await make_notification(retry_count=0)
    provider = FakeDeliveryProvider()
    provider.fail_next(_provider_error(400, "Bad request", code="INVALID_PAYLOAD"))

    await _orchestrator(session_factory, provider).process_failed_notifications()

    stored = await get_notification(session, row.id)
    assert stored.status == STATUS_DLQ
    assert stored.retry_count == 1


@pytest.mark.asyncio
async def test_invalid_token_triggers_cleanup(session, session_factory, make_notification, make_token) -> None:
    row = await make_notification(retry_count=0, user_id="user-7")
    await make_token(user_id="user-7")
    provider = FakeDeliveryProvider()
    provider.fail_next(_provider_error(400, "Invalid device token", data={"error": "Token not found"}))

    report = await _orchestrator(session_factory, provider).process_failed_notifications()

    assert report.failed == 1
    assert provider.deleted_subscribers == ["user-7"]
    stored = await get_notification(session, row.id)
    assert stored.status == STATUS_FAILED
    assert stored.error_message == "Device token is invalid and has been removed."


@pytest.mark.asyncio
async def test_cleanup_failure_does_not_interrupt_retry(
    session, session_factory, make_notification, make_token
) -> None:
    row = await make_notification(retry_count=0)
    await make_token(user_id=row.user_id)
    provider = FakeDeliveryProvider()
    provider.delete_error = RuntimeError("subscriber api down")
    provider.fail_next(RuntimeError("Invalid token"))

    report = await _orchestrator(session_factory, provider).process_failed_notifications()

    assert report.errors == []
    stored = await get_notification(session, row.id)
    assert stored.status == STATUS_FAILED
    assert stored.error_code == "RuntimeError"


@pytest.mark.asyncio
async def test_open_circuit_skips_run_without_queries(session_factory, engine, make_notification) -> None:
    await make_notification()
    breakers = CircuitBreakerRegistry(
        default_config=CircuitBreakerConfig(failure_threshold=1, timeout_s=1.0, reset_timeout_s=600.0)
    )

    async def _fail() -> None:
        raise RuntimeError("down")

    with pytest.raises(RuntimeError):
        await breakers.execute(DELIVERY_PROVIDER_CIRCUIT, _fail)

    statements: list[str] = []

    def _record(conn, cursor, statement, parameters, context, executemany) -> None:
        statements.append(statement)

    event.listen(engine.sync_engine, "before_cursor_execute", _record)
    provider = FakeDeliveryProvider()
    try:
        report = await _orchestrator(session_factory, provider, breakers).process_failed_notifications()
    finally:
        event.remove(engine.sync_engine, "before_cursor_execute", _record)

    assert report.status == RUN_SKIPPED
    assert statements == []
    assert provider.sent == []


@pytest.mark.asyncio
async def test_backoff_window_and_priority_order(session_factory, make_notification) -> None:
    now = utc_now()
    waiting = await make_notification(retry_count=1, updated_at=now - timedelta(minutes=3))
    low = await make_notification(priority="low", created_at=now - timedelta(hours=5))
    urgent = await make_notification(priority="urgent", created_at=now - timedelta(hours=1))
    exhausted = await make_notification(retry_count=3)
    provider = FakeDeliveryProvider()

    report = await _orchestrator(session_factory, provider, batch_size=1).process_failed_notifications()

    # batch_size caps the scan; the urgent item wins over the older low-priority one.
    assert report.found == 1
    assert provider.sent[0]["payload"]["notificationId"] == urgent.id

    report = await _orchestrator(session_factory, provider).process_failed_notifications()
    sent_ids = {item["payload"]["notificationId"] for item in provider.sent}
    assert low.id in sent_ids
    assert waiting.id not in sent_ids
    assert exhausted.id not in sent_ids


@pytest.mark.asyncio
async def test_one_item_error_does_not_abort_batch(session, session_factory, make_notification, monkeypatch) -> None:
    doomed = await make_notification(retry_count=2, user_id="user-doomed")
    healthy = await make_notification(retry_count=0, user_id="user-healthy")
    provider = FakeDeliveryProvider()
    provider.fail_for("user-doomed", _provider_error(500, "Internal server error"))

    async def _broken_dlq(_session, notification, _failure, _extra=None):
        raise DeadLetterWriteError(notification.id, "disk full")

    monkeypatch.setattr(orchestrator_module, "add_to_dlq", _broken_dlq)
    report = await _orchestrator(session_factory, provider, batch_size=2).process_failed_notifications()

    assert report.found == 2
    assert len(report.errors) == 1
    assert doomed.id in report.errors[0]
    assert report.succeeded == 1
    assert (await get_notification(session, healthy.id)).status == STATUS_SENT


@pytest.mark.asyncio
async def test_claim_lost_is_skipped(session_factory, make_notification, monkeypatch) -> None:
    await make_notification()

    async def _lost_claim(*_args, **_kwargs) -> bool:
        return False

    monkeypatch.setattr(orchestrator_module, "claim_for_retry", _lost_claim)
    provider = FakeDeliveryProvider()
    report = await _orchestrator(session_factory, provider).process_failed_notifications()

    assert report.skipped == 1
    assert provider.sent == []


@pytest.mark.asyncio
async def test_manual_retry_from_dlq(session, session_factory, make_notification) -> None:
    row = await make_notification(status=STATUS_DLQ, retry_count=3, updated_at=utc_now())
    provider = FakeDeliveryProvider()

    result = await _orchestrator(session_factory, provider).manual_retry(row.id)

    assert result["success"] is True
    assert result["outcome"] == "sent"
    stored = await get_notification(session, row.id)
    assert stored.status == STATUS_SENT
    assert stored.retry_count == 1


@pytest.mark.asyncio
async def test_manual_retry_rejects_other_statuses(session_factory, make_notification) -> None:
    row = await make_notification(status=STATUS_PENDING)
    orchestrator = _orchestrator(session_factory, FakeDeliveryProvider())

    assert (await orchestrator.manual_retry("missing")) == {"success": False, "message": "Notification not found"}
    result = await orchestrator.manual_retry(row.id)
    assert result == {"success": False, "message": "Notification is not in failed or DLQ status"}


@pytest.mark.asyncio
async def test_retry_statistics(session_factory, make_notification) -> None:
    await make_notification(status=STATUS_FAILED, retry_count=0)
    await make_notification(status=STATUS_FAILED, retry_count=3)
    await make_notification(status=STATUS_DLQ, retry_count=3)
    await make_notification(status=STATUS_SENT, retry_count=1)
    await make_notification(status=STATUS_SENT, retry_count=2)

    stats = await _orchestrator(session_factory, FakeDeliveryProvider()).get_retry_statistics()

    assert stats == {
        "total_failed": 2,
        "pending_retry": 1,
        "dlq_count": 1,
        "retry_success_rate": 50.0,
    }


@pytest.mark.asyncio
async def test_rate_limit_cooldown_holds_row_out_of_scans(session, session_factory, make_notification) -> None:
    row = await make_notification()
    provider = FakeDeliveryProvider()
    provider.fail_next(_provider_error(429, "Too many requests", headers={"retry-after": "3600"}))

    report = await _orchestrator(session_factory, provider).process_failed_notifications()

    assert report.failed == 1
    stored = await get_notification(session, row.id)
    assert stored.status == STATUS_FAILED
    assert stored.retry_count == 1
    assert stored.next_retry_at is not None

    now = utc_now()
    soon = await find_retry_candidates(
        session, max_retries=3, backoff_minutes=(1, 5, 15), limit=10, now=now + timedelta(minutes=6)
    )
    assert row.id not in {item.id for item in soon}
    later = await find_retry_candidates(
        session, max_retries=3, backoff_minutes=(1, 5, 15), limit=10, now=now + timedelta(minutes=61)
    )
    assert row.id in {item.id for item in later}


@pytest.mark.asyncio
async def test_half_open_failed_trial_defers_remaining_items(session, session_factory, make_notification) -> None:
    first = await make_notification()
    rest = [await make_notification(), await make_notification()]
    breakers = CircuitBreakerRegistry()

    async def _ok() -> None:
        return None

    await breakers.execute_with_delivery_config(_ok)
    breakers.force_half_open(DELIVERY_PROVIDER_CIRCUIT)
    provider = FakeDeliveryProvider()
    provider.fail_next(_provider_error(503, "Service unavailable"))

    report = await _orchestrator(session_factory, provider, breakers).process_failed_notifications()

    assert report.found == 3
    assert report.failed == 1
    assert report.skipped == 2
    assert breakers.get_state(DELIVERY_PROVIDER_CIRCUIT) == STATE_OPEN
    assert (await get_notification(session, first.id)).retry_count == 1
    for row in rest:
        stored = await get_notification(session, row.id)
        assert stored.status == STATUS_FAILED
        assert stored.retry_count == 0


@pytest.mark.asyncio
async def test_half_open_successful_trial_releases_the_rest(session, session_factory, make_notification) -> None:
    rows = [await make_notification() for _ in range(3)]
    breakers = CircuitBreakerRegistry()

    async def _ok() -> None:
        return None

    await breakers.execute_with_delivery_config(_ok)
    breakers.force_half_open(DELIVERY_PROVIDER_CIRCUIT)
    provider = FakeDeliveryProvider()

    report = await _orchestrator(session_factory, provider, breakers).process_failed_notifications()

    assert report.succeeded == 3
    assert report.skipped == 0
    assert breakers.get_state(DELIVERY_PROVIDER_CIRCUIT) == STATE_CLOSED
    for row in rows:
        assert (await get_notification(session, row.id)).status == STATUS_SENT


def test_extract_error_code_order() -> None:
    assert extract_error_code(FailureDescriptor(message="x", code="E1", status=500, name="N")) == "E1"
    assert extract_error_code(FailureDescriptor(message="x", status=503, name="N")) == "HTTP_503"
    assert extract_error_code(FailureDescriptor(message="x", name="TimeoutError")) == "TimeoutError"
    assert extract_error_code(FailureDescriptor(message="x")) == "UNKNOWN_ERROR"
