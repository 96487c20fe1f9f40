from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from notifyrelay.core.errors import DeadLetterWriteError
from notifyrelay.domain.models import STATUS_DLQ, STATUS_PENDING, utc_now
from notifyrelay.persistence.repos.notifications import get_notification
from notifyrelay.providers.delivery.base import FailureDescriptor
from notifyrelay.services.dead_letter import (
    DLQ_ERROR_CODE,
    add_to_dlq,
    bulk_delete_dlq_entries,
    bulk_retry_dlq_entries,
    cleanup_old_entries,
    delete_dlq_entry,
    dlq_statistics,
    list_dlq_entries,
    retry_dlq_entry,
)


@pytest.mark.asyncio
async def test_add_to_dlq_merges_diagnostics(session, make_notification) -> None:
    row = await make_notification(data={"workflowId": "wf-1", "orderId": "o-9"})
    failure = FailureDescriptor(message="Bad request", status=400, stack="Traceback ...")

    await add_to_dlq(session, row, failure, {"source": "unit"})

    stored = await get_notification(session, row.id)
    assert stored.status == STATUS_DLQ
    assert stored.error_message == "DLQ: Bad request"
    assert stored.error_code == DLQ_ERROR_CODE
    assert stored.data["workflowId"] == "wf-1"
    assert stored.data["orderId"] == "o-9"
    assert stored.data["dlqReason"] == "Bad request"
    assert stored.data["dlqStack"] == "Traceback ..."
    assert stored.data["source"] == "unit"
    assert "dlqMovedAt" in stored.data
    assert stored.data["dlqErrorCode"] == "HTTP_400"


@pytest.mark.asyncio
async def test_add_to_dlq_write_failure_propagates(session, make_notification, monkeypatch) -> None:
    row = await make_notification()

    async def _broken_execute(*_args, **_kwargs):
        raise OperationalError("UPDATE user_notifications", {}, Exception("disk I/O error"))

    monkeypatch.setattr(session, "execute", _broken_execute)
    with pytest.raises(DeadLetterWriteError):
        await add_to_dlq(session, row, RuntimeError("boom"))


@pytest.mark.asyncio
async def test_dlq_round_trip_preserves_payload(session, make_notification) -> None:
    row = await make_notification(data={"orderId": "o-1"}, retry_count=3)
    await add_to_dlq(session, row, FailureDescriptor(message="Service unavailable", status=503))

    first = await retry_dlq_entry(session, row.id)
    assert first.success is True
    stored = await get_notification(session, row.id)
    assert stored.status == STATUS_PENDING
    assert stored.retry_count == 0
    assert stored.error_message is None
    assert stored.error_code is None
    assert stored.data["orderId"] == "o-1"
    assert stored.data["dlqRetryCount"] == 1
    assert "dlqRetriedAt" in stored.data

    await add_to_dlq(session, stored, FailureDescriptor(message="Service unavailable", status=503))
    await retry_dlq_entry(session, row.id)
    replayed = await get_notification(session, row.id)
    await session.refresh(replayed)
    assert replayed.data["dlqRetryCount"] == 2


@pytest.mark.asyncio
async def test_retry_and_delete_report_missing_entries(session, make_notification) -> None:
    live = await make_notification()
    missing = await retry_dlq_entry(session, "does-not-exist")
    assert missing.success is False
    assert missing.message == "DLQ entry not found"

    # Delete is scoped to DLQ rows; a live failed notification is untouched.
    result = await delete_dlq_entry(session, live.id)
    assert result.success is False
    assert await get_notification(session, live.id) is not None


@pytest.mark.asyncio
async def test_list_filters_and_paginates(session, make_notification) -> None:
    now = utc_now()
    for idx in range(3):
        row = await make_notification(user_id="user-a")
        await add_to_dlq(session, row, RuntimeError(f"failure {idx}"))
    other = await make_notification(user_id="user-b")
    await add_to_dlq(session, other, RuntimeError("other"))

    page = await list_dlq_entries(session, page=1, limit=2, user_id="user-a")
    assert page["total"] == 3
    assert page["total_pages"] == 2
    assert len(page["entries"]) == 2
    assert all(entry.user_id == "user-a" for entry in page["entries"])

    second = await list_dlq_entries(session, page=2, limit=2, user_id="user-a")
    assert len(second["entries"]) == 1

    by_code = await list_dlq_entries(session, error_code=DLQ_ERROR_CODE, from_date=now - timedelta(minutes=5))
    assert by_code["total"] == 4


@pytest.mark.asyncio
async def test_statistics(session, make_notification) -> None:
    for user in ("user-a", "user-a", "user-b"):
        row = await make_notification(user_id=user)
        await add_to_dlq(session, row, RuntimeError("x"))
    await make_notification(user_id="user-c")

    stats = await dlq_statistics(session)
    assert stats["total_entries"] == 3
    assert stats["entries_by_error_code"] == {DLQ_ERROR_CODE: 3}
    assert stats["entries_by_user"] == {"user-a": 2, "user-b": 1}
    assert stats["oldest_entry"] is not None
    assert stats["newest_entry"] >= stats["oldest_entry"]


@pytest.mark.asyncio
async def test_original_error_code_survives_the_move(session, make_notification) -> None:
    failures = [
        FailureDescriptor(message="Service unavailable", status=503),
        FailureDescriptor(message="Service unavailable", status=503),
        FailureDescriptor(message="Bad payload", status=400, code="INVALID_PAYLOAD"),
    ]
    for failure in failures:
        row = await make_notification()
        await add_to_dlq(session, row, failure)

    stats = await dlq_statistics(session)
    assert stats["entries_by_error_code"] == {DLQ_ERROR_CODE: 3}
    assert stats["entries_by_original_error_code"] == {"HTTP_503": 2, "INVALID_PAYLOAD": 1}

    page = await list_dlq_entries(session, original_error_code="INVALID_PAYLOAD")
    assert page["total"] == 1
    entry = page["entries"][0]
    assert entry.error_code == DLQ_ERROR_CODE
    assert entry.original_error_code == "INVALID_PAYLOAD"


@pytest.mark.asyncio
async def test_bulk_operations_continue_past_failures(session, make_notification) -> None:
    first = await make_notification()
    second = await make_notification()
    await add_to_dlq(session, first, RuntimeError("x"))
    await add_to_dlq(session, second, RuntimeError("y"))

    retried = await bulk_retry_dlq_entries(session, [first.id, "missing"])
    assert retried.success == 1
    assert retried.failed == 1
    assert [item.id for item in retried.results] == [first.id, "missing"]

    deleted = await bulk_delete_dlq_entries(session, ["missing", second.id])
    assert deleted.success == 1
    assert deleted.failed == 1
    assert await get_notification(session, second.id) is None


@pytest.mark.asyncio
async def test_cleanup_removes_only_expired_entries(session, make_notification) -> None:
    old = await make_notification()
    fresh = await make_notification()
    await add_to_dlq(session, old, RuntimeError("old"))
    await add_to_dlq(session, fresh, RuntimeError("fresh"))

    deleted = await cleanup_old_entries(session, max_age_days=30, now=utc_now() + timedelta(days=31))
    assert deleted == 2

    again = await make_notification()
    await add_to_dlq(session, again, RuntimeError("again"))
    assert await cleanup_old_entries(session, max_age_days=30) == 0
    assert await get_notification(session, again.id) is not None
