from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from notifyrelay.core.errors import DeadLetterWriteError
from notifyrelay.domain.models import STATUS_DLQ, STATUS_PENDING, UserNotification, utc_now
from notifyrelay.persistence.repos.notifications import count_by, count_notifications, delete_notifications
from notifyrelay.providers.delivery.base import FailureDescriptor, describe_failure, extract_error_code
from notifyrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DLQ_ERROR_CODE = "DLQ_MOVED"


@dataclass(frozen=True)
class DLQEntry:
    id: str
    notification_id: str | None
    user_id: str
    original_error: str
    error_code: str
    original_error_code: str | None
    retry_count: int
    moved_at: datetime
    data: dict[str, Any]


@dataclass(frozen=True)
class DLQOperationResult:
    success: bool
    message: str
    id: str | None = None


@dataclass
class DLQBulkResult:
    success: int = 0
    failed: int = 0
    results: list[DLQOperationResult] = field(default_factory=list)

    def add(self, result: DLQOperationResult) -> None:
        self.results.append(result)
        if result.success:
            self.success += 1
        else:
            self.failed += 1


def _to_entry(row: UserNotification) -> DLQEntry:
    return DLQEntry(
        id=row.id,
        notification_id=row.notification_id,
        user_id=row.user_id,
        original_error=row.error_message or "Unknown error",
        error_code=row.error_code or "UNKNOWN",
        original_error_code=(row.data or {}).get("dlqErrorCode"),
        retry_count=row.retry_count,
        moved_at=row.updated_at,
        data=dict(row.data or {}),
    )


async def add_to_dlq(
    session: AsyncSession,
    notification: UserNotification,
    failure: FailureDescriptor | BaseException,
    extra: dict[str, Any] | None = None,
) -> None:
    """Quarantine a notification, keeping its payload and recording why.

    Persistence failures raise ``DeadLetterWriteError``: a lost DLQ write
    would silently drop the notification, so callers must see it.
    """
    descriptor = failure if isinstance(failure, FailureDescriptor) else describe_failure(failure)
    logger.warning(
        "dlq_add notification_id=%s user_id=%s retry_count=%s error=%s",
        notification.id,
        notification.user_id,
        notification.retry_count,
        descriptor.message,
    )
    now = utc_now()
    data = dict(notification.data or {})
    data.update(
        {
            "dlqMovedAt": now.isoformat(),
            "dlqReason": descriptor.message,
            "dlqErrorCode": extract_error_code(descriptor),
            "dlqStack": descriptor.stack,
        }
    )
    if extra:
        data.update(extra)
    try:
        await session.execute(
            update(UserNotification)
            .where(UserNotification.id == notification.id)
            .values(
                status=STATUS_DLQ,
                error_message=f"DLQ: {descriptor.message}",
                error_code=DLQ_ERROR_CODE,
                data=data,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("dlq_add_failed notification_id=%s", notification.id, exc_info=exc)
        raise DeadLetterWriteError(notification.id, str(exc)) from exc
    increment_counter("dlq_moved_total")


def _original_error_code() -> Any:
    # Code the provider failure carried before the row was quarantined.
    return UserNotification.data["dlqErrorCode"].as_string()


def _filters(
    *,
    user_id: str | None = None,
    error_code: str | None = None,
    original_error_code: str | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
) -> list[Any]:
    conditions: list[Any] = [UserNotification.status == STATUS_DLQ]
    if user_id:
        conditions.append(UserNotification.user_id == user_id)
    if error_code:
        conditions.append(UserNotification.error_code == error_code)
    if original_error_code:
        conditions.append(_original_error_code() == original_error_code)
    if from_date is not None:
        conditions.append(UserNotification.updated_at >= from_date)
    if to_date is not None:
        conditions.append(UserNotification.updated_at <= to_date)
    return conditions


async def list_dlq_entries(
    session: AsyncSession,
    *,
    page: int = 1,
    limit: int = 50,
    user_id: str | None = None,
    error_code: str | None = None,
    original_error_code: str | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
) -> dict[str, Any]:
    # Page through quarantined notifications, newest first.
    page = max(1, int(page))
    limit = max(1, int(limit))
    conditions = _filters(
        user_id=user_id,
        error_code=error_code,
        original_error_code=original_error_code,
        from_date=from_date,
        to_date=to_date,
    )
    rows = (
        await session.execute(
            select(UserNotification)
            .where(*conditions)
            .order_by(UserNotification.updated_at.desc(), UserNotification.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
    ).scalars().all()
    total = await count_notifications(session, *conditions)
    return {
        "entries": [_to_entry(row) for row in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit),
    }


async def dlq_statistics(session: AsyncSession) -> dict[str, Any]:
    in_dlq = UserNotification.status == STATUS_DLQ
    total = await count_notifications(session, in_dlq)
    by_error_code = await count_by(session, UserNotification.error_code, in_dlq)
    by_user = await count_by(session, UserNotification.user_id, in_dlq, limit=10)
    by_original_code = await count_by(session, _original_error_code(), in_dlq)
    oldest, newest = (
        await session.execute(
            select(func.min(UserNotification.updated_at), func.max(UserNotification.updated_at)).where(in_dlq)
        )
    ).one()
    return {
        "total_entries": total,
        "entries_by_error_code": {code or "UNKNOWN": count for code, count in by_error_code},
        "entries_by_user": {user: count for user, count in by_user},
        "entries_by_original_error_code": {code or "UNKNOWN": count for code, count in by_original_code},
        "oldest_entry": oldest,
        "newest_entry": newest,
    }


async def retry_dlq_entry(session: AsyncSession, notification_id: str) -> DLQOperationResult:
    # Operator replay: back to pending with a fresh retry budget and replay history in data.
    try:
        row = (
            await session.execute(
                select(UserNotification)
                .where(UserNotification.id == notification_id, UserNotification.status == STATUS_DLQ)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if row is None:
            return DLQOperationResult(success=False, message="DLQ entry not found", id=notification_id)
        now = utc_now()
        data = dict(row.data or {})
        data["dlqRetriedAt"] = now.isoformat()
        data["dlqRetryCount"] = int(data.get("dlqRetryCount") or 0) + 1
        await session.execute(
            update(UserNotification)
            .where(UserNotification.id == notification_id)
            .values(
                status=STATUS_PENDING,
                retry_count=0,
                error_message=None,
                error_code=None,
                next_retry_at=None,
                data=data,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("dlq_retry_failed notification_id=%s", notification_id, exc_info=exc)
        return DLQOperationResult(success=False, message=f"Retry failed: {exc}", id=notification_id)
    increment_counter("dlq_replayed_total")
    logger.info("dlq_retry notification_id=%s replay=%s", notification_id, data["dlqRetryCount"])
    return DLQOperationResult(success=True, message="DLQ entry reset for retry", id=notification_id)


async def delete_dlq_entry(session: AsyncSession, notification_id: str) -> DLQOperationResult:
    # Scoped to dlq rows so live notifications can never be removed here.
    try:
        deleted = await delete_notifications(
            session,
            UserNotification.id == notification_id,
            UserNotification.status == STATUS_DLQ,
        )
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("dlq_delete_failed notification_id=%s", notification_id, exc_info=exc)
        return DLQOperationResult(success=False, message=f"Delete failed: {exc}", id=notification_id)
    if deleted == 0:
        return DLQOperationResult(success=False, message="DLQ entry not found", id=notification_id)
    logger.info("dlq_delete notification_id=%s", notification_id)
    return DLQOperationResult(success=True, message="DLQ entry deleted", id=notification_id)


async def bulk_retry_dlq_entries(session: AsyncSession, notification_ids: Iterable[str]) -> DLQBulkResult:
    report = DLQBulkResult()
    for notification_id in notification_ids:
        report.add(await retry_dlq_entry(session, notification_id))
    logger.info("dlq_bulk_retry success=%s failed=%s", report.success, report.failed)
    return report


async def bulk_delete_dlq_entries(session: AsyncSession, notification_ids: Iterable[str]) -> DLQBulkResult:
    report = DLQBulkResult()
    for notification_id in notification_ids:
        report.add(await delete_dlq_entry(session, notification_id))
    logger.info("dlq_bulk_delete success=%s failed=%s", report.success, report.failed)
    return report


async def cleanup_old_entries(
    session: AsyncSession,
    *,
    max_age_days: int = 30,
    now: datetime | None = None,
) -> int:
    # Enforce DLQ retention by deleting entries untouched for longer than the cutoff.
    cutoff = (now or utc_now()) - timedelta(days=max_age_days)
    deleted = await delete_notifications(
        session,
        UserNotification.status == STATUS_DLQ,
        UserNotification.updated_at < cutoff,
    )
    logger.info("dlq_cleanup deleted=%s max_age_days=%s", deleted, max_age_days)
    return deleted
