from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Sequence

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from notifyrelay.domain.models import (
    PRIORITY_RANK,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
    UserNotification,
    utc_now,
)


def priority_rank() -> ColumnElement[int]:
    # Map priority labels to a sortable rank; unknown labels sort with "normal".
    return case(PRIORITY_RANK, value=UserNotification.priority, else_=PRIORITY_RANK["normal"])


async def get_notification(session: AsyncSession, notification_id: str) -> UserNotification | None:
    # Rows are written through bulk UPDATEs, so always refresh any identity-mapped instance.
    result = await session.execute(
        select(UserNotification)
        .where(UserNotification.id == notification_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_retry_candidates(
    session: AsyncSession,
    *,
    max_retries: int,
    backoff_minutes: Sequence[int],
    limit: int,
    now: datetime | None = None,
) -> list[UserNotification]:
    # Hold each retry_count bucket to its own backoff window so later attempts wait longer.
    reference = now or utc_now()
    windows = []
    for retry_count in range(max(0, max_retries)):
        delay = backoff_delay_minutes(backoff_minutes, retry_count)
        windows.append(
            and_(
                UserNotification.retry_count == retry_count,
                UserNotification.updated_at <= reference - timedelta(minutes=delay),
            )
        )
    if not windows:
        return []
    stmt = (
        select(UserNotification)
        .where(
            UserNotification.status == STATUS_FAILED,
            UserNotification.retry_count < max_retries,
            or_(*windows),
            or_(UserNotification.next_retry_at.is_(None), UserNotification.next_retry_at <= reference),
        )
        .order_by(priority_rank(), UserNotification.created_at, UserNotification.id)
        .limit(max(1, limit))
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


def backoff_delay_minutes(backoff_minutes: Sequence[int], retry_count: int) -> int:
    # Clamp to the last configured interval once retries run past the schedule.
    if not backoff_minutes:
        return 0
    index = min(max(0, retry_count), len(backoff_minutes) - 1)
    return int(backoff_minutes[index])


async def claim_for_retry(
    session: AsyncSession,
    *,
    notification_id: str,
    expected_status: str,
    expected_retry_count: int,
) -> bool:
    # Conditional update so a row already picked up elsewhere is not processed twice.
    result = await session.execute(
        update(UserNotification)
        .where(
            UserNotification.id == notification_id,
            UserNotification.status == expected_status,
            UserNotification.retry_count == expected_retry_count,
        )
        .values(
            retry_count=UserNotification.retry_count + 1,
            status=STATUS_PENDING,
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return int(result.rowcount or 0) == 1


async def mark_sent(session: AsyncSession, *, notification_id: str, delivery_id: str | None) -> None:
    now = utc_now()
    await session.execute(
        update(UserNotification)
        .where(UserNotification.id == notification_id)
        .values(status=STATUS_SENT, sent_at=now, delivery_id=delivery_id, next_retry_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def mark_failed(
    session: AsyncSession,
    *,
    notification_id: str,
    error_message: str,
    error_code: str,
    next_retry_at: datetime | None = None,
) -> None:
    # Each failure replaces any earlier cooldown.
    await session.execute(
        update(UserNotification)
        .where(UserNotification.id == notification_id)
        .values(
            status=STATUS_FAILED,
            error_message=error_message,
            error_code=error_code,
            next_retry_at=next_retry_at,
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def reset_for_retry(
    session: AsyncSession,
    *,
    notification_id: str,
    data: dict[str, Any] | None = None,
) -> None:
    # Operator replays are the only path that resets retry_count.
    values: dict[str, Any] = {
        "status": STATUS_PENDING,
        "retry_count": 0,
        "error_message": None,
        "error_code": None,
        "next_retry_at": None,
        "updated_at": utc_now(),
    }
    if data is not None:
        values["data"] = data
    await session.execute(
        update(UserNotification)
        .where(UserNotification.id == notification_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def count_notifications(session: AsyncSession, *conditions: ColumnElement[bool]) -> int:
    stmt = select(func.count()).select_from(UserNotification)
    if conditions:
        stmt = stmt.where(*conditions)
    return int(await session.scalar(stmt) or 0)


async def count_by(
    session: AsyncSession,
    column: Any,
    *conditions: ColumnElement[bool],
    limit: int | None = None,
) -> list[tuple[Any, int]]:
    # Group-and-count helper backing DLQ, token and metrics breakdowns (largest first).
    count_col = func.count().label("count")
    stmt = select(column, count_col).group_by(column).order_by(count_col.desc(), column)
    if conditions:
        stmt = stmt.where(*conditions)
    if limit is not None:
        stmt = stmt.limit(limit)
    rows = (await session.execute(stmt)).all()
    return [(row[0], int(row[1])) for row in rows]


async def delete_notifications(session: AsyncSession, *conditions: ColumnElement[bool]) -> int:
    result = await session.execute(
        delete(UserNotification).where(*conditions).execution_options(synchronize_session=False)
    )
    await session.commit()
    return int(result.rowcount or 0)
