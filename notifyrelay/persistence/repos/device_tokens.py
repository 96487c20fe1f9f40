from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from notifyrelay.domain.models import DeviceToken, utc_now


async def list_active_tokens(session: AsyncSession, user_id: str) -> list[DeviceToken]:
    result = await session.execute(
        select(DeviceToken)
        .where(DeviceToken.user_id == user_id, DeviceToken.is_active.is_(True))
        .order_by(DeviceToken.created_at, DeviceToken.id)
    )
    return list(result.scalars().all())


async def list_active_tokens_updated_since(session: AsyncSession, since: datetime) -> list[DeviceToken]:
    # Candidates for pattern sweeps; reason matching happens in Python so it is backend-agnostic.
    result = await session.execute(
        select(DeviceToken)
        .where(
            DeviceToken.is_active.is_(True),
            DeviceToken.deactivation_reason.is_not(None),
            DeviceToken.updated_at >= since,
        )
        .order_by(DeviceToken.user_id, DeviceToken.id)
    )
    return list(result.scalars().all())


async def deactivate_token(session: AsyncSession, *, token_id: str, reason: str) -> None:
    now = utc_now()
    await session.execute(
        update(DeviceToken)
        .where(DeviceToken.id == token_id)
        .values(is_active=False, deactivated_at=now, deactivation_reason=reason, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def count_tokens(session: AsyncSession, *conditions: Any) -> int:
    stmt = select(func.count()).select_from(DeviceToken)
    if conditions:
        stmt = stmt.where(*conditions)
    return int(await session.scalar(stmt) or 0)
