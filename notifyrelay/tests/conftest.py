from __future__ import annotations

from datetime import timedelta
from typing import Any
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from notifyrelay.core.config import get_settings
from notifyrelay.domain.models import STATUS_FAILED, Base, DeviceToken, UserNotification, utc_now
from notifyrelay.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def isolate_settings_and_telemetry(monkeypatch) -> None:
    # Keep cached settings and process-wide counters from leaking across tests.
    monkeypatch.setenv("DELIVERY_PROVIDER", "fake")
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
async def engine(tmp_path):
    # File-backed sqlite so concurrent per-item sessions get their own connections.
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'notifyrelay.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as db_session:
        yield db_session


@pytest.fixture
def make_notification(session_factory):
    # Seed a notification row; updated_at defaults to well outside every backoff window.
    async def _make(**overrides: Any) -> UserNotification:
        now = utc_now()
        values: dict[str, Any] = {
            "id": f"un-{uuid4().hex[:10]}",
            "notification_id": f"n-{uuid4().hex[:8]}",
            "user_id": "user-1",
            "priority": "normal",
            "title": "Order shipped",
            "body": "Your order is on the way",
            "data": {"orderId": "o-1"},
            "status": STATUS_FAILED,
            "retry_count": 0,
            "created_at": now - timedelta(hours=2),
            "updated_at": now - timedelta(hours=1),
        }
        values.update(overrides)
        row = UserNotification(**values)
        async with session_factory() as db_session:
            db_session.add(row)
            await db_session.commit()
        return row

    return _make


@pytest.fixture
def make_token(session_factory):
    async def _make(**overrides: Any) -> DeviceToken:
        values: dict[str, Any] = {
            "id": f"dt-{uuid4().hex[:10]}",
            "user_id": "user-1",
            "token": f"tok-{uuid4().hex}",
            "device_id": f"device-{uuid4().hex[:6]}",
            "platform": "ios",
            "provider": "apns",
            "is_active": True,
        }
        values.update(overrides)
        row = DeviceToken(**values)
        async with session_factory() as db_session:
            db_session.add(row)
            await db_session.commit()
        return row

    return _make
