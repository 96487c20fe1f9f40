from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Notification lifecycle statuses; dlq is terminal until an operator replays it.
STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_DLQ = "dlq"

# Lower rank is processed first by the retry scan.
PRIORITY_RANK = {"urgent": 0, "high": 1, "normal": 2, "low": 3}

# Use JSONB on Postgres and plain JSON elsewhere (sqlite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    # Keep persisted timestamps in UTC so backoff windows compare consistently.
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class UserNotification(Base):
    __tablename__ = "user_notifications"
    __table_args__ = (
        Index("ix_user_notifications_status_retry_updated", "status", "retry_count", "updated_at"),
        Index("ix_user_notifications_user_status", "user_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Parent notification id when one notification fans out to many users.
    notification_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    type: Mapped[str] = mapped_column(String, default="system")
    channel: Mapped[str] = mapped_column(String, default="push")
    priority: Mapped[str] = mapped_column(String, default="normal")
    title: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(Text)
    # Provider payload plus DLQ diagnostics (dlqMovedAt, dlqReason, dlqRetryCount, ...).
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    status: Mapped[str] = mapped_column(String, default=STATUS_PENDING)
    # Only ever incremented by the retry scan; reset to 0 by operator replays.
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    delivery_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Provider-requested cooldown; the retry scan skips the row until it passes.
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class DeviceToken(Base):
    __tablename__ = "device_tokens"
    __table_args__ = (
        Index("ix_device_tokens_user_active", "user_id", "is_active"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    token: Mapped[str] = mapped_column(Text)
    channel: Mapped[str] = mapped_column(String, default="push")
    device_id: Mapped[str] = mapped_column(String)
    platform: Mapped[str | None] = mapped_column(String, nullable=True)
    provider: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Recorded when a delivery failure retires the token; operators sweep on it by pattern.
    deactivation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
