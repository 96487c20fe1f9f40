from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from notifyrelay.domain.models import DeviceToken, utc_now
from notifyrelay.persistence.repos.device_tokens import (
    count_tokens,
    deactivate_token,
    list_active_tokens,
    list_active_tokens_updated_since,
)
from notifyrelay.persistence.repos.notifications import count_by
from notifyrelay.providers.delivery.base import FailureDescriptor, SubscriberRegistry, describe_failure
from notifyrelay.services.error_classifier import (
    ERROR_NON_RETRYABLE,
    ERROR_RATE_LIMITED,
    ERROR_TOKEN_INVALID,
)
from notifyrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass
class TokenCleanupResult:
    success: bool = False
    tokens_removed: int = 0
    subscribers_removed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class BulkTokenCleanupResult:
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    results: dict[str, TokenCleanupResult] = field(default_factory=dict)


def _failure_message(failure: FailureDescriptor | BaseException | str | None) -> str | None:
    if failure is None:
        return None
    if isinstance(failure, FailureDescriptor):
        return failure.message or None
    if isinstance(failure, BaseException):
        return describe_failure(failure).message or None
    return str(failure) or None


def deactivation_reason(failure: FailureDescriptor | BaseException | str | None, error_type: str) -> str:
    # Reason strings are what operators later sweep on by pattern.
    message = _failure_message(failure)
    if error_type == ERROR_TOKEN_INVALID:
        return f"Invalid token: {message or 'Token validation failed'}"
    if error_type == ERROR_RATE_LIMITED:
        return f"Rate limited: {message or 'Too many requests'}"
    if error_type == ERROR_NON_RETRYABLE:
        return f"Non-retryable error: {message or 'Permanent failure'}"
    return f"Unknown error: {message or 'Token cleanup triggered'}"


async def cleanup_invalid_token(
    session: AsyncSession,
    registry: SubscriberRegistry,
    user_id: str,
    failure: FailureDescriptor | BaseException | str | None,
    error_type: str = ERROR_TOKEN_INVALID,
) -> TokenCleanupResult:
    """Retire every active device token of a user after a token failure.

    When at least one token was deactivated the user is also removed from
    the provider's subscriber registry. Failures are collected in the
    result instead of raised.
    """
    result = TokenCleanupResult()
    reason = deactivation_reason(failure, error_type)
    try:
        logger.warning("token_cleanup_start user_id=%s error_type=%s", user_id, error_type)
        tokens = await list_active_tokens(session, user_id)
        if not tokens:
            logger.info("token_cleanup_no_active_tokens user_id=%s", user_id)
            result.success = True
            return result

        for token in tokens:
            try:
                await deactivate_token(session, token_id=token.id, reason=reason)
                result.tokens_removed += 1
                logger.info(
                    "token_deactivated token_id=%s user_id=%s platform=%s",
                    token.id,
                    user_id,
                    token.platform,
                )
            except SQLAlchemyError as exc:
                await session.rollback()
                message = f"Failed to cleanup token {token.id}: {exc}"
                result.errors.append(message)
                logger.error("token_deactivate_failed token_id=%s", token.id, exc_info=exc)

        if result.tokens_removed > 0:
            try:
                await registry.delete_subscriber(user_id)
                result.subscribers_removed = 1
            except Exception as exc:  # noqa: BLE001 - subscriber removal is best effort
                message = f"Failed to remove user {user_id} from subscribers: {exc}"
                result.errors.append(message)
                logger.error("subscriber_remove_failed user_id=%s", user_id, exc_info=exc)

        result.success = not result.errors
        increment_counter("tokens_deactivated_total", result.tokens_removed)
        logger.info(
            "token_cleanup_done user_id=%s tokens_removed=%s subscribers_removed=%s errors=%s",
            user_id,
            result.tokens_removed,
            result.subscribers_removed,
            len(result.errors),
        )
        return result
    except Exception as exc:  # noqa: BLE001 - cleanup must never interrupt the retry flow
        result.errors.append(f"Token cleanup failed for user {user_id}: {exc}")
        logger.error("token_cleanup_failed user_id=%s", user_id, exc_info=exc)
        return result


async def bulk_cleanup_invalid_tokens(
    session: AsyncSession,
    registry: SubscriberRegistry,
    user_ids: Iterable[str],
    failure: FailureDescriptor | BaseException | str | None,
    error_type: str = ERROR_TOKEN_INVALID,
) -> BulkTokenCleanupResult:
    report = BulkTokenCleanupResult()
    for user_id in user_ids:
        result = await cleanup_invalid_token(session, registry, user_id, failure, error_type)
        report.results[user_id] = result
        report.total_processed += 1
        if result.success:
            report.successful += 1
        else:
            report.failed += 1
    logger.info(
        "token_bulk_cleanup processed=%s successful=%s failed=%s",
        report.total_processed,
        report.successful,
        report.failed,
    )
    return report


async def cleanup_tokens_by_error_pattern(
    session: AsyncSession,
    registry: SubscriberRegistry,
    pattern: str,
    *,
    days_old: int = 7,
) -> dict[str, int]:
    # Operator sweep: retire tokens whose recorded reason matches the pattern.
    matcher = re.compile(pattern, re.IGNORECASE)
    since = utc_now() - timedelta(days=days_old)
    candidates = await list_active_tokens_updated_since(session, since)
    matched = [
        token for token in candidates if token.deactivation_reason and matcher.search(token.deactivation_reason)
    ]
    if not matched:
        logger.info("token_pattern_cleanup_no_match pattern=%s", pattern)
        return {"tokens_processed": 0, "tokens_removed": 0, "users_affected": 0}

    by_user: dict[str, list[DeviceToken]] = defaultdict(list)
    for token in matched:
        by_user[token.user_id].append(token)

    tokens_removed = 0
    for user_id in by_user:
        result = await cleanup_invalid_token(
            session,
            registry,
            user_id,
            f"Pattern cleanup: {pattern}",
            ERROR_TOKEN_INVALID,
        )
        tokens_removed += result.tokens_removed

    logger.info(
        "token_pattern_cleanup pattern=%s processed=%s removed=%s users=%s",
        pattern,
        len(matched),
        tokens_removed,
        len(by_user),
    )
    return {
        "tokens_processed": len(matched),
        "tokens_removed": tokens_removed,
        "users_affected": len(by_user),
    }


async def token_cleanup_statistics(session: AsyncSession) -> dict[str, Any]:
    total = await count_tokens(session)
    active = await count_tokens(session, DeviceToken.is_active.is_(True))
    inactive = await count_tokens(session, DeviceToken.is_active.is_(False))
    by_platform = await count_by(session, DeviceToken.platform)
    reasons = await count_by(
        session,
        DeviceToken.deactivation_reason,
        DeviceToken.is_active.is_(False),
        DeviceToken.deactivation_reason.is_not(None),
        limit=10,
    )
    recent = await count_tokens(
        session,
        DeviceToken.is_active.is_(False),
        DeviceToken.deactivated_at >= utc_now() - timedelta(days=1),
    )
    return {
        "total_tokens": total,
        "active_tokens": active,
        "inactive_tokens": inactive,
        "tokens_by_platform": {platform or "unknown": count for platform, count in by_platform},
        "deactivation_reasons": {reason: count for reason, count in reasons},
        "recent_deactivations": recent,
    }
