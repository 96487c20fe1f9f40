from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from notifyrelay.providers.delivery.base import FailureDescriptor, describe_failure


logger = logging.getLogger(__name__)


ERROR_RETRYABLE = "retryable"
ERROR_NON_RETRYABLE = "non_retryable"
ERROR_TOKEN_INVALID = "token_invalid"
ERROR_RATE_LIMITED = "rate_limited"

# Cooldown applied to rate limits when the provider does not say how long to wait.
RATE_LIMIT_DEFAULT_S = 60
RETRY_AFTER_FALLBACK_S = 30

_RETRYABLE_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"timeout",
        r"network",
        r"connection",
        r"temporary",
        r"unavailable",
        r"service unavailable",
        r"internal server error",
        r"bad gateway",
        r"gateway timeout",
    )
]
_NON_RETRYABLE_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"invalid token",
        r"unauthorized",
        r"forbidden",
        r"not found",
        r"bad request",
        r"validation error",
        r"malformed",
        r"invalid payload",
    )
]
_TOKEN_INVALID_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"invalid token",
        r"token expired",
        r"token not found",
        r"invalid device token",
        r"device token not found",
    )
]
_RATE_LIMIT_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"rate limit",
        r"too many requests",
        r"quota exceeded",
        r"throttled",
    )
]

_MSG_TOKEN_INVALID = "Device token is invalid and has been removed."
_MSG_RATE_LIMITED = "Rate limit exceeded. Retrying after cooldown period."
_MSG_PROVIDER_SERVER = "Temporary server error. Will retry automatically."
_MSG_HTTP_SERVER = "Server error. Will retry automatically."
_MSG_REQUEST = "Request error. Please check your data and try again."
_MSG_TEMPORARY = "Temporary error. Will retry automatically."
_MSG_UNEXPECTED = "An unexpected error occurred. Please contact support."


@dataclass(frozen=True)
class ErrorClassification:
    type: str
    should_retry: bool
    user_friendly_message: str
    retry_after_seconds: int | None = None
    should_cleanup_token: bool = False
    should_move_to_dlq: bool = False


def _matches(patterns: list[re.Pattern[str]], text: str) -> bool:
    return any(pattern.search(text) for pattern in patterns)


def _is_token_invalid(message: str, code: str | None = None) -> bool:
    return _matches(_TOKEN_INVALID_PATTERNS, f"{message} {code or ''}")


def _is_rate_limited(message: str, code: str | None = None, status: int | None = None) -> bool:
    if status == 429:
        return True
    return _matches(_RATE_LIMIT_PATTERNS, f"{message} {code or ''}")


def _parse_seconds(value: Any) -> int | None:
    # Accept integer-like strings such as "120" or "120.5"; ignore HTTP-date forms.
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    match = re.match(r"\s*(-?\d+)", str(value))
    if match is None:
        return None
    return int(match.group(1))


def extract_retry_after(failure: FailureDescriptor, *, default: int | None = None) -> int:
    """Resolve the cooldown for a throttled request.

    Precedence is the ``retry-after`` header, then ``retryAfter`` in the
    provider response body, then the caller's type default, then 30 seconds.
    """
    header_value = _parse_seconds(failure.headers.get("retry-after"))
    if header_value is not None:
        return header_value
    if isinstance(failure.data, dict):
        data_value = _parse_seconds(failure.data.get("retryAfter"))
        if data_value is not None:
            return data_value
    if default is not None:
        return default
    return RETRY_AFTER_FALLBACK_S


def _is_provider_failure(failure: FailureDescriptor) -> bool:
    if isinstance(failure.data, dict) and failure.data.get("error"):
        return True
    if "Novu" in (failure.message or "") or "Novu" in (failure.name or ""):
        return True
    return failure.status is not None and 400 <= failure.status < 600


def _token_invalid() -> ErrorClassification:
    return ErrorClassification(
        type=ERROR_TOKEN_INVALID,
        should_retry=False,
        should_cleanup_token=True,
        should_move_to_dlq=False,
        user_friendly_message=_MSG_TOKEN_INVALID,
    )


def _rate_limited(retry_after: int) -> ErrorClassification:
    return ErrorClassification(
        type=ERROR_RATE_LIMITED,
        should_retry=True,
        retry_after_seconds=retry_after,
        user_friendly_message=_MSG_RATE_LIMITED,
    )


def _retryable(message: str) -> ErrorClassification:
    return ErrorClassification(type=ERROR_RETRYABLE, should_retry=True, user_friendly_message=message)


def _non_retryable() -> ErrorClassification:
    return ErrorClassification(
        type=ERROR_NON_RETRYABLE,
        should_retry=False,
        should_move_to_dlq=True,
        user_friendly_message=_MSG_REQUEST,
    )


def _classify_provider_failure(failure: FailureDescriptor) -> ErrorClassification:
    status = failure.status
    message = failure.message or ""
    if not message and isinstance(failure.data, dict):
        message = str(failure.data.get("message") or "")
    if _is_token_invalid(message, failure.code):
        return _token_invalid()
    if _is_rate_limited(message, failure.code, status):
        return _rate_limited(extract_retry_after(failure, default=RATE_LIMIT_DEFAULT_S))
    if status is not None and status >= 500:
        return _retryable(_MSG_PROVIDER_SERVER)
    if status is not None and 400 <= status < 500:
        return _non_retryable()
    return _retryable(_MSG_TEMPORARY)


def _classify_status(failure: FailureDescriptor) -> ErrorClassification:
    status = failure.status or 0
    if status >= 500:
        return _retryable(_MSG_HTTP_SERVER)
    if status == 429:
        return _rate_limited(extract_retry_after(failure, default=RATE_LIMIT_DEFAULT_S))
    if 400 <= status < 500:
        return _non_retryable()
    return _retryable(_MSG_TEMPORARY)


def _classify_generic(failure: FailureDescriptor) -> ErrorClassification:
    message = failure.message or ""
    if _is_token_invalid(message):
        return _token_invalid()
    if _is_rate_limited(message):
        return _rate_limited(RATE_LIMIT_DEFAULT_S)
    if _matches(_RETRYABLE_PATTERNS, message):
        return _retryable(_MSG_TEMPORARY)
    if _matches(_NON_RETRYABLE_PATTERNS, message):
        return _non_retryable()
    # Unknown failures are retried rather than silently dropped.
    return _retryable(_MSG_TEMPORARY)


def classify_error(failure: FailureDescriptor | BaseException | str) -> ErrorClassification:
    # Map any delivery failure to a retry policy; never raises.
    try:
        if isinstance(failure, BaseException):
            failure = describe_failure(failure)
        elif not isinstance(failure, FailureDescriptor):
            failure = FailureDescriptor(message=str(failure))
        logger.debug(
            "classify_error status=%s code=%s name=%s message=%s",
            failure.status,
            failure.code,
            failure.name,
            failure.message,
        )
        if _is_provider_failure(failure):
            return _classify_provider_failure(failure)
        if failure.status is not None:
            return _classify_status(failure)
        return _classify_generic(failure)
    except Exception as exc:  # noqa: BLE001 - classification must always yield a policy
        logger.error("classify_error_failed", exc_info=exc)
        return ErrorClassification(
            type=ERROR_NON_RETRYABLE,
            should_retry=False,
            should_move_to_dlq=True,
            user_friendly_message=_MSG_UNEXPECTED,
        )


def pattern_statistics() -> dict[str, int]:
    # Expose pattern set sizes so operators can confirm which rule set is deployed.
    return {
        "retryable_patterns": len(_RETRYABLE_PATTERNS),
        "non_retryable_patterns": len(_NON_RETRYABLE_PATTERNS),
        "token_invalid_patterns": len(_TOKEN_INVALID_PATTERNS),
        "rate_limit_patterns": len(_RATE_LIMIT_PATTERNS),
    }
