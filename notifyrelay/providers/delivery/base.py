from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
import traceback
from typing import Any, Protocol, Sequence

import httpx

from notifyrelay.core.errors import ProviderError


class SubscriberRegistry(Protocol):
    async def delete_subscriber(self, user_id: str) -> None:
        ...


class DeliveryProvider(SubscriberRegistry, Protocol):
    async def send(self, workflow_id: str, recipients: Sequence[str], payload: dict[str, Any]) -> str:
        ...


@dataclass(frozen=True)
class FailureDescriptor:
    # Narrow, typed view of a delivery failure so classification never inspects raw exception shapes.
    message: str
    status: int | None = None
    code: str | None = None
    name: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    data: dict[str, Any] | None = None
    stack: str | None = None


def _status_of(exc: BaseException) -> int | None:
    for attr in ("status", "status_code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _format_stack(exc: BaseException) -> str | None:
    if exc.__traceback__ is None:
        return None
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def descriptor_from_response(response: httpx.Response, *, message: str | None = None) -> FailureDescriptor:
    # Capture status, lower-cased headers and the JSON body exactly once at the HTTP boundary.
    try:
        body = response.json()
    except ValueError:
        body = None
    data = body if isinstance(body, dict) else None
    detail = message
    code = None
    if data is not None:
        raw_message = data.get("message")
        if isinstance(raw_message, list):
            raw_message = "; ".join(str(item) for item in raw_message)
        if detail is None and raw_message:
            detail = str(raw_message)
        raw_code = data.get("code") or data.get("error")
        if isinstance(raw_code, str) and raw_code.strip():
            code = raw_code.strip()
    if not detail:
        detail = f"Novu API error: {response.status_code}"
    return FailureDescriptor(
        message=detail,
        status=int(response.status_code),
        code=code,
        name="NovuApiError",
        headers={str(k).lower(): str(v) for k, v in response.headers.items()},
        data=data,
    )


def describe_failure(exc: BaseException) -> FailureDescriptor:
    # Build the descriptor from whichever failure shape reached the provider-call boundary.
    stack = _format_stack(exc)
    if isinstance(exc, ProviderError) and exc.descriptor is not None:
        return replace(exc.descriptor, stack=exc.descriptor.stack or stack)
    if isinstance(exc, httpx.HTTPStatusError):
        return replace(descriptor_from_response(exc.response, message=str(exc) or None), stack=stack)
    name = type(exc).__name__
    message = str(exc)
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)) and "timeout" not in message.lower():
        message = f"Request timeout: {message}" if message else "Request timeout"
    elif isinstance(exc, httpx.NetworkError) and "network" not in message.lower():
        message = f"Network error: {message}" if message else "Network error"
    code = getattr(exc, "code", None)
    return FailureDescriptor(
        message=message or name,
        status=_status_of(exc),
        code=code if isinstance(code, str) and code else None,
        name=name,
        stack=stack,
    )


def extract_error_code(failure: FailureDescriptor) -> str:
    # Most specific identifier first: provider code, then HTTP status, then exception name.
    if failure.code:
        return failure.code
    if failure.status is not None:
        return f"HTTP_{failure.status}"
    if failure.name:
        return failure.name
    return "UNKNOWN_ERROR"
