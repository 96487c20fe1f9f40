from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from notifyrelay.providers.delivery.base import FailureDescriptor


class NotifyRelayError(Exception):
    """Base error for notifyrelay."""


class CircuitOpenError(NotifyRelayError):
    """Call rejected because the named circuit is open."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Circuit breaker {name} is OPEN")
        self.name = name


class CircuitTimeoutError(NotifyRelayError):
    """Guarded operation did not finish within the breaker timeout."""

    def __init__(self, name: str, timeout_s: float) -> None:
        super().__init__(f"Circuit breaker timeout after {timeout_s:g}s for {name}")
        self.name = name
        self.timeout_s = timeout_s


class ProviderConfigError(NotifyRelayError):
    """Missing or invalid delivery provider configuration."""


class ProviderError(NotifyRelayError):
    """Delivery provider rejected a request."""

    def __init__(self, message: str, *, descriptor: FailureDescriptor | None = None) -> None:
        super().__init__(message)
        self.descriptor = descriptor


class DeadLetterWriteError(NotifyRelayError):
    """Persisting a notification into the dead letter queue failed."""

    def __init__(self, notification_id: str, message: str) -> None:
        super().__init__(f"Failed to move notification {notification_id} to DLQ: {message}")
        self.notification_id = notification_id
