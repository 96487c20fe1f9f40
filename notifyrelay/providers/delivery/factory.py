from __future__ import annotations

from notifyrelay.core.config import get_settings
from notifyrelay.core.errors import ProviderConfigError
from notifyrelay.providers.delivery.fake import FakeDeliveryProvider
from notifyrelay.providers.delivery.novu import NovuDeliveryProvider


def get_delivery_provider():
    settings = get_settings()
    provider = (settings.delivery_provider or "novu").lower()

    if provider == "fake":
        return FakeDeliveryProvider()
    if provider == "novu":
        return NovuDeliveryProvider()

    raise ProviderConfigError(f"Unsupported delivery provider: {provider}")
