from __future__ import annotations

import logging
import time
from typing import Any, Sequence

import httpx

from notifyrelay.core.config import get_settings
from notifyrelay.core.errors import ProviderConfigError, ProviderError
from notifyrelay.providers.delivery.base import descriptor_from_response
from notifyrelay.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class NovuDeliveryProvider:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling; the breaker owns the call timeout.
        self._client = httpx.AsyncClient(
            base_url=self._settings.novu_api_url.rstrip("/"),
            timeout=self._settings.cb_delivery_timeout_s,
        )
        return self._client

    def _headers(self) -> dict[str, str]:
        api_key = self._settings.novu_api_key
        if not api_key:
            raise ProviderConfigError("NOVU_API_KEY is required for the Novu delivery provider")
        return {"Authorization": f"ApiKey {api_key}", "Content-Type": "application/json"}

    async def _request(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> httpx.Response:
        headers = self._headers()
        start = time.monotonic()
        try:
            response = await self._get_client().request(method, path, json=json, headers=headers)
        except httpx.HTTPError:
            record_external_call(integration="novu", latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            raise
        success = response.status_code < 400
        record_external_call(integration="novu", latency_ms=(time.monotonic() - start) * 1000.0, success=success)
        if not success:
            descriptor = descriptor_from_response(response)
            raise ProviderError(descriptor.message, descriptor=descriptor)
        return response

    async def send(self, workflow_id: str, recipients: Sequence[str], payload: dict[str, Any]) -> str:
        # Trigger the workflow for every recipient; Novu answers with a transaction id.
        body = {
            "name": workflow_id,
            "to": [{"subscriberId": recipient} for recipient in recipients],
            "payload": payload,
        }
        response = await self._request("POST", "/v1/events/trigger", json=body)
        # The trigger is already accepted here; an unreadable body only loses the transaction id.
        try:
            envelope = response.json()
        except ValueError:
            envelope = None
        data = envelope.get("data") if isinstance(envelope, dict) else None
        transaction_id = data.get("transactionId") if isinstance(data, dict) else None
        if transaction_id is None:
            logger.warning(
                "novu_trigger_without_transaction_id workflow=%s status=%s",
                workflow_id,
                response.status_code,
            )
        logger.debug("novu_trigger_accepted workflow=%s recipients=%s", workflow_id, len(recipients))
        return str(transaction_id or "")

    async def delete_subscriber(self, user_id: str) -> None:
        await self._request("DELETE", f"/v1/subscribers/{user_id}")
        logger.info("novu_subscriber_deleted user_id=%s", user_id)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
