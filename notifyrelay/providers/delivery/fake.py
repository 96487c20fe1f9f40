from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Deque, Sequence
from uuid import uuid4


class FakeDeliveryProvider:
    """Scriptable in-memory provider for tests and local runs.

    Queue exceptions with ``fail_next`` to make upcoming sends fail in order,
    or with ``fail_for`` to fail sends addressed to a given recipient;
    every other send succeeds and returns a generated delivery id.
    """

    def __init__(self, *, delay_s: float = 0.0) -> None:
        self.sent: list[dict[str, Any]] = []
        self.deleted_subscribers: list[str] = []
        self.delete_error: Exception | None = None
        self._delay_s = delay_s
        self._failures: Deque[Exception] = deque()
        self._recipient_failures: dict[str, Deque[Exception]] = {}

    def fail_next(self, *errors: Exception) -> None:
        self._failures.extend(errors)

    def fail_for(self, recipient: str, *errors: Exception) -> None:
        # Fail upcoming sends addressed to one recipient, independent of call order.
        self._recipient_failures.setdefault(recipient, deque()).extend(errors)

    async def send(self, workflow_id: str, recipients: Sequence[str], payload: dict[str, Any]) -> str:
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        for recipient in recipients:
            scripted = self._recipient_failures.get(recipient)
            if scripted:
                raise scripted.popleft()
        if self._failures:
            raise self._failures.popleft()
        delivery_id = f"fake-{uuid4().hex[:12]}"
        self.sent.append(
            {
                "workflow_id": workflow_id,
                "recipients": list(recipients),
                "payload": payload,
                "delivery_id": delivery_id,
            }
        )
        return delivery_id

    async def delete_subscriber(self, user_id: str) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted_subscribers.append(user_id)
