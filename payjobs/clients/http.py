"""Gateway and notification adapters built on httpx.AsyncClient."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from ..contracts import NotificationService, PaymentGateway, ReminderContext
from ..models import Participant, PaymentAuthorization

logger = logging.getLogger(__name__)


class _HttpClient:
    """POSTs JSON to a base URL; a 2xx response means the call succeeded.

    Transport errors propagate so the executor's failure boundary records
    them against the job.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = headers
        self.transport = transport

    async def _post(self, path: str, payload: dict[str, Any]) -> bool:
        url = f"{self.base_url}{path}"
        async with httpx.AsyncClient(
            timeout=self.timeout, headers=self.headers, transport=self.transport
        ) as client:
            started = time.perf_counter()
            resp = await client.post(url, json=payload)
            duration = int((time.perf_counter() - started) * 1000)
        logger.debug("POST %s -> %s in %sms", url, resp.status_code, duration)
        if resp.is_success:
            return True
        logger.warning("collaborator rejected request: url=%s status=%s", url, resp.status_code)
        return False


class HttpPaymentGateway(_HttpClient, PaymentGateway):
    async def capture(self, authorization: PaymentAuthorization, reason: str) -> bool:
        return await self._post(
            f"/authorizations/{authorization.id}/capture",
            {
                "reason": reason,
                "payment_intent_id": authorization.payment_intent_id,
                "amount_cents": authorization.amount_cents,
                "currency": authorization.currency,
            },
        )

    async def expire(self, authorization: PaymentAuthorization) -> bool:
        return await self._post(
            f"/authorizations/{authorization.id}/expire",
            {"payment_intent_id": authorization.payment_intent_id},
        )


def _context_payload(user: Participant, context: ReminderContext) -> dict[str, Any]:
    authorization = context.authorization
    return {
        "user_id": user.user_id,
        "email": user.email,
        "reminder_type": context.reminder_type.value,
        "authorization_id": authorization.id,
        "booking_id": authorization.booking_id,
        "amount_cents": authorization.amount_cents,
        "currency": authorization.currency,
        "hours_remaining": context.hours_remaining,
        "confirmation_url": context.confirmation_url,
        "hours_until_capture": context.hours_until_capture,
        "capture_date": context.capture_date.isoformat() if context.capture_date else None,
    }


class HttpNotificationService(_HttpClient, NotificationService):
    def __init__(self, base_url: str, *, timeout: float = 15.0, **kwargs: Any) -> None:
        super().__init__(base_url, timeout=timeout, **kwargs)

    async def send_confirmation_reminder(
        self, user: Participant, context: ReminderContext
    ) -> bool:
        return await self._post("/reminders/confirmation", _context_payload(user, context))

    async def send_capture_reminder(
        self, user: Participant, context: ReminderContext, role: str
    ) -> bool:
        return await self._post(
            "/reminders/capture", {**_context_payload(user, context), "role": role}
        )
