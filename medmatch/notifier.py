"""
Notification gateway.

Delivery itself (WhatsApp, email, retries, formatting) belongs to an external
messaging service. This gateway hands events to that service's webhook, or
only logs them when no webhook is configured.
"""

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class NotificationGateway:
    def __init__(
        self, webhook_url: str | None = None, *, timeout: float = 10.0
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        if not webhook_url:
            logger.info("Notification webhook not set; events will only be logged")

    async def notify_doctor_assigned(self, doctor_id: str, request_id: str) -> None:
        await self._emit(
            "doctor_assigned", {"doctor_id": doctor_id, "request_id": request_id}
        )

    async def notify_business_accepted(
        self, request_id: str, doctor_id: str
    ) -> None:
        await self._emit(
            "business_accepted", {"request_id": request_id, "doctor_id": doctor_id}
        )

    async def _emit(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("notify %s %s", event, payload)
        if not self.webhook_url:
            return
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    self.webhook_url, json={"event": event, **payload}
                )
                resp.raise_for_status()
        except httpx.HTTPError:
            # delivery is best effort here; the messaging service owns retries
            logger.exception("Notification %s failed for %s", event, payload)
