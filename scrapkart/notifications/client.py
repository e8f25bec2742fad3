from typing import Any, Dict, Optional
import httpx
from scrapkart.notifications.constants import NOTIFICATION_SERVICE_URL, NOTIFICATION_TIMEOUT, logger
from scrapkart.notifications.utils import render_message


class NotificationClient:
    """Fire-and-forget delivery to the notification service.

    Raises on any transport or HTTP error; retrying is the outbox relay's job.
    """

    def __init__(self, base_url: Optional[str] = NOTIFICATION_SERVICE_URL, *,
                 timeout: float = NOTIFICATION_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout
        self._transport = transport

    async def deliver(self, topic: str, payload: Dict[str, Any]) -> None:
        message = render_message(topic, payload)
        if not self.base_url:
            logger.info("notification.delivery_skipped", extra={"topic": topic, "order_id": payload.get("order_id")})
            return
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(f"{self.base_url}/notifications", json=message)
            resp.raise_for_status()
        logger.info("notification.delivered", extra={"topic": topic, "order_id": payload.get("order_id")})
