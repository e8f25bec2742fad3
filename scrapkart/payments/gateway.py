import asyncio
import hashlib
import hmac
from typing import Any, Dict, Optional
import httpx
from scrapkart.common.custom_exceptions import Unavailable
from scrapkart.payments.constants import (
    DEFAULT_BACKOFF_BASE, DEFAULT_RETRIES, PSP_API_BASE, PSP_KEY_ID, PSP_KEY_SECRET,
    PSP_TIMEOUT, RAZORPAY_WEBHOOK_SECRET, TRANSIENT_EXCEPTIONS, logger,
)


class GatewayRejected(Exception):
    """The gateway answered with a non-retryable (4xx) error."""

    def __init__(self, status_code: Optional[int], body: str):
        super().__init__(f"gateway rejected request ({status_code}): {body}")
        self.status_code = status_code
        self.body = body


def compute_webhook_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class RazorpayGateway:
    """Outbound calls to the payment gateway plus webhook signature checks."""

    def __init__(
        self,
        base_url: str = PSP_API_BASE,
        key_id: str = PSP_KEY_ID,
        key_secret: str = PSP_KEY_SECRET,
        webhook_secret: str = RAZORPAY_WEBHOOK_SECRET,
        *,
        timeout: float = PSP_TIMEOUT,
        max_retries: int = DEFAULT_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.backoff_base = backoff_base
        self._transport = transport

    def verify_webhook_signature(self, body: bytes, signature: Optional[str]) -> bool:
        if not signature or not self.webhook_secret:
            return False
        expected = compute_webhook_signature(self.webhook_secret, body)
        return hmac.compare_digest(expected, signature)

    async def refund(self, gateway_transaction_id: str, amount: int, refund_request_id: str,
                     notes: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Refund a captured payment. `refund_request_id` is sent as receipt and idempotency key,
        so replays after a crash land on the same gateway refund."""
        payload = {
            "amount": amount,
            "receipt": refund_request_id,
            "notes": notes or {},
        }
        return await self._post(f"/payments/{gateway_transaction_id}/refund", payload,
                                idempotency_key=refund_request_id)

    async def _post(self, path: str, payload: Dict[str, Any], idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json"}
        if idempotency_key:
            headers["Idempotency-Key"] = str(idempotency_key)

        last_exc: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, auth=(self.key_id, self.key_secret),
                                             transport=self._transport) as client:
                    resp = await client.post(url, json=payload, headers=headers)
                    resp.raise_for_status()
                    return resp.json()
            except TRANSIENT_EXCEPTIONS as ex:
                last_exc = ex
                logger.warning("gateway.call.transient_error",
                               extra={"path": path, "attempt": attempt, "error": repr(ex)})
            except httpx.HTTPStatusError as ex:
                status_code = ex.response.status_code if ex.response is not None else None
                body_text = ex.response.text if ex.response is not None else str(ex)
                if status_code and 500 <= status_code < 600:
                    last_exc = ex
                    logger.warning("gateway.call.server_error",
                                   extra={"path": path, "attempt": attempt, "http_status": status_code})
                else:
                    logger.warning("gateway.call.rejected", extra={"path": path, "http_status": status_code})
                    raise GatewayRejected(status_code, body_text) from ex

            if attempt < self.max_retries:
                await asyncio.sleep(min(self.backoff_base * (2 ** (attempt - 1)), 8.0))

        logger.error("gateway.call.exhausted", extra={"path": path, "attempts": self.max_retries})
        raise Unavailable("payment gateway unreachable") from last_exc
