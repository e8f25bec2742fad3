import json
from fastapi import Depends, Request

from scrapkart.common.custom_exceptions import AuthenticationError, ValidationError
from scrapkart.common.utils import build_success, json_ok
from scrapkart.payments.dependencies import get_reconciliation_coordinator
from scrapkart.reconciliation.constants import RZPAY_EVENT_ID_HEADER, RZPAY_SIGNATURE_HEADER, logger
from scrapkart.reconciliation.coordinator import ReconciliationCoordinator


async def razorpay_webhook(request: Request,
                           coordinator: ReconciliationCoordinator = Depends(get_reconciliation_coordinator)):
    # any non-2xx makes the gateway redeliver, so only Unavailable escapes as 503
    body = await request.body()
    signature = request.headers.get(RZPAY_SIGNATURE_HEADER)
    event_id = request.headers.get(RZPAY_EVENT_ID_HEADER)

    try:
        payload = json.loads(body) if body else None
    except ValueError:
        payload = None

    try:
        ack = await coordinator.handle_webhook(body, signature, event_id, payload)
    except (AuthenticationError, ValidationError) as exc:
        logger.warning("reconcile.webhook.rejected", extra={"event_id": event_id, "reason": exc.message,
                                                            "error_code": exc.code})
        return json_ok(build_success({"status": "rejected", "reason": exc.message, "event_key": None}))

    return json_ok(build_success(ack.to_dict()))
