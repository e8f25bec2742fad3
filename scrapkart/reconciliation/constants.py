from scrapkart.common.logging_setup import get_logger
from scrapkart.config.settings import config_settings

logger = get_logger("scrapkart.reconciliation")

TRANSITION_MAX_ATTEMPTS = config_settings.TRANSITION_MAX_ATTEMPTS
TRANSITION_BACKOFF_BASE = config_settings.TRANSITION_BACKOFF_BASE
CLIENT_CALLBACK_SETTLES = config_settings.CLIENT_CALLBACK_SETTLES

RZPAY_EVENT_ID_HEADER = "X-Razorpay-Event-Id"
RZPAY_SIGNATURE_HEADER = "X-Razorpay-Signature"

# gateway event name -> outcome; events absent here are acknowledged and ignored
RZPAY_EVENT_OUTCOMES = {
    "payment.captured": "SUCCESS",
    "order.paid": "SUCCESS",
    "payment.failed": "FAILED",
    "refund.processed": "REFUNDED",
}

CONFLICT_PAGE_LIMIT = 100
