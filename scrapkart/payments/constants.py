import httpx
from scrapkart.common.logging_setup import get_logger
from scrapkart.config.settings import config_settings

logger = get_logger("scrapkart.payments")

PSP_API_BASE = config_settings.RZPAY_GATEWAY_URL
PSP_KEY_ID = config_settings.RZPAY_KEY
PSP_KEY_SECRET = config_settings.RZPAY_SECRET
RAZORPAY_WEBHOOK_SECRET = config_settings.RAZORPAY_WEBHOOK_SECRET
PSP_TIMEOUT = config_settings.GATEWAY_TIMEOUT_SECONDS
DEFAULT_RETRIES = config_settings.GATEWAY_MAX_RETRIES
DEFAULT_BACKOFF_BASE = config_settings.GATEWAY_BACKOFF_BASE

REFUND_CLAIM_TTL_SECONDS = config_settings.REFUND_CLAIM_TTL_SECONDS
REFUND_WAIT_POLL_SECONDS = config_settings.REFUND_WAIT_POLL_SECONDS
REFUND_ROLES = ("ADMIN", "SUPPORT")

TRANSIENT_EXCEPTIONS = (httpx.ConnectError, httpx.ReadTimeout, httpx.RemoteProtocolError, httpx.NetworkError, httpx.WriteTimeout, httpx.PoolTimeout)
