from scrapkart.common.logging_setup import get_logger
from scrapkart.config.settings import config_settings

logger = get_logger("scrapkart.notifications")

NOTIFICATION_SERVICE_URL = config_settings.NOTIFICATION_SERVICE_URL
NOTIFICATION_TIMEOUT = config_settings.NOTIFICATION_TIMEOUT_SECONDS

DEFAULT_BATCH = config_settings.OUTBOX_BATCH_SIZE
DEFAULT_POLL_SECONDS = config_settings.OUTBOX_POLL_SECONDS
DEFAULT_LOCK_SECONDS = config_settings.OUTBOX_LOCK_SECONDS
MAX_PUBLISH_ATTEMPTS = config_settings.OUTBOX_MAX_ATTEMPTS
BACKOFF_BASE = 5.0
BACKOFF_CAP = 3600.0

TOPIC_ORDER_CONFIRMED = "order.confirmed"
TOPIC_PAYMENT_FAILED = "payment.failed"
TOPIC_ORDER_REFUNDED = "order.refunded"
TOPIC_ORDER_CANCELLED = "order.cancelled"
