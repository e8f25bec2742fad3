from scrapkart.common.logging_setup import get_logger

logger = get_logger("scrapkart.orders")

