from scrapkart.common.logging_setup import get_logger
from scrapkart.config.settings import config_settings

logger = get_logger("scrapkart.auth")

JWT_SECRET = config_settings.JWT_SECRET
JWT_ALGO = config_settings.JWT_ALGO
ACCESS_TOKEN_EXPIRE_MINUTES = config_settings.ACCESS_TOKEN_EXPIRE_MINUTES
