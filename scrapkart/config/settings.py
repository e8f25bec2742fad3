from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):

    DATABASE_URL: str = "sqlite+aiosqlite:///./scrapkart.db"
    DB_ECHO: bool = False
    JWT_SECRET: str = "dev-only-jwt-secret"
    JWT_ALGO: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    RZPAY_KEY: str = ""
    RZPAY_SECRET: str = ""
    RZPAY_GATEWAY_URL: str = "https://api.razorpay.com/v1"
    RAZORPAY_WEBHOOK_SECRET: str = ""
    RZPAY_WEBHOOK_PATH: str = "/api/v1/webhooks/razorpay"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    GATEWAY_MAX_RETRIES: int = 3
    GATEWAY_BACKOFF_BASE: float = 0.5

    NOTIFICATION_SERVICE_URL: Optional[str] = None
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0

    TRANSITION_MAX_ATTEMPTS: int = 3
    TRANSITION_BACKOFF_BASE: float = 0.05
    REFUND_CLAIM_TTL_SECONDS: int = 300
    REFUND_WAIT_POLL_SECONDS: float = 0.05
    # false -> client-reported success waits for the gateway webhook
    CLIENT_CALLBACK_SETTLES: bool = True

    OUTBOX_RELAY_ENABLED: bool = True
    OUTBOX_BATCH_SIZE: int = 10
    OUTBOX_POLL_SECONDS: float = 1.0
    OUTBOX_LOCK_SECONDS: int = 60
    OUTBOX_MAX_ATTEMPTS: int = 6

    class Config:
        env_file = ".env"
        extra = "ignore"

config_settings = Settings()
