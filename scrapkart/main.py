import asyncio
from contextlib import asynccontextmanager
from fastapi import FastAPI
from scrapkart import logger
from scrapkart.api import cur_version
from scrapkart.api.routers import admin_routers, public_routers
from scrapkart.common.custom_exceptions import register_all_exceptions
from scrapkart.common.logging_setup import setup_logging, shutdown_logging
from scrapkart.config.admin_config import admin_config
from scrapkart.config.settings import config_settings
from scrapkart.db.connection import async_engine, async_session
from scrapkart.middlewares.request_id_middleware import RequestIdMiddleware
from scrapkart.notifications.client import NotificationClient
from scrapkart.notifications.relay import OutboxRelay
from scrapkart.payments.gateway import RazorpayGateway
from scrapkart.reconciliation.webhooks import razorpay_webhook
from metrics.custom_instrumentator import instrumentator

rzpay_webhook_path = config_settings.RZPAY_WEBHOOK_PATH


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    setup_logging()
    app.state.gateway = RazorpayGateway()
    app.state.notifier = NotificationClient()

    relay_task = None
    relay = None
    if config_settings.OUTBOX_RELAY_ENABLED:
        relay = OutboxRelay(async_session, app.state.notifier)
        relay_task = asyncio.create_task(relay.run(), name="outbox-relay")
    app.state.outbox_relay = relay

    try:
        yield
    finally:
        # relay first: it still needs the engine
        if relay is not None:
            relay.stop()
            try:
                await asyncio.wait_for(relay_task, timeout=10)
            except asyncio.TimeoutError:
                relay_task.cancel()
                logger.warning("outbox.relay.shutdown_timeout")
        await async_engine.dispose()
        shutdown_logging()


def create_app():
    app = FastAPI(
        title="ScrapKart",
        version=cur_version,
        lifespan=app_lifespan)

    app.include_router(public_routers)
    app.add_api_route(rzpay_webhook_path, razorpay_webhook, methods=["POST"], name="razorpay_webhook",
                      tags=["webhooks"])

    if admin_config.ENABLE_ADMIN:
        app.include_router(admin_routers)      # mounts /api/v1/admin

    app.add_middleware(RequestIdMiddleware)
    register_all_exceptions(app)
    if admin_config.METRICS_ENABLED:
        instrumentator.instrument(app).expose(app, endpoint="/metrics")

    return app

app = create_app()
