import asyncio
import json
import os
import tempfile

_tmpdir = tempfile.mkdtemp(prefix="scrapkart-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_tmpdir, 'test.db')}"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "whsec_test"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["OUTBOX_RELAY_ENABLED"] = "false"
os.environ["TRANSITION_BACKOFF_BASE"] = "0.001"
os.environ["GATEWAY_BACKOFF_BASE"] = "0"
os.environ["ENV"] = "test"

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlmodel import SQLModel

from scrapkart.auth.utils import create_access_token
from scrapkart.common.circuit_breaker import db_circuit
from scrapkart.db.connection import async_engine, async_session
from scrapkart.main import app
from scrapkart.orders.repository import create_order, get_order
from scrapkart.payments.dependencies import get_gateway
from scrapkart.payments.gateway import RazorpayGateway, compute_webhook_signature
from scrapkart.schema import full_schema  # noqa: F401

url_prefix = "/api/v1"
WEBHOOK_SECRET = "whsec_test"


class FakeGateway(RazorpayGateway):
    """Real signature checks; refunds are recorded instead of sent."""

    def __init__(self, delay: float = 0.0, fail_with: Exception = None):
        super().__init__(base_url="http://gateway.test", key_id="rzp_test", key_secret="secret",
                         webhook_secret=WEBHOOK_SECRET)
        self.delay = delay
        self.fail_with = fail_with
        self.refund_calls = []

    async def refund(self, gateway_transaction_id, amount, refund_request_id, notes=None):
        self.refund_calls.append((gateway_transaction_id, amount, refund_request_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        return {"id": f"rfnd_{len(self.refund_calls)}", "payment_id": gateway_transaction_id, "amount": amount}


@pytest.fixture(autouse=True)
async def db():
    db_circuit.reset()
    async with async_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)
    yield
    await async_engine.dispose()


@pytest.fixture
def session_factory():
    return async_session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_order():
    async def _make(user_id: str = "cust-1", amount: int = 50000):
        async with async_session() as session:
            async with session.begin():
                order = await create_order(session, user_id, amount)
        return str(order.public_id), order.id
    return _make


@pytest.fixture
def load_order():
    async def _load(order_pk: int):
        async with async_session() as session:
            return await get_order(session, order_pk)
    return _load


def auth_headers(user_id: str, role: str = "CUSTOMER") -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


@pytest.fixture
async def ac_client(gateway):
    app.dependency_overrides[get_gateway] = lambda: gateway
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    app.dependency_overrides.pop(get_gateway, None)


def signed_webhook(event: str, txn: str, order_id=None, amount: int = 50000, refund_id: str = None):
    """Razorpay-shaped delivery: (raw body, signature, parsed payload)."""
    notes = {"order_reference": order_id} if order_id else {}
    entities = {"payment": {"entity": {"id": txn, "amount": amount, "currency": "INR", "notes": notes}}}
    if refund_id:
        entities["refund"] = {"entity": {"id": refund_id, "payment_id": txn, "amount": amount,
                                         "currency": "INR", "notes": notes}}
    payload = {"entity": "event", "event": event, "payload": entities}
    body = json.dumps(payload).encode()
    return body, compute_webhook_signature(WEBHOOK_SECRET, body), payload


async def count_rows(model, *where) -> int:
    async with async_session() as session:
        stmt = select(func.count()).select_from(model)
        if where:
            stmt = stmt.where(*where)
        return (await session.execute(stmt)).scalar_one()
