import json

import httpx
import pytest

from scrapkart.common.custom_exceptions import Unavailable
from scrapkart.payments.gateway import GatewayRejected, RazorpayGateway, compute_webhook_signature


def make_gateway(handler, **kw):
    return RazorpayGateway("https://rzp.test/v1", "rzp_key", "rzp_secret", "whsec",
                           max_retries=3, backoff_base=0, transport=httpx.MockTransport(handler), **kw)


def test_signature_verification():
    gateway = make_gateway(lambda request: httpx.Response(200))
    body = b'{"event":"payment.captured"}'
    good = compute_webhook_signature("whsec", body)

    assert gateway.verify_webhook_signature(body, good)
    assert not gateway.verify_webhook_signature(body + b" ", good)
    assert not gateway.verify_webhook_signature(body, None)
    assert not gateway.verify_webhook_signature(body, compute_webhook_signature("other", body))


def test_missing_secret_fails_closed():
    gateway = RazorpayGateway("https://rzp.test/v1", "k", "s", "")
    assert not gateway.verify_webhook_signature(b"{}", compute_webhook_signature("", b"{}"))


async def test_refund_sends_idempotency_key_and_retries_server_errors():
    requests = []

    def handler(request: httpx.Request):
        requests.append(request)
        if len(requests) < 3:
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, json={"id": "rfnd_9", "amount": 50000})

    result = await make_gateway(handler).refund("pay_1", 50000, "req-123", notes={"order_reference": "abc"})

    assert result["id"] == "rfnd_9"
    assert len(requests) == 3
    assert {r.headers["Idempotency-Key"] for r in requests} == {"req-123"}
    assert requests[-1].url.path == "/v1/payments/pay_1/refund"
    assert json.loads(requests[-1].content) == {"amount": 50000, "receipt": "req-123",
                                                "notes": {"order_reference": "abc"}}


async def test_client_error_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": {"code": "BAD_REQUEST_ERROR"}})

    with pytest.raises(GatewayRejected) as exc_info:
        await make_gateway(handler).refund("pay_1", 100, "req-1")
    assert exc_info.value.status_code == 400
    assert len(calls) == 1


async def test_network_failures_exhaust_to_unavailable():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(Unavailable):
        await make_gateway(handler).refund("pay_1", 100, "req-1")
    assert len(calls) == 3
