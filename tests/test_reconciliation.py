"""End-to-end reconciliation scenarios against a real (SQLite) store."""
import asyncio

import pytest
from sqlalchemy import select

from scrapkart.auth.models import Principal
from scrapkart.common.custom_exceptions import AuthenticationError, PermissionDenied, ValidationError
from scrapkart.reconciliation.coordinator import PaymentEvent, ReconciliationCoordinator
from scrapkart.reconciliation.outcomes import AckStatus, EventSource, PaymentOutcome
from scrapkart.reconciliation.utils import derive_event_key
from scrapkart.schema.full_schema import (
    OrderPaymentStatus, OrderStatus, OutboxEvent, Payment, PaymentStatus, ProcessedEvent, ReconciliationConflict,
)

from conftest import count_rows, signed_webhook


def client_event(order_id, txn, user_id="cust-1", outcome=PaymentOutcome.SUCCESS, amount=50000):
    return PaymentEvent(
        source=EventSource.CLIENT_CALLBACK,
        event_key=derive_event_key(EventSource.CLIENT_CALLBACK, txn, outcome),
        order_id=order_id,
        gateway_transaction_id=txn,
        outcome=outcome,
        principal=Principal(user_id=user_id),
        amount=amount,
    )


@pytest.fixture
def coordinator(session_factory, gateway):
    return ReconciliationCoordinator(session_factory, gateway)


async def test_duplicate_webhook_is_applied_once(coordinator, make_order, load_order):
    order_id, order_pk = await make_order()
    body, sig, payload = signed_webhook("payment.captured", "pay_A", order_id)

    first = await coordinator.handle_webhook(body, sig, "evt_A", payload)
    second = await coordinator.handle_webhook(body, sig, "evt_A", payload)

    assert first.status is AckStatus.APPLIED
    assert second.status is AckStatus.ALREADY_PROCESSED
    assert second.replayed
    assert second.order == first.order

    order = await load_order(order_pk)
    assert OrderStatus(order.status) is OrderStatus.CONFIRMED
    assert OrderPaymentStatus(order.payment_status) is OrderPaymentStatus.PAID
    assert order.version == 1
    assert await count_rows(OutboxEvent, OutboxEvent.topic == "order.confirmed") == 1
    assert await count_rows(ProcessedEvent) == 1


async def test_webhook_and_client_callback_race_settles_once(coordinator, make_order, load_order):
    order_id, order_pk = await make_order()
    body, sig, payload = signed_webhook("payment.captured", "pay_B", order_id)

    acks = await asyncio.gather(
        coordinator.handle_webhook(body, sig, "evt_B", payload),
        coordinator.handle_event(client_event(order_id, "pay_B")),
    )

    statuses = sorted(a.status.value for a in acks)
    assert statuses == ["already_processed", "applied"]
    assert await count_rows(Payment, Payment.status == PaymentStatus.SUCCESS.value) == 1
    assert await count_rows(OutboxEvent, OutboxEvent.topic == "order.confirmed") == 1
    order = await load_order(order_pk)
    assert OrderStatus(order.status) is OrderStatus.CONFIRMED
    assert order.version == 1


async def test_two_transactions_for_one_order_leave_an_audit_record(coordinator, make_order, session_factory):
    order_id, order_pk = await make_order()
    body_a, sig_a, payload_a = signed_webhook("payment.captured", "pay_C1", order_id)
    body_b, sig_b, payload_b = signed_webhook("payment.captured", "pay_C2", order_id)

    applied = await coordinator.handle_webhook(body_a, sig_a, "evt_C1", payload_a)
    rejected = await coordinator.handle_webhook(body_b, sig_b, "evt_C2", payload_b)
    replay = await coordinator.handle_webhook(body_b, sig_b, "evt_C2", payload_b)

    assert applied.status is AckStatus.APPLIED
    assert rejected.status is AckStatus.REJECTED
    assert rejected.competing_transaction_id == "pay_C1"
    assert replay.status is AckStatus.REJECTED
    assert replay.replayed

    async with session_factory() as session:
        conflicts = (await session.execute(select(ReconciliationConflict))).scalars().all()
        settled = (await session.execute(
            select(Payment).where(Payment.order_id == order_pk, Payment.status == PaymentStatus.SUCCESS.value)
        )).scalars().all()
    assert len(conflicts) == 1
    assert conflicts[0].gateway_transaction_id == "pay_C2"
    assert conflicts[0].competing_transaction_id == "pay_C1"
    assert conflicts[0].order_id == order_pk
    assert [p.gateway_transaction_id for p in settled] == ["pay_C1"]


async def test_concurrent_settlements_with_different_transactions(coordinator, make_order):
    order_id, _ = await make_order()
    deliveries = [signed_webhook("payment.captured", f"pay_R{i}", order_id) for i in range(3)]

    acks = await asyncio.gather(*(
        coordinator.handle_webhook(body, sig, f"evt_R{i}", payload)
        for i, (body, sig, payload) in enumerate(deliveries)
    ))

    assert [a.status for a in acks].count(AckStatus.APPLIED) == 1
    assert [a.status for a in acks].count(AckStatus.REJECTED) == 2
    assert await count_rows(Payment, Payment.status == PaymentStatus.SUCCESS.value) == 1
    assert await count_rows(ReconciliationConflict) == 2


@pytest.mark.parametrize("signature", [None, "", "deadbeef"])
async def test_bad_signature_is_rejected_before_anything_is_recorded(coordinator, make_order, load_order,
                                                                     signature):
    order_id, order_pk = await make_order()
    body, _, payload = signed_webhook("payment.captured", "pay_S", order_id)

    with pytest.raises(AuthenticationError):
        await coordinator.handle_webhook(body, signature, "evt_S", payload)

    assert await count_rows(ProcessedEvent) == 0
    assert await count_rows(Payment) == 0
    assert OrderStatus((await load_order(order_pk)).status) is OrderStatus.PENDING


async def test_tampered_body_fails_signature_check(coordinator, make_order):
    order_id, _ = await make_order()
    body, sig, payload = signed_webhook("payment.captured", "pay_T", order_id, amount=50000)
    tampered = body.replace(b"50000", b"10")

    with pytest.raises(AuthenticationError):
        await coordinator.handle_webhook(tampered, sig, "evt_T", payload)
    assert await count_rows(ProcessedEvent) == 0


async def test_webhook_events_built_by_hand_are_also_signature_checked(coordinator, make_order):
    order_id, _ = await make_order()
    event = PaymentEvent(
        source=EventSource.WEBHOOK,
        event_key="rzp:evt_H",
        order_id=order_id,
        gateway_transaction_id="pay_H",
        outcome=PaymentOutcome.SUCCESS,
        principal=Principal(user_id="razorpay", role="GATEWAY"),
        signature="forged",
        raw_body=b"{}",
    )
    with pytest.raises(AuthenticationError):
        await coordinator.handle_event(event)
    assert await count_rows(ProcessedEvent) == 0


async def test_unhandled_event_is_ignored(coordinator):
    body, sig, payload = signed_webhook("payment.authorized", "pay_I")
    ack = await coordinator.handle_webhook(body, sig, "evt_I", payload)
    assert ack.status is AckStatus.IGNORED
    assert await count_rows(ProcessedEvent) == 0


async def test_unknown_order_reference_is_a_validation_error(coordinator):
    body, sig, payload = signed_webhook("payment.captured", "pay_U", "00000000-0000-0000-0000-000000000000")
    with pytest.raises(ValidationError):
        await coordinator.handle_webhook(body, sig, "evt_U", payload)
    assert await count_rows(ProcessedEvent) == 0


async def test_failed_payment_then_success_with_new_attempt(coordinator, make_order, load_order):
    order_id, order_pk = await make_order()
    body, sig, payload = signed_webhook("payment.failed", "pay_F1", order_id)
    failed = await coordinator.handle_webhook(body, sig, "evt_F1", payload)
    assert failed.status is AckStatus.APPLIED
    assert OrderPaymentStatus((await load_order(order_pk)).payment_status) is OrderPaymentStatus.FAILED
    assert await count_rows(OutboxEvent, OutboxEvent.topic == "payment.failed") == 1

    body, sig, payload = signed_webhook("payment.captured", "pay_F2", order_id)
    ok = await coordinator.handle_webhook(body, sig, "evt_F2", payload)
    assert ok.status is AckStatus.APPLIED
    order = await load_order(order_pk)
    assert OrderStatus(order.status) is OrderStatus.CONFIRMED
    assert OrderPaymentStatus(order.payment_status) is OrderPaymentStatus.PAID


async def test_refund_webhook_cancels_paid_order(coordinator, make_order, load_order):
    order_id, order_pk = await make_order()
    body, sig, payload = signed_webhook("payment.captured", "pay_W", order_id)
    await coordinator.handle_webhook(body, sig, "evt_W1", payload)

    body, sig, payload = signed_webhook("refund.processed", "pay_W", order_id, refund_id="rfnd_W")
    ack = await coordinator.handle_webhook(body, sig, "evt_W2", payload)

    assert ack.status is AckStatus.APPLIED
    order = await load_order(order_pk)
    assert OrderStatus(order.status) is OrderStatus.CANCELLED
    assert OrderPaymentStatus(order.payment_status) is OrderPaymentStatus.REFUNDED
    assert await count_rows(OutboxEvent, OutboxEvent.topic == "order.refunded") == 1


async def test_client_callback_for_someone_elses_order_is_denied(coordinator, make_order, load_order):
    order_id, order_pk = await make_order(user_id="cust-1")

    with pytest.raises(PermissionDenied):
        await coordinator.handle_event(client_event(order_id, "pay_X", user_id="cust-2"))

    assert await count_rows(ProcessedEvent) == 0
    assert OrderStatus((await load_order(order_pk)).status) is OrderStatus.PENDING


async def test_client_cannot_report_refunds(coordinator, make_order):
    order_id, _ = await make_order()
    with pytest.raises(ValidationError):
        await coordinator.handle_event(client_event(order_id, "pay_Y", outcome=PaymentOutcome.REFUNDED))


async def test_client_success_waits_for_gateway_when_configured(session_factory, gateway, make_order, load_order):
    coordinator = ReconciliationCoordinator(session_factory, gateway, client_callback_settles=False)
    order_id, order_pk = await make_order()

    deferred = await coordinator.handle_event(client_event(order_id, "pay_D"))
    assert deferred.status is AckStatus.DEFERRED
    assert await count_rows(ProcessedEvent) == 0
    assert OrderStatus((await load_order(order_pk)).status) is OrderStatus.PENDING

    body, sig, payload = signed_webhook("payment.captured", "pay_D", order_id)
    applied = await coordinator.handle_webhook(body, sig, "evt_D", payload)
    assert applied.status is AckStatus.APPLIED


async def test_event_key_derivation_is_deterministic():
    a = derive_event_key(EventSource.CLIENT_CALLBACK, "pay_1", PaymentOutcome.SUCCESS)
    b = derive_event_key(EventSource.CLIENT_CALLBACK, "pay_1", PaymentOutcome.SUCCESS)
    c = derive_event_key(EventSource.WEBHOOK, "pay_1", PaymentOutcome.SUCCESS)
    assert a == b
    assert a != c
    assert a.startswith("client_callback:")
