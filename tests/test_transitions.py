import pytest
from sqlalchemy import select

from scrapkart.common.custom_exceptions import NotFound, Unavailable, ValidationError
from scrapkart.orders.repository import StaleStateError
from scrapkart.payments.repository import insert_payment_if_absent
from scrapkart.reconciliation.outcomes import Applied, Conflict, PaymentOutcome, Unchanged
from scrapkart.reconciliation.transitions import TransitionAuthority, can_transition_order, can_transition_payment
from scrapkart.schema.full_schema import OrderStatus, Payment, PaymentStatus


async def apply(session_factory, authority, order_pk, txn, outcome, amount=None):
    async with session_factory() as session:
        async with session.begin():
            return await authority.apply_payment_outcome(
                session, order_id=order_pk, gateway_transaction_id=txn, outcome=outcome, amount=amount)


def test_transition_tables_are_monotonic():
    assert can_transition_order(OrderStatus.PENDING, OrderStatus.CONFIRMED)
    assert can_transition_order(OrderStatus.CONFIRMED, OrderStatus.CANCELLED)
    assert not can_transition_order(OrderStatus.CANCELLED, OrderStatus.PENDING)
    assert not can_transition_order(OrderStatus.COMPLETED, OrderStatus.CANCELLED)
    assert not can_transition_order(OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED)
    assert can_transition_payment(PaymentStatus.PENDING, PaymentStatus.SUCCESS)
    assert can_transition_payment(PaymentStatus.SUCCESS, PaymentStatus.REFUNDED)
    assert not can_transition_payment(PaymentStatus.FAILED, PaymentStatus.SUCCESS)
    assert not can_transition_payment(PaymentStatus.REFUNDED, PaymentStatus.SUCCESS)


async def test_success_confirms_pending_order(session_factory, make_order, load_order):
    _, order_pk = await make_order(amount=50000)
    result = await apply(session_factory, TransitionAuthority(), order_pk, "pay_1", PaymentOutcome.SUCCESS, 50000)

    assert isinstance(result, Applied)
    assert result.order.status == "CONFIRMED"
    assert result.order.payment_status == "PAID"
    assert result.payment.status == "SUCCESS"
    assert result.previous_order_status == "PENDING"
    order = await load_order(order_pk)
    assert order.version == 1
    assert order.confirmed_at is not None


async def test_same_outcome_twice_is_unchanged(session_factory, make_order, load_order):
    _, order_pk = await make_order()
    authority = TransitionAuthority()
    await apply(session_factory, authority, order_pk, "pay_1", PaymentOutcome.SUCCESS)
    again = await apply(session_factory, authority, order_pk, "pay_1", PaymentOutcome.SUCCESS)

    assert isinstance(again, Unchanged)
    assert (await load_order(order_pk)).version == 1


async def test_failed_after_success_is_rejected(session_factory, make_order, load_order):
    _, order_pk = await make_order()
    authority = TransitionAuthority()
    await apply(session_factory, authority, order_pk, "pay_1", PaymentOutcome.SUCCESS)
    late = await apply(session_factory, authority, order_pk, "pay_1", PaymentOutcome.FAILED)

    assert isinstance(late, Conflict)
    assert "SUCCESS -> FAILED" in late.reason
    order = await load_order(order_pk)
    assert OrderStatus(order.status) is OrderStatus.CONFIRMED


async def test_failed_attempt_does_not_demote_paid_order(session_factory, make_order, load_order):
    _, order_pk = await make_order()
    authority = TransitionAuthority()
    await apply(session_factory, authority, order_pk, "pay_ok", PaymentOutcome.SUCCESS)
    result = await apply(session_factory, authority, order_pk, "pay_other", PaymentOutcome.FAILED)

    assert isinstance(result, Applied)
    assert result.payment.status == "FAILED"
    assert result.order.payment_status == "PAID"


async def test_second_settlement_names_competing_transaction(session_factory, make_order):
    _, order_pk = await make_order()
    authority = TransitionAuthority()
    await apply(session_factory, authority, order_pk, "pay_a", PaymentOutcome.SUCCESS)
    second = await apply(session_factory, authority, order_pk, "pay_b", PaymentOutcome.SUCCESS)

    assert isinstance(second, Conflict)
    assert second.competing_transaction_id == "pay_a"

    async with session_factory() as session:
        settled = (await session.execute(
            select(Payment).where(Payment.order_id == order_pk, Payment.status == PaymentStatus.SUCCESS.value)
        )).scalars().all()
    assert [p.gateway_transaction_id for p in settled] == ["pay_a"]


async def test_amount_mismatch_is_rejected(session_factory, make_order, load_order):
    _, order_pk = await make_order(amount=50000)
    async with session_factory() as session:
        async with session.begin():
            await insert_payment_if_absent(session, order_pk, "pay_1", 50000)

    result = await apply(session_factory, TransitionAuthority(), order_pk, "pay_1", PaymentOutcome.SUCCESS, 49000)

    assert isinstance(result, Conflict)
    assert result.reason.startswith("amount mismatch")
    assert OrderStatus((await load_order(order_pk)).status) is OrderStatus.PENDING


async def test_transaction_of_another_order_is_rejected(session_factory, make_order):
    _, first_pk = await make_order()
    _, second_pk = await make_order()
    authority = TransitionAuthority()
    await apply(session_factory, authority, first_pk, "pay_1", PaymentOutcome.SUCCESS)
    result = await apply(session_factory, authority, second_pk, "pay_1", PaymentOutcome.SUCCESS)

    assert isinstance(result, Conflict)
    assert result.reason == "transaction belongs to another order"


async def test_refund_cancels_confirmed_order(session_factory, make_order, load_order):
    _, order_pk = await make_order()
    authority = TransitionAuthority()
    await apply(session_factory, authority, order_pk, "pay_1", PaymentOutcome.SUCCESS)
    async with session_factory() as session:
        async with session.begin():
            result = await authority.apply_refund(session, order_id=order_pk, gateway_transaction_id="pay_1")

    assert isinstance(result, Applied)
    assert result.order.status == "CANCELLED"
    assert result.order.payment_status == "REFUNDED"
    assert result.payment.status == "REFUNDED"


async def test_refund_of_unknown_transaction_is_rejected(session_factory, make_order):
    _, order_pk = await make_order()
    async with session_factory() as session:
        async with session.begin():
            result = await TransitionAuthority().apply_refund(session, order_id=order_pk,
                                                              gateway_transaction_id="pay_missing")
    assert isinstance(result, Conflict)


async def test_missing_order_raises_not_found(session_factory):
    authority = TransitionAuthority()
    with pytest.raises(NotFound):
        await apply(session_factory, authority, 424242, "pay_1", PaymentOutcome.SUCCESS)
    with pytest.raises(NotFound):
        async with session_factory() as session:
            async with session.begin():
                await authority.cancel_order(session, order_id=424242)


async def test_success_on_cancelled_order_is_rejected(session_factory, make_order):
    _, order_pk = await make_order()
    authority = TransitionAuthority()
    async with session_factory() as session:
        async with session.begin():
            cancelled = await authority.cancel_order(session, order_id=order_pk)
    assert isinstance(cancelled, Applied)

    late = await apply(session_factory, authority, order_pk, "pay_1", PaymentOutcome.SUCCESS)
    assert isinstance(late, Conflict)
    assert late.reason == "payment settled for a cancelled order"


async def test_paid_order_cannot_be_cancelled_without_refund(session_factory, make_order):
    _, order_pk = await make_order()
    authority = TransitionAuthority()
    await apply(session_factory, authority, order_pk, "pay_1", PaymentOutcome.SUCCESS)
    async with session_factory() as session:
        async with session.begin():
            result = await authority.cancel_order(session, order_id=order_pk)

    assert isinstance(result, Conflict)
    assert result.gateway_transaction_id == "pay_1"


async def test_fulfillment_moves_forward_only(session_factory, make_order):
    _, order_pk = await make_order()
    authority = TransitionAuthority()
    await apply(session_factory, authority, order_pk, "pay_1", PaymentOutcome.SUCCESS)

    async with session_factory() as session:
        async with session.begin():
            skipped = await authority.advance_fulfillment(session, order_id=order_pk, target=OrderStatus.COMPLETED)
            started = await authority.advance_fulfillment(session, order_id=order_pk, target=OrderStatus.IN_PROGRESS)
            done = await authority.advance_fulfillment(session, order_id=order_pk, target=OrderStatus.COMPLETED,
                                                       final_amount=48000)

    assert isinstance(skipped, Conflict)
    assert isinstance(started, Applied)
    assert isinstance(done, Applied)
    assert done.order.status == "COMPLETED"
    assert done.order.final_amount == 48000

    with pytest.raises(ValidationError):
        async with session_factory() as session:
            await authority.advance_fulfillment(session, order_id=order_pk, target=OrderStatus.CANCELLED)


async def test_contention_surfaces_as_unavailable_after_three_attempts(session_factory, make_order):
    _, order_pk = await make_order()
    calls = []

    async def always_stale(session, **kwargs):
        calls.append(kwargs)
        raise StaleStateError("lost race")

    authority = TransitionAuthority(max_attempts=3, backoff_base=0.001)
    authority._apply_payment_outcome_once = always_stale

    with pytest.raises(Unavailable):
        await apply(session_factory, authority, order_pk, "pay_1", PaymentOutcome.SUCCESS)
    assert len(calls) == 3


async def test_lost_race_is_retried_against_fresh_state(session_factory, make_order):
    _, order_pk = await make_order()
    authority = TransitionAuthority(max_attempts=3, backoff_base=0.001)
    real = authority._apply_payment_outcome_once
    attempts = []

    async def flaky(session, **kwargs):
        attempts.append(1)
        if len(attempts) == 1:
            raise StaleStateError("lost race")
        return await real(session, **kwargs)

    authority._apply_payment_outcome_once = flaky
    result = await apply(session_factory, authority, order_pk, "pay_1", PaymentOutcome.SUCCESS)

    assert isinstance(result, Applied)
    assert len(attempts) == 2
