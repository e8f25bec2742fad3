from typing import Optional
from sqlalchemy.exc import IntegrityError
from scrapkart.common.custom_exceptions import NotFound, Unavailable, ValidationError
from scrapkart.common.retries import compute_backoff, sleep_with_jitter
from scrapkart.common.utils import now
from scrapkart.orders.repository import StaleStateError, cas_order_state, get_order
from scrapkart.payments.repository import cas_payment_status, get_payment_by_txn, get_settled_payment, insert_payment_if_absent
from scrapkart.reconciliation.constants import TRANSITION_BACKOFF_BASE, TRANSITION_MAX_ATTEMPTS, logger
from scrapkart.reconciliation.outcomes import (
    Applied, Conflict, OrderSnapshot, PaymentOutcome, PaymentSnapshot, TransitionResult, Unchanged,
)
from scrapkart.schema.full_schema import OrderPaymentStatus, OrderStatus, Orders, PaymentStatus

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED},
    OrderStatus.IN_PROGRESS: {OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.SUCCESS, PaymentStatus.FAILED},
    PaymentStatus.SUCCESS: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}

OUTCOME_PAYMENT_STATUS = {
    PaymentOutcome.SUCCESS: PaymentStatus.SUCCESS,
    PaymentOutcome.FAILED: PaymentStatus.FAILED,
    PaymentOutcome.REFUNDED: PaymentStatus.REFUNDED,
}

FULFILLMENT_TARGETS = (OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED)


def can_transition_order(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS[current]


def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS[current]


class TransitionAuthority:
    """Sole writer of order and payment status.

    Every operation runs in a savepoint of the caller's transaction, locks the
    order row, validates against fresh state and writes with compare-and-swap.
    A lost race (stale CAS or unique violation) rolls the savepoint back and the
    whole check is repeated; after `max_attempts` the caller gets Unavailable.
    Business rejections come back as Conflict values and are never retried.
    """

    def __init__(self, max_attempts: int = TRANSITION_MAX_ATTEMPTS, backoff_base: float = TRANSITION_BACKOFF_BASE):
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = backoff_base

    async def apply_payment_outcome(self, session, *, order_id: int, gateway_transaction_id: str,
                                    outcome: PaymentOutcome, amount: Optional[int] = None,
                                    currency: str = "INR") -> TransitionResult:
        return await self._with_retries(
            "apply_payment_outcome", self._apply_payment_outcome_once, session,
            order_id=order_id, gateway_transaction_id=gateway_transaction_id,
            outcome=outcome, amount=amount, currency=currency,
        )

    async def apply_refund(self, session, *, order_id: int, gateway_transaction_id: str) -> TransitionResult:
        return await self.apply_payment_outcome(
            session, order_id=order_id, gateway_transaction_id=gateway_transaction_id,
            outcome=PaymentOutcome.REFUNDED,
        )

    async def cancel_order(self, session, *, order_id: int) -> TransitionResult:
        return await self._with_retries("cancel_order", self._cancel_order_once, session, order_id=order_id)

    async def advance_fulfillment(self, session, *, order_id: int, target: OrderStatus,
                                  final_amount: Optional[int] = None) -> TransitionResult:
        if target not in FULFILLMENT_TARGETS:
            raise ValidationError(f"fulfillment cannot move an order to {target.name}")
        if final_amount is not None and final_amount < 0:
            raise ValidationError("final_amount must not be negative")
        return await self._with_retries(
            "advance_fulfillment", self._advance_fulfillment_once, session,
            order_id=order_id, target=target, final_amount=final_amount,
        )

    async def _with_retries(self, operation: str, fn, session, **kwargs) -> TransitionResult:
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with session.begin_nested():
                    return await fn(session, **kwargs)
            except (StaleStateError, IntegrityError) as exc:
                if attempt == self.max_attempts:
                    logger.error("transition.retry_exhausted",
                                 extra={"operation": operation, "attempts": attempt, "error": str(exc)})
                    raise Unavailable("order state is contended, retry later") from exc
                delay = compute_backoff(attempt, self.backoff_base)
                logger.info("transition.retry",
                            extra={"operation": operation, "attempt": attempt, "delay": delay, "error": str(exc)})
                await sleep_with_jitter(delay, 0.15)
        raise Unavailable("order state is contended, retry later")

    async def _apply_payment_outcome_once(self, session, *, order_id: int, gateway_transaction_id: str,
                                          outcome: PaymentOutcome, amount: Optional[int],
                                          currency: str) -> TransitionResult:
        order = await get_order(session, order_id, for_update=True)
        if order is None:
            raise NotFound("order not found")

        payment = await get_payment_by_txn(session, gateway_transaction_id)
        if payment is None:
            if outcome is PaymentOutcome.REFUNDED:
                return Conflict(reason="refund for unknown transaction", gateway_transaction_id=gateway_transaction_id,
                                order=OrderSnapshot.from_row(order))
            attempt_amount = amount if amount is not None else _payable_amount(order)
            created = await insert_payment_if_absent(session, order.id, gateway_transaction_id, attempt_amount, currency)
            if created is None:
                raise StaleStateError(f"payment {gateway_transaction_id} created concurrently")
            payment = await get_payment_by_txn(session, gateway_transaction_id)

        if payment.order_id != order.id:
            return Conflict(reason="transaction belongs to another order", gateway_transaction_id=gateway_transaction_id,
                            order=OrderSnapshot.from_row(order), payment=PaymentSnapshot.from_row(payment))

        current = PaymentStatus(payment.status)
        target = OUTCOME_PAYMENT_STATUS[outcome]
        if current is target:
            return Unchanged(order=OrderSnapshot.from_row(order), payment=PaymentSnapshot.from_row(payment))

        def conflict(reason: str, competing: Optional[str] = None) -> Conflict:
            return Conflict(reason=reason, gateway_transaction_id=gateway_transaction_id,
                            competing_transaction_id=competing,
                            order=OrderSnapshot.from_row(order), payment=PaymentSnapshot.from_row(payment))

        if not can_transition_payment(current, target):
            return conflict(f"illegal payment transition {current.name} -> {target.name}")

        order_status = OrderStatus(order.status)
        order_values = {}

        if outcome is PaymentOutcome.SUCCESS:
            if amount is not None and amount != payment.amount:
                return conflict(f"amount mismatch: expected {payment.amount}, got {amount}")
            other = await get_settled_payment(session, order.id, exclude_payment_id=payment.id)
            if other is not None:
                return conflict("order already settled by another transaction", other.gateway_transaction_id)
            if order_status is OrderStatus.CANCELLED:
                return conflict("payment settled for a cancelled order")
            order_values["payment_status"] = OrderPaymentStatus.PAID.value
            if order_status is OrderStatus.PENDING:
                order_values["status"] = OrderStatus.CONFIRMED.value
                order_values["confirmed_at"] = now()

        elif outcome is PaymentOutcome.FAILED:
            # a failed attempt never demotes a paid or refunded order
            if OrderPaymentStatus(order.payment_status) in (OrderPaymentStatus.PENDING, OrderPaymentStatus.FAILED):
                order_values["payment_status"] = OrderPaymentStatus.FAILED.value

        else:
            if not can_transition_order(order_status, OrderStatus.CANCELLED):
                return conflict(f"order in {order_status.name} cannot be cancelled for refund")
            order_values["status"] = OrderStatus.CANCELLED.value
            order_values["payment_status"] = OrderPaymentStatus.REFUNDED.value
            order_values["cancelled_at"] = now()

        await cas_payment_status(session, payment.id, current, target)
        if order_values and _changes(order, order_values):
            await cas_order_state(session, order.id, order.version, **order_values)

        fresh_order = await get_order(session, order.id)
        fresh_payment = await get_payment_by_txn(session, gateway_transaction_id)
        logger.info("transition.payment_applied", extra={
            "order_public_id": str(order.public_id),
            "gateway_transaction_id": gateway_transaction_id,
            "payment_status": f"{current.name}->{target.name}",
            "order_status": f"{order_status.name}->{OrderStatus(fresh_order.status).name}",
        })
        return Applied(
            order=OrderSnapshot.from_row(fresh_order),
            payment=PaymentSnapshot.from_row(fresh_payment),
            previous_order_status=order_status.name,
            previous_payment_status=current.name,
        )

    async def _cancel_order_once(self, session, *, order_id: int) -> TransitionResult:
        order = await get_order(session, order_id, for_update=True)
        if order is None:
            raise NotFound("order not found")
        status = OrderStatus(order.status)
        if status is OrderStatus.CANCELLED:
            return Unchanged(order=OrderSnapshot.from_row(order))
        if not can_transition_order(status, OrderStatus.CANCELLED):
            return Conflict(reason=f"order in {status.name} cannot be cancelled", order=OrderSnapshot.from_row(order))

        settled = await get_settled_payment(session, order.id)
        if settled is not None or OrderPaymentStatus(order.payment_status) is OrderPaymentStatus.PAID:
            return Conflict(
                reason="order is paid; cancel through a refund",
                gateway_transaction_id=settled.gateway_transaction_id if settled else None,
                order=OrderSnapshot.from_row(order),
            )

        await cas_order_state(session, order.id, order.version,
                              status=OrderStatus.CANCELLED.value, cancelled_at=now())
        fresh = await get_order(session, order.id)
        logger.info("transition.order_cancelled", extra={"order_public_id": str(order.public_id)})
        return Applied(order=OrderSnapshot.from_row(fresh), previous_order_status=status.name)

    async def _advance_fulfillment_once(self, session, *, order_id: int, target: OrderStatus,
                                        final_amount: Optional[int]) -> TransitionResult:
        order = await get_order(session, order_id, for_update=True)
        if order is None:
            raise NotFound("order not found")
        status = OrderStatus(order.status)
        if status is target:
            return Unchanged(order=OrderSnapshot.from_row(order))
        if not can_transition_order(status, target):
            return Conflict(reason=f"illegal order transition {status.name} -> {target.name}",
                            order=OrderSnapshot.from_row(order))

        values = {"status": target.value}
        if target is OrderStatus.COMPLETED:
            values["completed_at"] = now()
        if final_amount is not None:
            values["final_amount"] = final_amount

        await cas_order_state(session, order.id, order.version, **values)
        fresh = await get_order(session, order.id)
        logger.info("transition.fulfillment_advanced", extra={
            "order_public_id": str(order.public_id),
            "order_status": f"{status.name}->{target.name}",
        })
        return Applied(order=OrderSnapshot.from_row(fresh), previous_order_status=status.name)


def _payable_amount(order: Orders) -> int:
    return order.final_amount if order.final_amount is not None else order.estimated_amount


def _changes(order: Orders, values: dict) -> bool:
    return any(getattr(order, k) != v for k, v in values.items())
