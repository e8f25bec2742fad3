from dataclasses import dataclass
from typing import Callable, Optional

from scrapkart.auth.models import GATEWAY_PRINCIPAL, Principal
from scrapkart.common.custom_exceptions import AuthenticationError, PermissionDenied, ValidationError
from scrapkart.common.retries import retry_with_db_circuit
from scrapkart.common.utils import short_ref
from scrapkart.notifications.constants import TOPIC_ORDER_CONFIRMED, TOPIC_ORDER_REFUNDED, TOPIC_PAYMENT_FAILED
from scrapkart.notifications.repository import emit_outbox_event
from scrapkart.orders.repository import get_order, get_order_by_public_id
from scrapkart.payments.repository import complete_pending_refund_for_payment, get_payment_by_txn
from scrapkart.reconciliation.constants import CLIENT_CALLBACK_SETTLES, logger
from scrapkart.reconciliation.idempotency import IdempotencyGuard
from scrapkart.reconciliation.outcomes import (
    AckStatus, AlreadyProcessed, Applied, Conflict, EventAck, EventSource, PaymentOutcome, TransitionResult,
)
from scrapkart.reconciliation.repository import record_conflict
from scrapkart.reconciliation.transitions import TransitionAuthority
from scrapkart.reconciliation.utils import parse_razorpay_webhook, validate_event_fields, webhook_event_key
from scrapkart.schema.full_schema import Orders


@dataclass(frozen=True)
class PaymentEvent:
    source: EventSource
    event_key: str
    order_id: Optional[str]
    gateway_transaction_id: str
    outcome: PaymentOutcome
    principal: Principal
    amount: Optional[int] = None
    currency: str = "INR"
    signature: Optional[str] = None
    raw_body: Optional[bytes] = None
    gateway_refund_id: Optional[str] = None


class ReconciliationCoordinator:
    """Runs one inbound payment event end to end.

    Guard admission, the state transition, the cached outcome, the queued
    notification and any conflict audit row commit in a single transaction.
    """

    def __init__(
        self,
        session_factory: Callable,
        gateway,
        *,
        guard: Optional[IdempotencyGuard] = None,
        authority: Optional[TransitionAuthority] = None,
        client_callback_settles: bool = CLIENT_CALLBACK_SETTLES,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.guard = guard or IdempotencyGuard()
        self.authority = authority or TransitionAuthority()
        self.client_callback_settles = client_callback_settles

    async def handle_event(self, event: PaymentEvent) -> EventAck:
        if event.source is EventSource.WEBHOOK:
            self._authenticate_webhook(event.raw_body or b"", event.signature)
        return await self._dispatch(event)

    async def handle_webhook(self, body: bytes, signature: Optional[str], event_id: Optional[str],
                             payload) -> EventAck:
        """Gateway entry point: the signature is checked before the payload is trusted."""
        self._authenticate_webhook(body, signature)
        parsed = parse_razorpay_webhook(payload)
        if parsed.outcome is None:
            logger.info("reconcile.webhook.ignored", extra={"event_name": parsed.event_name, "event_id": event_id})
            return EventAck(status=AckStatus.IGNORED, reason=f"event {parsed.event_name} not handled")

        event = PaymentEvent(
            source=EventSource.WEBHOOK,
            event_key=webhook_event_key(event_id, parsed.gateway_transaction_id or "", parsed.outcome),
            order_id=parsed.order_reference,
            gateway_transaction_id=parsed.gateway_transaction_id,
            outcome=parsed.outcome,
            principal=GATEWAY_PRINCIPAL,
            amount=parsed.amount,
            currency=parsed.currency,
            signature=signature,
            raw_body=body,
            gateway_refund_id=parsed.gateway_refund_id,
        )
        return await self._dispatch(event)

    def _authenticate_webhook(self, body: bytes, signature: Optional[str]) -> None:
        if not self.gateway.verify_webhook_signature(body, signature):
            logger.warning("reconcile.webhook.invalid_signature",
                           extra={"security": True, "signature_present": bool(signature)})
            raise AuthenticationError("invalid webhook signature")

    async def _dispatch(self, event: PaymentEvent) -> EventAck:
        validate_event_fields(event.event_key, event.gateway_transaction_id, event.amount,
                              event.order_id, event.outcome)
        if event.source is EventSource.CLIENT_CALLBACK and event.outcome is PaymentOutcome.REFUNDED:
            raise ValidationError("clients cannot report refunds")

        ack = await self._reconcile(event)

        extra = {
            "event_key": event.event_key,
            "source": event.source.value,
            "gateway_transaction_id": event.gateway_transaction_id,
            "outcome": event.outcome.value,
            "ack": ack.status.value,
            "replayed": ack.replayed,
        }
        if ack.status is AckStatus.REJECTED:
            logger.warning("reconcile.conflict", extra={**extra, "reason": ack.reason,
                                                        "competing_transaction_id": ack.competing_transaction_id})
        else:
            logger.info("reconcile.event_handled", extra=extra)
        return ack

    @retry_with_db_circuit()
    async def _reconcile(self, event: PaymentEvent) -> EventAck:
        async with self.session_factory() as session:
            async with session.begin():
                order = await self._resolve_order(session, event)

                if event.source is EventSource.CLIENT_CALLBACK:
                    if not (event.principal.owns(order.user_id) or event.principal.is_admin):
                        logger.warning("reconcile.callback.not_owner",
                                       extra={"security": True, "user_id": event.principal.user_id,
                                              "order_public_id": str(order.public_id)})
                        raise PermissionDenied("order does not belong to caller")
                    if event.outcome is PaymentOutcome.SUCCESS and not self.client_callback_settles:
                        return EventAck(status=AckStatus.DEFERRED, event_key=event.event_key,
                                        reason="awaiting gateway confirmation")

                admission = await self.guard.admit(session, event.event_key, event.source, order.id)
                if isinstance(admission, AlreadyProcessed):
                    return EventAck.from_cached(admission)

                result = await self.authority.apply_payment_outcome(
                    session,
                    order_id=order.id,
                    gateway_transaction_id=event.gateway_transaction_id,
                    outcome=event.outcome,
                    amount=event.amount if event.outcome is not PaymentOutcome.REFUNDED else None,
                    currency=event.currency,
                )
                await self._apply_side_effects(session, event, order, result)

                ack = EventAck.from_transition(event.event_key, result)
                await self.guard.record_outcome(session, event.event_key, ack.to_dict())
        return ack

    async def _resolve_order(self, session, event: PaymentEvent) -> Orders:
        if event.order_id:
            order = await get_order_by_public_id(session, event.order_id, for_update=True)
            if order is None:
                raise ValidationError("unknown order reference", details={"order_id": event.order_id})
            return order

        payment = await get_payment_by_txn(session, event.gateway_transaction_id)
        if payment is None:
            raise ValidationError("unknown transaction",
                                  details={"gateway_transaction_id": event.gateway_transaction_id})
        return await get_order(session, payment.order_id, for_update=True)

    async def _apply_side_effects(self, session, event: PaymentEvent, order: Orders,
                                  result: TransitionResult) -> None:
        if isinstance(result, Conflict):
            await record_conflict(
                session,
                source=event.source.value,
                outcome=event.outcome.value,
                reason=result.reason,
                order_id=order.id,
                event_key=event.event_key,
                gateway_transaction_id=event.gateway_transaction_id,
                competing_transaction_id=result.competing_transaction_id,
                details={"amount": event.amount, "actor": event.principal.user_id},
            )
            return
        if not isinstance(result, Applied):
            return

        payload = {
            "order_id": result.order.order_id,
            "order_ref": short_ref(result.order.order_id),
            "user_id": result.order.user_id,
            "gateway_transaction_id": event.gateway_transaction_id,
            "amount": result.payment.amount if result.payment else None,
            "order_status": result.order.status,
            "payment_status": result.order.payment_status,
        }

        if event.outcome is PaymentOutcome.SUCCESS:
            await emit_outbox_event(session, TOPIC_ORDER_CONFIRMED, payload,
                                    aggregate_type="order", aggregate_id=order.id)
        elif event.outcome is PaymentOutcome.FAILED:
            if result.order.payment_status == "FAILED":
                payment = await get_payment_by_txn(session, event.gateway_transaction_id)
                await emit_outbox_event(session, TOPIC_PAYMENT_FAILED, payload,
                                        aggregate_type="payment", aggregate_id=payment.id)
        else:
            payment = await get_payment_by_txn(session, event.gateway_transaction_id)
            await complete_pending_refund_for_payment(session, payment.id, event.gateway_refund_id)
            await emit_outbox_event(session, TOPIC_ORDER_REFUNDED, payload,
                                    aggregate_type="order", aggregate_id=order.id)
