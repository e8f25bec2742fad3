import hashlib
from dataclasses import dataclass
from typing import Any, Dict, Optional

from scrapkart.common.custom_exceptions import ValidationError
from scrapkart.reconciliation.constants import RZPAY_EVENT_OUTCOMES
from scrapkart.reconciliation.outcomes import EventSource, PaymentOutcome

MAX_KEY_LENGTH = 255
MAX_TXN_LENGTH = 128


def derive_event_key(source: EventSource, gateway_transaction_id: str, outcome: PaymentOutcome) -> str:
    """Deterministic key for deliveries that carry no gateway event id."""
    digest = hashlib.sha256(f"{source.value}|{gateway_transaction_id}|{outcome.value}".encode()).hexdigest()
    return f"{source.value}:{digest}"


def webhook_event_key(event_id: Optional[str], gateway_transaction_id: str, outcome: PaymentOutcome) -> str:
    if event_id:
        return f"rzp:{event_id}"
    return derive_event_key(EventSource.WEBHOOK, gateway_transaction_id, outcome)


@dataclass(frozen=True)
class ParsedWebhook:
    event_name: str
    outcome: Optional[PaymentOutcome]
    gateway_transaction_id: Optional[str] = None
    order_reference: Optional[str] = None
    amount: Optional[int] = None
    currency: str = "INR"
    gateway_refund_id: Optional[str] = None


def _entity(payload: Dict[str, Any], name: str) -> Dict[str, Any]:
    body = payload.get("payload") or {}
    if not isinstance(body, dict):
        raise ValidationError("webhook payload body must be an object")
    section = body.get(name) or {}
    if not isinstance(section, dict):
        raise ValidationError(f"webhook {name} section must be an object")
    entity = section.get("entity") or {}
    if not isinstance(entity, dict):
        raise ValidationError(f"webhook {name} entity must be an object")
    return entity


def _order_reference(entity: Dict[str, Any]) -> Optional[str]:
    notes = entity.get("notes") or {}
    if not isinstance(notes, dict):
        return None
    ref = notes.get("order_reference") or notes.get("order_public_id")
    return ref if isinstance(ref, str) else None


def _currency(value: Any) -> str:
    if value is None:
        return "INR"
    if not isinstance(value, str):
        raise ValidationError("currency must be a string")
    return value


def _amount(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("amount must be an integer number of paise")
    return value


def parse_razorpay_webhook(payload: Any) -> ParsedWebhook:
    """Pull the fields the engine needs out of a Razorpay event envelope.

    Events the engine does not act on come back with outcome None.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("event"), str):
        raise ValidationError("webhook payload has no event name")

    event_name = payload["event"]
    outcome_name = RZPAY_EVENT_OUTCOMES.get(event_name)
    if outcome_name is None:
        return ParsedWebhook(event_name=event_name, outcome=None)
    outcome = PaymentOutcome(outcome_name)

    payment = _entity(payload, "payment")
    if outcome is PaymentOutcome.REFUNDED:
        refund = _entity(payload, "refund")
        txn = refund.get("payment_id") or payment.get("id")
        return ParsedWebhook(
            event_name=event_name,
            outcome=outcome,
            gateway_transaction_id=txn,
            order_reference=_order_reference(refund) or _order_reference(payment),
            amount=_amount(refund.get("amount")),
            currency=_currency(refund.get("currency")),
            gateway_refund_id=refund.get("id") if isinstance(refund.get("id"), str) else None,
        )

    return ParsedWebhook(
        event_name=event_name,
        outcome=outcome,
        gateway_transaction_id=payment.get("id"),
        order_reference=_order_reference(payment) or _order_reference(_entity(payload, "order")),
        amount=_amount(payment.get("amount")),
        currency=_currency(payment.get("currency")),
    )


def validate_event_fields(event_key: Optional[str], gateway_transaction_id: Optional[str],
                          amount: Optional[int], order_id: Optional[str], outcome: PaymentOutcome) -> None:
    if not event_key or len(event_key) > MAX_KEY_LENGTH:
        raise ValidationError("event key missing or too long")
    if not isinstance(gateway_transaction_id, str) or not gateway_transaction_id.strip():
        raise ValidationError("gateway transaction id is required")
    if len(gateway_transaction_id) > MAX_TXN_LENGTH:
        raise ValidationError("gateway transaction id too long")
    if amount is not None and (isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0):
        raise ValidationError("amount must be a positive integer number of paise")
    if not order_id and outcome is not PaymentOutcome.REFUNDED:
        raise ValidationError("order reference is required")
