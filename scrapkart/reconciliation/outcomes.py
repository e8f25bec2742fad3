"""Typed results returned by the guard, the transition authority and the coordinators.

Business outcomes (already processed, conflict, refund in progress) are values;
only infrastructure faults are raised as exceptions.
"""
import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Union

from scrapkart.schema.full_schema import OrderPaymentStatus, OrderStatus, Orders, Payment, PaymentStatus


class EventSource(str, enum.Enum):
    WEBHOOK = "webhook"
    CLIENT_CALLBACK = "client_callback"
    OPERATOR = "operator"


class PaymentOutcome(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


@dataclass(frozen=True)
class OrderSnapshot:
    order_id: str
    user_id: str
    status: str
    payment_status: str
    estimated_amount: int
    final_amount: Optional[int]
    currency: str
    version: int

    @classmethod
    def from_row(cls, order: Orders) -> "OrderSnapshot":
        return cls(
            order_id=str(order.public_id),
            user_id=order.user_id,
            status=OrderStatus(order.status).name,
            payment_status=OrderPaymentStatus(order.payment_status).name,
            estimated_amount=order.estimated_amount,
            final_amount=order.final_amount,
            currency=order.currency,
            version=order.version,
        )


@dataclass(frozen=True)
class PaymentSnapshot:
    payment_id: str
    gateway_transaction_id: str
    status: str
    amount: int
    currency: str

    @classmethod
    def from_row(cls, payment: Payment) -> "PaymentSnapshot":
        return cls(
            payment_id=str(payment.public_id),
            gateway_transaction_id=payment.gateway_transaction_id,
            status=PaymentStatus(payment.status).name,
            amount=payment.amount,
            currency=payment.currency,
        )


# -- idempotency guard -------------------------------------------------------

@dataclass(frozen=True)
class Admitted:
    event_key: str


@dataclass(frozen=True)
class AlreadyProcessed:
    event_key: str
    cached_outcome: Dict[str, Any]


Admission = Union[Admitted, AlreadyProcessed]


# -- transition authority ----------------------------------------------------

@dataclass(frozen=True)
class Applied:
    order: OrderSnapshot
    payment: Optional[PaymentSnapshot] = None
    previous_order_status: Optional[str] = None
    previous_payment_status: Optional[str] = None


@dataclass(frozen=True)
class Unchanged:
    """The target state already holds; nothing was written."""
    order: OrderSnapshot
    payment: Optional[PaymentSnapshot] = None


@dataclass(frozen=True)
class Conflict:
    reason: str
    gateway_transaction_id: Optional[str] = None
    competing_transaction_id: Optional[str] = None
    order: Optional[OrderSnapshot] = None
    payment: Optional[PaymentSnapshot] = None


TransitionResult = Union[Applied, Unchanged, Conflict]


# -- coordinator acks --------------------------------------------------------

class AckStatus(str, enum.Enum):
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    REJECTED = "rejected"
    DEFERRED = "deferred"
    IGNORED = "ignored"


@dataclass(frozen=True)
class EventAck:
    status: AckStatus
    event_key: Optional[str] = None
    reason: Optional[str] = None
    order: Optional[Dict[str, Any]] = None
    payment: Optional[Dict[str, Any]] = None
    competing_transaction_id: Optional[str] = None
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_transition(cls, event_key: str, result: TransitionResult) -> "EventAck":
        if isinstance(result, Conflict):
            return cls(
                status=AckStatus.REJECTED,
                event_key=event_key,
                reason=result.reason,
                order=asdict(result.order) if result.order else None,
                payment=asdict(result.payment) if result.payment else None,
                competing_transaction_id=result.competing_transaction_id,
            )
        status = AckStatus.APPLIED if isinstance(result, Applied) else AckStatus.ALREADY_PROCESSED
        return cls(
            status=status,
            event_key=event_key,
            order=asdict(result.order),
            payment=asdict(result.payment) if result.payment else None,
        )

    @classmethod
    def from_cached(cls, admission: AlreadyProcessed) -> "EventAck":
        cached = admission.cached_outcome
        # a cached reject keeps answering reject; anything else is a no-op replay
        status = AckStatus.REJECTED if cached.get("status") == AckStatus.REJECTED.value else AckStatus.ALREADY_PROCESSED
        return cls(
            status=status,
            event_key=admission.event_key,
            reason=cached.get("reason"),
            order=cached.get("order"),
            payment=cached.get("payment"),
            competing_transaction_id=cached.get("competing_transaction_id"),
            replayed=True,
        )


# -- refunds -----------------------------------------------------------------

class RefundStatus(str, enum.Enum):
    REFUNDED = "refunded"
    ALREADY_REFUNDED = "already_refunded"
    REJECTED = "rejected"


@dataclass(frozen=True)
class RefundResult:
    status: RefundStatus
    order_id: str
    refund_request_id: Optional[str] = None
    gateway_refund_id: Optional[str] = None
    amount: Optional[int] = None
    reason: Optional[str] = None
    order: Optional[Dict[str, Any]] = field(default=None)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data
