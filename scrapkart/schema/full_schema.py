import enum
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Index, Integer, Text, UniqueConstraint, Uuid, text
from sqlmodel import Column, Field, SQLModel, String
from uuid6 import uuid7
from scrapkart.common.utils import now


class OrderStatus(enum.IntEnum):
    PENDING = 0
    CONFIRMED = 10
    IN_PROGRESS = 20
    COMPLETED = 30
    CANCELLED = 40


class OrderPaymentStatus(enum.IntEnum):
    PENDING = 0
    PAID = 10
    FAILED = 20
    REFUNDED = 30


class PaymentStatus(enum.IntEnum):
    PENDING = 0
    SUCCESS = 10
    FAILED = 20
    REFUNDED = 30


class RefundRequestStatus(enum.IntEnum):
    PENDING = 0
    COMPLETED = 10
    FAILED = 20


class OutboxEventStatus(enum.IntEnum):
    PENDING = 0
    SENT = 10
    FAILED = 20


# user_id is the identity provider's subject; users live outside this service
class Orders(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: uuid.UUID = Field(default_factory=uuid7, sa_column=Column(Uuid(as_uuid=True), unique=True, index=True, nullable=False))
    user_id: str = Field(sa_column=Column(String(64), nullable=False, index=True))
    status: int = Field(default=OrderStatus.PENDING.value, sa_column=Column(Integer, nullable=False, index=True))
    payment_status: int = Field(default=OrderPaymentStatus.PENDING.value, sa_column=Column(Integer, nullable=False, index=True))
    estimated_amount: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))  # paise
    final_amount: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    currency: str = Field(default="INR", sa_column=Column(String(8), nullable=False))
    version: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now, onupdate=now))
    confirmed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    cancelled_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))


# Order --> Payment (1:many), at most one SUCCESS row per order
class Payment(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: uuid.UUID = Field(default_factory=uuid7, sa_column=Column(Uuid(as_uuid=True), unique=True, index=True, nullable=False))
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True))
    provider: str = Field(default="razorpay", sa_column=Column(String(64), nullable=False))
    gateway_transaction_id: str = Field(sa_column=Column(String(128), nullable=False, unique=True))
    status: int = Field(default=PaymentStatus.PENDING.value, sa_column=Column(Integer, nullable=False, index=True))
    amount: int = Field(sa_column=Column(BigInteger, nullable=False))
    currency: str = Field(default="INR", sa_column=Column(String(8), nullable=False))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now, onupdate=now))
    settled_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    refunded_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))

    __table_args__ = (
        Index(
            "uq_payment_order_settled",
            "order_id",
            unique=True,
            postgresql_where=text(f"status = {PaymentStatus.SUCCESS.value}"),
            sqlite_where=text(f"status = {PaymentStatus.SUCCESS.value}"),
        ),
    )


class ProcessedEvent(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    event_key: str = Field(sa_column=Column(String(255), nullable=False, unique=True))
    source: str = Field(sa_column=Column(String(32), nullable=False))
    order_id: Optional[int] = Field(default=None, sa_column=Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True))
    outcome_summary: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    first_seen_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))


# one refund request per settled payment; refund_request_id doubles as the gateway idempotency key
class RefundRequest(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    refund_request_id: uuid.UUID = Field(default_factory=uuid7, sa_column=Column(Uuid(as_uuid=True), unique=True, nullable=False))
    payment_id: int = Field(sa_column=Column(Integer, ForeignKey("payment.id", ondelete="RESTRICT"), nullable=False, unique=True))
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True))
    amount: int = Field(sa_column=Column(BigInteger, nullable=False))
    status: int = Field(default=RefundRequestStatus.PENDING.value, sa_column=Column(Integer, nullable=False))
    requested_by: str = Field(sa_column=Column(String(64), nullable=False))
    attempts: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    claimed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    gateway_refund_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now, onupdate=now))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))


class OutboxEvent(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    topic: str = Field(sa_column=Column(String(128), nullable=False, index=True))
    payload: dict = Field(sa_column=Column(JSON, nullable=False))
    aggregate_type: str = Field(sa_column=Column(String(64), nullable=False))
    aggregate_id: int = Field(sa_column=Column(Integer, nullable=False))
    status: int = Field(default=OutboxEventStatus.PENDING.value, sa_column=Column(Integer, nullable=False, index=True))
    attempts: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    next_retry_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    locked_until: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    sent_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))

    __table_args__ = (
        UniqueConstraint("aggregate_type", "aggregate_id", "topic", name="uq_outboxevent_aggid_type_topic"),
    )


# operator-facing audit trail for rejected outcomes
class ReconciliationConflict(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: Optional[int] = Field(default=None, sa_column=Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True))
    event_key: Optional[str] = Field(default=None, sa_column=Column(String(255), nullable=True, index=True))
    source: str = Field(sa_column=Column(String(32), nullable=False))
    outcome: str = Field(sa_column=Column(String(16), nullable=False))
    gateway_transaction_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, index=True))
    competing_transaction_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    reason: str = Field(sa_column=Column(String(255), nullable=False))
    details: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    resolved_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
