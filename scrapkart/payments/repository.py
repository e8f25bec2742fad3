from datetime import timedelta
from typing import List, Optional
from sqlalchemy import or_, select, update
from uuid6 import uuid7
from scrapkart.common.utils import now
from scrapkart.db.utils import dialect_insert
from scrapkart.orders.repository import StaleStateError
from scrapkart.schema.full_schema import Payment, PaymentStatus, RefundRequest, RefundRequestStatus


async def get_payment_by_txn(session, gateway_transaction_id: str) -> Optional[Payment]:
    stmt = (
        select(Payment)
        .where(Payment.gateway_transaction_id == gateway_transaction_id)
        .execution_options(populate_existing=True)
    )
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def get_settled_payment(session, order_id: int, exclude_payment_id: Optional[int] = None) -> Optional[Payment]:
    stmt = select(Payment).where(
        Payment.order_id == order_id,
        Payment.status == PaymentStatus.SUCCESS.value,
    ).execution_options(populate_existing=True)
    if exclude_payment_id is not None:
        stmt = stmt.where(Payment.id != exclude_payment_id)
    res = await session.execute(stmt)
    return res.scalars().first()


async def list_order_payments(session, order_id: int) -> List[Payment]:
    stmt = select(Payment).where(Payment.order_id == order_id).order_by(Payment.id)
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def insert_payment_if_absent(session, order_id: int, gateway_transaction_id: str,
                                   amount: int, currency: str = "INR") -> Optional[int]:
    """Record a PENDING attempt. Returns None when the transaction id already exists."""
    ts = now()
    stmt = dialect_insert(session, Payment).values(
        public_id=uuid7(),
        order_id=order_id,
        provider="razorpay",
        gateway_transaction_id=gateway_transaction_id,
        status=PaymentStatus.PENDING.value,
        amount=amount,
        currency=currency,
        created_at=ts,
        updated_at=ts,
    ).on_conflict_do_nothing(
        index_elements=["gateway_transaction_id"],
    ).returning(Payment.id)
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def cas_payment_status(session, payment_id: int, expected: PaymentStatus, new: PaymentStatus) -> None:
    values = {"status": new.value, "updated_at": now()}
    if new is PaymentStatus.SUCCESS:
        values["settled_at"] = now()
    elif new is PaymentStatus.REFUNDED:
        values["refunded_at"] = now()
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == expected.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount != 1:
        raise StaleStateError(f"payment {payment_id} is no longer {expected.name}")


# refund requests

async def get_refund_request(session, payment_id: int) -> Optional[RefundRequest]:
    stmt = (
        select(RefundRequest)
        .where(RefundRequest.payment_id == payment_id)
        .execution_options(populate_existing=True)
    )
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def insert_refund_request_if_absent(session, *, payment_id: int, order_id: int,
                                          amount: int, requested_by: str) -> Optional[int]:
    ts = now()
    stmt = dialect_insert(session, RefundRequest).values(
        refund_request_id=uuid7(),
        payment_id=payment_id,
        order_id=order_id,
        amount=amount,
        status=RefundRequestStatus.PENDING.value,
        requested_by=requested_by,
        attempts=1,
        claimed_at=ts,
        created_at=ts,
        updated_at=ts,
    ).on_conflict_do_nothing(
        index_elements=["payment_id"],
    ).returning(RefundRequest.id)
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def reclaim_refund_request(session, refund_id: int, *, lease_seconds: int, requested_by: str) -> bool:
    """Take over a PENDING request whose lease expired or was released.

    The refund_request_id and amount are kept so the gateway sees the same
    idempotent request.
    """
    ts = now()
    stale_before = ts - timedelta(seconds=lease_seconds)
    stmt = (
        update(RefundRequest)
        .where(
            RefundRequest.id == refund_id,
            RefundRequest.status == RefundRequestStatus.PENDING.value,
            or_(RefundRequest.claimed_at.is_(None), RefundRequest.claimed_at < stale_before),
        )
        .values(claimed_at=ts, updated_at=ts, requested_by=requested_by,
                attempts=RefundRequest.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def restart_failed_refund_request(session, refund_id: int, *, amount: int, requested_by: str) -> bool:
    """A gateway-rejected request starts over under a fresh idempotency key."""
    ts = now()
    stmt = (
        update(RefundRequest)
        .where(RefundRequest.id == refund_id, RefundRequest.status == RefundRequestStatus.FAILED.value)
        .values(refund_request_id=uuid7(), status=RefundRequestStatus.PENDING.value, claimed_at=ts,
                updated_at=ts, amount=amount, requested_by=requested_by, last_error=None,
                attempts=RefundRequest.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def complete_refund_request(session, refund_id: int, gateway_refund_id: Optional[str]) -> None:
    ts = now()
    await session.execute(
        update(RefundRequest)
        .where(RefundRequest.id == refund_id)
        .values(status=RefundRequestStatus.COMPLETED.value, gateway_refund_id=gateway_refund_id,
                claimed_at=None, completed_at=ts, updated_at=ts)
        .execution_options(synchronize_session=False)
    )


async def complete_pending_refund_for_payment(session, payment_id: int, gateway_refund_id: Optional[str]) -> None:
    ts = now()
    await session.execute(
        update(RefundRequest)
        .where(RefundRequest.payment_id == payment_id, RefundRequest.status == RefundRequestStatus.PENDING.value)
        .values(status=RefundRequestStatus.COMPLETED.value, gateway_refund_id=gateway_refund_id,
                claimed_at=None, completed_at=ts, updated_at=ts)
        .execution_options(synchronize_session=False)
    )


async def release_refund_request(session, refund_id: int, last_error: str) -> None:
    await session.execute(
        update(RefundRequest)
        .where(RefundRequest.id == refund_id, RefundRequest.status == RefundRequestStatus.PENDING.value)
        .values(claimed_at=None, last_error=last_error, updated_at=now())
        .execution_options(synchronize_session=False)
    )


async def fail_refund_request(session, refund_id: int, last_error: str) -> None:
    await session.execute(
        update(RefundRequest)
        .where(RefundRequest.id == refund_id, RefundRequest.status == RefundRequestStatus.PENDING.value)
        .values(status=RefundRequestStatus.FAILED.value, claimed_at=None, last_error=last_error, updated_at=now())
        .execution_options(synchronize_session=False)
    )
