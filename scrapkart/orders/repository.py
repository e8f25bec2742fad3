from typing import Any, Optional
from uuid import UUID
from sqlalchemy import select, update
from scrapkart.common.utils import now
from scrapkart.schema.full_schema import OrderPaymentStatus, Orders, OrderStatus


class StaleStateError(Exception):
    """A compare-and-swap write found the row already changed."""


async def create_order(session, user_id: str, estimated_amount: int, currency: str = "INR") -> Orders:
    order = Orders(
        user_id=str(user_id),
        estimated_amount=int(estimated_amount),
        currency=currency,
        status=OrderStatus.PENDING.value,
        payment_status=OrderPaymentStatus.PENDING.value,
    )
    session.add(order)
    await session.flush()
    return order


def _order_select(for_update: bool):
    stmt = select(Orders).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    return stmt


async def get_order(session, order_id: int, for_update: bool = False) -> Optional[Orders]:
    res = await session.execute(_order_select(for_update).where(Orders.id == order_id))
    return res.scalar_one_or_none()


async def get_order_by_public_id(session, public_id: Any, for_update: bool = False) -> Optional[Orders]:
    try:
        pid = public_id if isinstance(public_id, UUID) else UUID(str(public_id))
    except (TypeError, ValueError):
        return None
    res = await session.execute(_order_select(for_update).where(Orders.public_id == pid))
    return res.scalar_one_or_none()


async def cas_order_state(session, order_id: int, expected_version: int, **values) -> None:
    """Write order fields only if nobody bumped the version since it was read."""
    stmt = (
        update(Orders)
        .where(Orders.id == order_id, Orders.version == expected_version)
        .values(version=expected_version + 1, updated_at=now(), **values)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount != 1:
        raise StaleStateError(f"order {order_id} moved past version {expected_version}")
