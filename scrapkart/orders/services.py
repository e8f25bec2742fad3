from dataclasses import asdict
from typing import Any, Callable, Dict, Optional

from scrapkart.auth.models import ROLE_ADMIN, ROLE_DRIVER, ROLE_SUPPORT, Principal
from scrapkart.common.custom_exceptions import NotFound, PermissionDenied
from scrapkart.common.retries import retry_with_db_circuit
from scrapkart.common.utils import short_ref
from scrapkart.notifications.constants import TOPIC_ORDER_CANCELLED
from scrapkart.notifications.repository import emit_outbox_event
from scrapkart.orders.constants import logger
from scrapkart.orders.repository import get_order_by_public_id
from scrapkart.payments.repository import list_order_payments
from scrapkart.reconciliation.outcomes import Applied, OrderSnapshot, PaymentSnapshot, TransitionResult
from scrapkart.reconciliation.transitions import TransitionAuthority
from scrapkart.schema.full_schema import OrderStatus

FULFILLMENT_ROLES = (ROLE_ADMIN, ROLE_DRIVER)
VIEW_ANY_ROLES = (ROLE_ADMIN, ROLE_SUPPORT)


async def _load_order(session, order_id: str, principal: Principal, *, for_update: bool = False,
                      any_roles=(ROLE_ADMIN,)):
    order = await get_order_by_public_id(session, order_id, for_update=for_update)
    # non-owners get the same answer as a missing order
    if order is None or not (principal.owns(order.user_id) or principal.has_role(*any_roles)):
        raise NotFound("order not found")
    return order


@retry_with_db_circuit()
async def cancel_unpaid_order(session_factory: Callable, order_id: str, principal: Principal,
                              authority: Optional[TransitionAuthority] = None) -> TransitionResult:
    authority = authority or TransitionAuthority()
    async with session_factory() as session:
        async with session.begin():
            order = await _load_order(session, order_id, principal, for_update=True)
            result = await authority.cancel_order(session, order_id=order.id)
            if isinstance(result, Applied):
                await emit_outbox_event(
                    session, TOPIC_ORDER_CANCELLED,
                    {"order_id": result.order.order_id, "order_ref": short_ref(result.order.order_id),
                     "user_id": result.order.user_id, "order_status": result.order.status,
                     "cancelled_by": principal.user_id},
                    aggregate_type="order", aggregate_id=order.id,
                )
    logger.info("order.cancel", extra={"order_public_id": order_id, "user_id": principal.user_id,
                                       "result": type(result).__name__})
    return result


@retry_with_db_circuit()
async def advance_fulfillment(session_factory: Callable, order_id: str, principal: Principal,
                              target: OrderStatus, final_amount: Optional[int] = None,
                              authority: Optional[TransitionAuthority] = None) -> TransitionResult:
    if not principal.has_role(*FULFILLMENT_ROLES):
        raise PermissionDenied("fulfillment updates require an operator role")
    authority = authority or TransitionAuthority()
    async with session_factory() as session:
        async with session.begin():
            order = await get_order_by_public_id(session, order_id, for_update=True)
            if order is None:
                raise NotFound("order not found")
            result = await authority.advance_fulfillment(session, order_id=order.id, target=target,
                                                         final_amount=final_amount)
    logger.info("order.fulfillment", extra={"order_public_id": order_id, "user_id": principal.user_id,
                                            "target": target.name, "result": type(result).__name__})
    return result


async def get_payment_state(session, order_id: str, principal: Principal) -> Dict[str, Any]:
    order = await _load_order(session, order_id, principal, any_roles=VIEW_ANY_ROLES)
    payments = await list_order_payments(session, order.id)
    return {
        "order": asdict(OrderSnapshot.from_row(order)),
        "payments": [asdict(PaymentSnapshot.from_row(p)) for p in payments],
    }
