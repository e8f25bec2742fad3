from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from scrapkart.auth.dependencies import get_principal, require_roles
from scrapkart.auth.models import ROLE_ADMIN, ROLE_DRIVER, Principal
from scrapkart.common.utils import build_success, json_ok
from scrapkart.db.dependencies import get_session, get_session_factory
from scrapkart.orders.models import FulfillmentUpdate
from scrapkart.orders.services import advance_fulfillment, cancel_unpaid_order, get_payment_state
from scrapkart.orders.utils import transition_response
from scrapkart.schema.full_schema import OrderStatus

orders_router = APIRouter()
orders_admin_router = APIRouter()


@orders_router.get("/orders/{order_id}/payment-state")
async def order_payment_state(order_id: str,
                              principal: Principal = Depends(get_principal),
                              session: AsyncSession = Depends(get_session)):
    data = await get_payment_state(session, order_id, principal)
    return json_ok(build_success(data))


# unpaid orders only; settled orders go through the admin refund action
@orders_router.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: str,
                       principal: Principal = Depends(get_principal),
                       session_factory=Depends(get_session_factory)):
    result = await cancel_unpaid_order(session_factory, order_id, principal)
    return transition_response(result)


@orders_admin_router.post("/orders/{order_id}/fulfillment")
async def update_fulfillment(order_id: str, payload: FulfillmentUpdate,
                             principal: Principal = Depends(require_roles(ROLE_ADMIN, ROLE_DRIVER)),
                             session_factory=Depends(get_session_factory)):
    result = await advance_fulfillment(session_factory, order_id, principal,
                                       OrderStatus[payload.status], payload.final_amount)
    return transition_response(result)
