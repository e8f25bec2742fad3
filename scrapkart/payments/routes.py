from typing import Optional
from fastapi import APIRouter, Body, Depends, status

from scrapkart.auth.dependencies import require_roles
from scrapkart.auth.models import Principal
from scrapkart.common.utils import build_error, build_success, json_error, json_ok
from scrapkart.payments.constants import REFUND_ROLES
from scrapkart.payments.dependencies import get_refund_coordinator
from scrapkart.payments.models import RefundRequestBody
from scrapkart.payments.refunds import RefundCoordinator
from scrapkart.reconciliation.outcomes import RefundStatus

payments_admin_router = APIRouter()

REFUND_HTTP_STATUS = {
    RefundStatus.REFUNDED: status.HTTP_200_OK,
    RefundStatus.ALREADY_REFUNDED: status.HTTP_200_OK,
}


@payments_admin_router.post("/orders/{order_id}/refund")
async def refund_order(order_id: str,
                       payload: Optional[RefundRequestBody] = Body(default=None),
                       principal: Principal = Depends(require_roles(*REFUND_ROLES)),
                       coordinator: RefundCoordinator = Depends(get_refund_coordinator)):
    result = await coordinator.refund(order_id, principal, payload.amount if payload else None)
    if result.status is RefundStatus.REJECTED:
        return json_error(build_error(code="CONFLICT", details=result.to_dict()), status_code=status.HTTP_409_CONFLICT)
    return json_ok(build_success(result.to_dict()), status_code=REFUND_HTTP_STATUS[result.status])
