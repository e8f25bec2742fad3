from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from scrapkart.auth.dependencies import get_principal, require_roles
from scrapkart.auth.models import ROLE_ADMIN, ROLE_SUPPORT, Principal
from scrapkart.common.utils import build_error, build_success, json_error, json_ok
from scrapkart.db.dependencies import get_session
from scrapkart.payments.dependencies import get_reconciliation_coordinator
from scrapkart.reconciliation.constants import CONFLICT_PAGE_LIMIT
from scrapkart.reconciliation.coordinator import PaymentEvent, ReconciliationCoordinator
from scrapkart.reconciliation.models import ClientPaymentConfirmation
from scrapkart.reconciliation.outcomes import AckStatus, EventSource, PaymentOutcome
from scrapkart.reconciliation.repository import list_conflicts
from scrapkart.reconciliation.utils import derive_event_key

payments_router = APIRouter()
reconciliation_admin_router = APIRouter()


@payments_router.post("/payments/confirm")
async def confirm_payment(payload: ClientPaymentConfirmation,
                          principal: Principal = Depends(get_principal),
                          coordinator: ReconciliationCoordinator = Depends(get_reconciliation_coordinator)):
    outcome = PaymentOutcome(payload.outcome)
    event = PaymentEvent(
        source=EventSource.CLIENT_CALLBACK,
        event_key=derive_event_key(EventSource.CLIENT_CALLBACK, payload.gateway_transaction_id, outcome),
        order_id=str(payload.order_id),
        gateway_transaction_id=payload.gateway_transaction_id,
        outcome=outcome,
        principal=principal,
        amount=payload.amount,
    )
    ack = await coordinator.handle_event(event)
    if ack.status is AckStatus.REJECTED:
        return json_error(build_error(code="CONFLICT", details=ack.to_dict()), status_code=status.HTTP_409_CONFLICT)
    return json_ok(build_success(ack.to_dict()))


@reconciliation_admin_router.get("/reconciliation/conflicts")
async def get_conflicts(limit: int = Query(default=50, ge=1, le=CONFLICT_PAGE_LIMIT),
                        offset: int = Query(default=0, ge=0),
                        include_resolved: bool = False,
                        principal: Principal = Depends(require_roles(ROLE_ADMIN, ROLE_SUPPORT)),
                        session: AsyncSession = Depends(get_session)):
    rows = await list_conflicts(session, limit=limit, offset=offset, unresolved_only=not include_resolved)
    items = [row.model_dump(mode="json") for row in rows]
    return json_ok(build_success({"items": items, "limit": limit, "offset": offset}))
