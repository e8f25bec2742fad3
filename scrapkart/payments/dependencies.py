from fastapi import Depends, Request

from scrapkart.db.dependencies import get_session_factory
from scrapkart.payments.refunds import RefundCoordinator
from scrapkart.reconciliation.coordinator import ReconciliationCoordinator


def get_gateway(request: Request):
    return request.app.state.gateway


def get_reconciliation_coordinator(gateway=Depends(get_gateway),
                                   session_factory=Depends(get_session_factory)) -> ReconciliationCoordinator:
    return ReconciliationCoordinator(session_factory, gateway)


def get_refund_coordinator(gateway=Depends(get_gateway),
                           session_factory=Depends(get_session_factory)) -> RefundCoordinator:
    return RefundCoordinator(session_factory, gateway)
