from fastapi import APIRouter
from scrapkart.api import version_prefix
from scrapkart.common.routes import home_router
from scrapkart.orders.routes import orders_admin_router, orders_router
from scrapkart.payments.routes import payments_admin_router
from scrapkart.reconciliation.routes import payments_router, reconciliation_admin_router


public_routers = APIRouter(prefix=version_prefix)

public_routers.include_router(orders_router, tags=["orders"])
public_routers.include_router(payments_router, tags=["payments"])
public_routers.include_router(home_router, tags=["home"])

#--------------------------------------------------------------------------------------------------------

admin_routers = APIRouter(prefix=f"{version_prefix}/admin")

admin_routers.include_router(orders_admin_router, tags=["orders-admin"])
admin_routers.include_router(payments_admin_router, tags=["payments-admin"])
admin_routers.include_router(reconciliation_admin_router, tags=["reconciliation-admin"])
