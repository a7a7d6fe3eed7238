# api/admin_routes.py
# ============================================================================
# TISCO MARKET BACKEND v1.0 — BACK-OFFICE ROUTES
# ============================================================================
# Every route requires an admin token or X-Admin-Key.
# ============================================================================

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Response

from api.auth import require_admin
from api.dependencies import Services, get_services
from schemas.commerce import AdminOrderUpdateRequest, AuthUser, ProductRequest

logger = structlog.get_logger().bind(component="admin_routes")

router = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])


# =============================================================================
# ORDERS
# =============================================================================

@router.get("/orders")
async def list_orders(
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    services: Services = Depends(get_services),
):
    return {"orders": await services.orders.admin_list_orders(status, limit=limit, offset=offset)}


@router.get("/orders/{order_id}")
async def get_order(order_id: str, services: Services = Depends(get_services)):
    return {"order": await services.orders.admin_get_order(order_id)}


@router.patch("/orders/{order_id}")
async def update_order(
    order_id: str,
    body: AdminOrderUpdateRequest,
    services: Services = Depends(get_services),
):
    result = await services.orders.admin_update(order_id, body)
    response = {"order": result.order, "write_path": result.path.value}
    if result.warning:
        response["warning"] = result.warning
    return response


@router.post("/orders/{order_id}/mark-paid")
async def mark_order_paid(
    order_id: str,
    admin: AuthUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    logger.info("office_payment_requested", order_id=order_id, admin_id=admin.id)
    return await services.orders.mark_paid(order_id)


@router.delete("/orders/{order_id}", status_code=204)
async def delete_order(order_id: str, services: Services = Depends(get_services)):
    await services.orders.delete_order(order_id)
    return Response(status_code=204)


# =============================================================================
# PRODUCTS
# =============================================================================

@router.post("/products", status_code=201)
async def create_product(body: ProductRequest, services: Services = Depends(get_services)):
    return {"product": await services.catalog.create_product(body)}


@router.patch("/products/{product_id}")
async def update_product(product_id: str, body: ProductRequest, services: Services = Depends(get_services)):
    return {"product": await services.catalog.update_product(product_id, body)}


@router.delete("/products/{product_id}", status_code=204)
async def delete_product(product_id: str, services: Services = Depends(get_services)):
    await services.catalog.delete_product(product_id)
    return Response(status_code=204)


# =============================================================================
# DASHBOARD & PAYMENT MONITOR
# =============================================================================

@router.get("/stats")
async def dashboard_stats(days: int = 7, services: Services = Depends(get_services)):
    return {
        "revenue": await services.store.revenue_stats(days),
        "orders_by_status": await services.store.order_counts(),
    }


@router.get("/payments/monitor")
async def payment_monitor_stats(services: Services = Depends(get_services)):
    return await services.monitor.get_stats()


@router.post("/payments/monitor/run")
async def run_payment_monitor(services: Services = Depends(get_services)):
    result = await services.monitor.run_cycle()
    logger.info("payment_monitor_manual_run", **result)
    return {"success": True, "result": result}
