# api/routes.py
# ============================================================================
# TISCO MARKET BACKEND v1.0 — STOREFRONT ROUTES
# ============================================================================
# Catalog, cart, reviews, customer orders and mobile-money payments.
# Webhook routes are unauthenticated at the bearer level; they verify
# their own HMAC / API key.
# ============================================================================

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from api.auth import get_current_user
from api.dependencies import Services, client_ip, get_services
from errors import ValidationError
from schemas.commerce import (
    AuthUser,
    CartItemRequest,
    CartQuantityRequest,
    CreateOrderRequest,
    InitiatePaymentRequest,
    OrderStatusUpdateRequest,
    ProcessPaymentRequest,
    ReviewRequest,
    SessionStatusRequest,
    StatusCheckRequest,
    ZenoPayWebhookPayload,
)

logger = structlog.get_logger().bind(component="routes")

router = APIRouter(prefix="/api")


# =============================================================================
# PRODUCTS & REVIEWS
# =============================================================================

@router.get("/products")
async def list_products(
    limit: int = 20,
    offset: int = 0,
    category_id: Optional[str] = None,
    search: Optional[str] = None,
    featured: Optional[bool] = None,
    services: Services = Depends(get_services),
):
    return await services.catalog.list_products(limit, offset, category_id, search, featured)


@router.get("/products/{product_id}")
async def get_product(product_id: str, services: Services = Depends(get_services)):
    return {"product": await services.catalog.get_product(product_id)}


@router.get("/products/{product_id}/reviews")
async def list_reviews(product_id: str, services: Services = Depends(get_services)):
    return {"reviews": await services.catalog.list_reviews(product_id)}


@router.post("/reviews", status_code=201)
async def create_review(
    body: ReviewRequest,
    user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return {"review": await services.catalog.create_review(user, body)}


# =============================================================================
# CART
# =============================================================================

@router.get("/cart")
async def get_cart(user: AuthUser = Depends(get_current_user), services: Services = Depends(get_services)):
    return await services.catalog.list_cart(user)


@router.post("/cart", status_code=201)
async def add_to_cart(
    body: CartItemRequest,
    user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return {"item": await services.catalog.add_to_cart(user, body)}


@router.patch("/cart/{item_id}")
async def update_cart_item(
    item_id: str,
    body: CartQuantityRequest,
    user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return {"item": await services.catalog.update_cart_item(user, item_id, body.quantity)}


@router.delete("/cart/{item_id}", status_code=204)
async def remove_cart_item(
    item_id: str,
    user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.catalog.remove_cart_item(user, item_id)
    return Response(status_code=204)


@router.delete("/cart")
async def clear_cart(user: AuthUser = Depends(get_current_user), services: Services = Depends(get_services)):
    return {"removed": await services.catalog.clear_cart(user)}


# =============================================================================
# ORDERS
# =============================================================================

@router.get("/orders")
async def list_orders(
    limit: int = 50,
    offset: int = 0,
    user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return {"orders": await services.orders.list_orders(user, limit=limit, offset=offset)}


@router.post("/orders", status_code=201)
async def create_order(
    body: CreateOrderRequest,
    user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return {"order": await services.orders.create_order(user, body)}


@router.get("/orders/{order_id}")
async def get_order(
    order_id: str,
    user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return {"order": await services.orders.get_order(user, order_id)}


@router.patch("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    body: OrderStatusUpdateRequest,
    user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    order = await services.orders.update_status(user, order_id, body.status, body.reason)
    return {"order": order}


# =============================================================================
# PAYMENTS
# =============================================================================

@router.post("/payments/mobile/initiate")
async def initiate_mobile_payment(
    body: InitiatePaymentRequest,
    user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    response = await services.gateway.initiate_mobile_payment(user, body)
    return response.model_dump(mode="json")


@router.post("/payments/process")
async def process_offline_payment(
    body: ProcessPaymentRequest,
    user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    result = await services.gateway.process_payment(user, body)
    return JSONResponse(content=jsonable_encoder(result))


@router.post("/payments/status")
async def check_payment_status(
    body: StatusCheckRequest,
    request: Request,
    user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    decision = await services.rate_limiter.check(f"payment_status:{user.id}:{client_ip(request)}")
    result = await services.gateway.check_status(user, body.reference or body.transaction_id)
    return JSONResponse(
        content=result.model_dump(mode="json"),
        headers=decision.headers(),
    )


@router.post("/payments/mobile/status")
async def mobile_session_status(
    body: SessionStatusRequest,
    user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    result = await services.gateway.get_session_status(user, body.reference)
    return JSONResponse(content=jsonable_encoder(result))


@router.get("/payments/mobile/status")
async def mobile_session_status_query(
    reference: Optional[str] = None,
    user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    result = await services.gateway.get_session_status(user, reference)
    return JSONResponse(content=jsonable_encoder(result))


@router.post("/payments/webhooks")
async def payment_webhook(request: Request, services: Services = Depends(get_services)):
    raw_body = await request.body()
    signature = (
        request.headers.get("x-zenopay-signature")
        or request.headers.get("x-webhook-signature")
        or request.headers.get("x-signature")
    )
    return await services.gateway.process_webhook(raw_body, signature, request.headers.get("x-api-key"))


@router.post("/payments/mobile/webhook")
async def mobile_payment_webhook(request: Request, services: Services = Depends(get_services)):
    try:
        payload = ZenoPayWebhookPayload.model_validate(await request.json())
    except ValueError:
        raise ValidationError("Invalid JSON payload")
    return await services.gateway.process_mobile_webhook(payload, request.headers.get("x-api-key"))
