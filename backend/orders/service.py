"""
Order Service
=============
Order lifecycle for the storefront and the back-office:

- create_order:   server-side pricing, stock checks, rollback of half-written orders
- update_status:  customer-initiated transitions (guarded)
- admin_update:   partial updates through the degrading writer
- mark_paid:      office payments recorded by an admin
- settle_payment: called by the payment gateway once money has arrived

The degrading writer (`apply_update`) exists because deployed databases have
drifted: some lack `orders.paid_at`, some lack `orders.payment_status` or
constrain it differently. Writes step down through three paths:

    full  ->  without_paid_at  ->  status_only

and the result records which one succeeded.
"""

import time
from collections import OrderedDict
from typing import Any, Dict, List, Optional

import asyncpg
import structlog

from errors import (
    ConflictError,
    NotFoundError,
    OrderCreationError,
    PermissionDeniedError,
    ValidationError,
)
from orders.transitions import can_transition, ensure_transition, parse_order_status
from schemas.commerce import (
    AdminOrderUpdateRequest,
    AuthUser,
    CreateOrderRequest,
    OrderStatus,
    OrderUpdateResult,
    PaymentStatus,
    WritePath,
    utcnow,
)
from services.notifications import NotificationService
from storage.repository import CommerceStore, PAYMENT_STATUS_VALUES

logger = structlog.get_logger().bind(component="order_service")

ADMIN_UPDATABLE_FIELDS = (
    "status",
    "payment_status",
    "payment_method",
    "shipping_address",
    "notes",
    "currency",
    "total_amount",
    "shipping_amount",
    "tax_amount",
    "tracking_number",
)

SCHEMA_WARNING = (
    "orders.payment_status issue (missing/constraint/enum). Only order status was updated. "
    "Align the orders table with the payment_status and paid_at columns."
)


# =============================================================================
# DATABASE ERROR CLASSIFICATION
# =============================================================================

def _sqlstate(exc: Exception) -> Optional[str]:
    return getattr(exc, "sqlstate", None)


def _message(exc: Exception) -> str:
    return getattr(exc, "message", None) or str(exc)


def is_missing_column(exc: Exception, column: str) -> bool:
    """42703 undefined_column naming `column`"""
    return _sqlstate(exc) == "42703" and column in _message(exc)


def rejects_payment_status(exc: Exception) -> bool:
    """Column missing, check constraint (23514) or bad enum value (22P02)"""
    code = _sqlstate(exc)
    if code == "42703":
        return "payment_status" in _message(exc)
    if code == "23514":
        return True
    if code == "22P02":
        return "enum" in _message(exc).lower()
    return False


def compose_address(*parts: Optional[str]) -> str:
    return ", ".join(p.strip() for p in parts if p and p.strip())


# =============================================================================
# ORDER SERVICE
# =============================================================================

class OrderService:
    def __init__(self, store: CommerceStore, notifications: Optional[NotificationService] = None):
        self.store = store
        self.notifications = notifications or NotificationService(store)

    # -------------------------------------------------------------------------
    # Degrading writer
    # -------------------------------------------------------------------------

    async def _try_write(self, order_id: str, fields: Dict[str, Any]):
        try:
            return await self.store.update_order(order_id, fields), None
        except asyncpg.PostgresError as exc:
            return None, exc

    async def apply_update(
        self,
        order_id: str,
        fields: Dict[str, Any],
        fallback_status: Optional[str] = None,
    ) -> OrderUpdateResult:
        """
        Write `fields` to the order, degrading on schema drift.

        Args:
            order_id: order to update
            fields: columns to write (updated_at is added)
            fallback_status: status written on the status-only path

        Raises:
            NotFoundError: order does not exist
            asyncpg.PostgresError: any failure that is not schema drift
        """
        now = utcnow()
        attempt = {**fields, "updated_at": now}
        path = WritePath.FULL
        log = logger.bind(order_id=order_id)

        order, error = await self._try_write(order_id, attempt)

        if error is not None and "paid_at" in attempt and is_missing_column(error, "paid_at"):
            log.warning("order_update_retry_without_paid_at", sqlstate=_sqlstate(error))
            attempt.pop("paid_at")
            path = WritePath.WITHOUT_PAID_AT
            order, error = await self._try_write(order_id, attempt)

        warning = None
        if error is not None:
            if "payment_status" not in attempt or not rejects_payment_status(error):
                log.error("order_update_failed", sqlstate=_sqlstate(error), error=_message(error))
                raise error

            status_only = {"updated_at": now}
            if fallback_status or attempt.get("status"):
                status_only["status"] = fallback_status or attempt["status"]
            log.warning(
                "order_update_status_only",
                sqlstate=_sqlstate(error),
                error=_message(error),
                status=status_only.get("status"),
            )
            order = await self.store.update_order(order_id, status_only)
            path = WritePath.STATUS_ONLY
            warning = SCHEMA_WARNING

        if order is None:
            raise NotFoundError("Order not found")

        log.info("order_updated", path=path.value, fields=sorted(attempt.keys()))
        return OrderUpdateResult(order=order, path=path, warning=warning)

    @staticmethod
    def _processing_or_current(current_status: Optional[str]) -> Optional[str]:
        if current_status is None or can_transition(current_status, OrderStatus.PROCESSING):
            return OrderStatus.PROCESSING.value
        return current_status

    async def settle_payment(
        self,
        order_id: str,
        payment_method: Optional[str] = None,
        current_status: Optional[str] = None,
    ) -> OrderUpdateResult:
        """Mark an order paid; promote to processing when the guard allows"""
        if current_status is None:
            existing = await self.store.get_order(order_id)
            if existing is None:
                raise NotFoundError("Order not found")
            current_status = existing.get("status")

        fields: Dict[str, Any] = {
            "payment_status": PaymentStatus.PAID.value,
            "paid_at": utcnow(),
        }
        target = self._processing_or_current(current_status)
        if target and target != current_status:
            fields["status"] = target
        if payment_method:
            fields["payment_method"] = payment_method

        return await self.apply_update(order_id, fields, fallback_status=target)

    # -------------------------------------------------------------------------
    # Storefront
    # -------------------------------------------------------------------------

    async def _resolve_shipping_address(self, user: AuthUser, body: CreateOrderRequest) -> str:
        if body.shipping_address and body.shipping_address.strip():
            return body.shipping_address.strip()

        composed = compose_address(body.address_line_1 or body.place, body.city)
        if composed:
            return composed

        default = await self.store.get_default_address(user.id)
        if default:
            composed = compose_address(
                default.get("address_line_1"),
                default.get("address_line_2"),
                default.get("city"),
                default.get("state"),
                default.get("postal_code"),
                default.get("country"),
            )
            if composed:
                return composed

        raise ValidationError("Shipping address is required")

    async def price_items(self, items) -> List[Dict[str, Any]]:
        """Aggregate quantities per product and price them from the catalog"""
        quantities: "OrderedDict[str, int]" = OrderedDict()
        for item in items:
            if not item.product_id:
                raise ValidationError("Invalid order items")
            quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity

        products = {p["id"]: p for p in await self.store.get_products(list(quantities))}
        if len(products) != len(quantities):
            raise ConflictError("One or more products not found")

        priced = []
        for product_id, quantity in quantities.items():
            product = products[product_id]
            stock = product.get("stock_quantity")
            if stock is not None and stock < quantity:
                raise ConflictError(
                    "Insufficient stock for one or more items",
                    details={"product_id": product_id},
                )
            priced.append({
                "product_id": product_id,
                "quantity": quantity,
                "price": float(product.get("price") or 0),
            })
        return priced

    async def _remember_customer(self, user: AuthUser, body: CreateOrderRequest) -> None:
        email = user.email or body.email
        if email:
            profile = {
                "email": email,
                "first_name": body.first_name or user.first_name,
                "last_name": body.last_name or user.last_name,
                "phone": body.contact_phone or user.phone,
            }
            try:
                await self.store.upsert_user(user.id, {k: v for k, v in profile.items() if v})
            except Exception as e:
                logger.error("user_upsert_failed", user_id=user.id, error=str(e))

        address = {
            "first_name": body.first_name,
            "last_name": body.last_name,
            "address_line_1": body.address_line_1 or body.place,
            "city": body.city,
            "country": body.country,
            "phone": body.contact_phone,
        }
        address = {k: v for k, v in address.items() if v}
        try:
            existing = await self.store.get_default_address(user.id)
            if existing or (address.get("address_line_1") and address.get("city")):
                if address:
                    await self.store.save_default_address(user.id, address)
        except Exception as e:
            logger.error("default_address_save_failed", user_id=user.id, error=str(e))

    async def create_order(self, user: AuthUser, body: CreateOrderRequest) -> Dict[str, Any]:
        if not body.items:
            raise ValidationError("Items are required")

        priced = await self.price_items(body.items)
        shipping_address = await self._resolve_shipping_address(user, body)
        total = round(sum(i["price"] * i["quantity"] for i in priced), 2)

        await self._remember_customer(user, body)

        fields = {
            "user_id": user.id,
            "total_amount": total,
            "currency": body.currency or "TZS",
            "status": OrderStatus.PENDING.value,
            "payment_status": PaymentStatus.PENDING.value,
            "payment_method": body.payment_method,
            "shipping_address": shipping_address,
            "notes": body.notes,
            "contact_phone": body.contact_phone,
            "address_line_1": body.address_line_1,
            "city": body.city,
            "email": body.email or user.email,
            "place": body.place,
            "first_name": body.first_name,
            "last_name": body.last_name,
            "country": body.country,
        }
        order = await self.insert_order_with_items(fields, priced)
        logger.info("order_created", order_id=order["id"], user_id=user.id, total=total, items=len(priced))
        return await self.store.get_order(order["id"])

    async def insert_order_with_items(self, fields: Dict[str, Any], items: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Insert an order and its items; the order row is removed if the items fail"""
        order = await self.store.insert_order({k: v for k, v in fields.items() if v is not None})
        try:
            await self.store.insert_order_items(order["id"], items)
        except Exception as e:
            logger.error("order_items_insert_failed", order_id=order["id"], error=str(e))
            await self.store.delete_order(order["id"])
            raise OrderCreationError("Order items creation failed", details={"reason": str(e)}) from e
        return order

    async def price_known_items(self, items) -> List[Dict[str, Any]]:
        """Re-price items from the catalog, skipping products that no longer exist"""
        ids = [i.product_id for i in items if i.product_id]
        products = {p["id"]: p for p in await self.store.get_products(ids)} if ids else {}

        priced = []
        for item in items:
            product = products.get(item.product_id)
            if product is None:
                logger.warning("order_item_product_missing", product_id=item.product_id)
                continue
            priced.append({
                "product_id": item.product_id,
                "quantity": item.quantity,
                "price": float(product.get("price") or 0),
            })
        return priced

    async def list_orders(self, user: AuthUser, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        return await self.store.list_orders(user_id=user.id, limit=limit, offset=offset)

    async def get_order(self, user: AuthUser, order_id: str) -> Dict[str, Any]:
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if order.get("user_id") != user.id and not user.is_admin:
            raise PermissionDeniedError("Permission denied")
        return order

    async def update_status(
        self,
        user: AuthUser,
        order_id: str,
        status: Optional[str],
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not status:
            raise ValidationError("Status is required")
        target = parse_order_status(status)

        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if order.get("user_id") != user.id:
            raise PermissionDeniedError("Permission denied")

        current = order.get("status")
        ensure_transition(current, target)
        log = logger.bind(order_id=order_id, user_id=user.id)

        if target == OrderStatus.DELIVERED:
            updated = await self.store.deliver_order(order_id)
            log.info("order_delivered")
        else:
            updated = await self.store.update_order(
                order_id, {"status": target.value, "updated_at": utcnow()}
            )

        if reason and reason.strip():
            notes = f"{order.get('notes') or ''}\n{reason.strip()}".strip()
            updated = await self.store.update_order(order_id, {"notes": notes, "updated_at": utcnow()})

        if updated is None:
            raise NotFoundError("Order not found")

        log.info("order_status_updated", previous=current, status=target.value)
        if order.get("email") or user.email:
            await self.notifications.notify_order_status_changed(
                order_id=order_id,
                customer_email=order.get("email") or user.email,
                customer_name=" ".join(
                    p for p in (order.get("first_name"), order.get("last_name")) if p
                ) or "Customer",
                previous_status=current,
                new_status=target.value,
            )

        return await self.store.get_order(order_id) or updated

    # -------------------------------------------------------------------------
    # Back-office
    # -------------------------------------------------------------------------

    async def admin_list_orders(self, status: Optional[str] = None, limit: int = 50, offset: int = 0):
        if status:
            status = parse_order_status(status).value
        return await self.store.list_orders(status=status, limit=limit, offset=offset)

    async def admin_get_order(self, order_id: str) -> Dict[str, Any]:
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    async def admin_update(self, order_id: str, body: AdminOrderUpdateRequest) -> OrderUpdateResult:
        updates = {k: getattr(body, k) for k in ADMIN_UPDATABLE_FIELDS if k in body.model_fields_set}
        if not updates:
            raise ValidationError("No valid fields to update")

        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        current = order.get("status")

        if "status" in updates:
            updates["status"] = ensure_transition(current, updates["status"]).value

        if "payment_status" in updates:
            payment_status = str(updates["payment_status"])
            if payment_status not in PAYMENT_STATUS_VALUES:
                raise ValidationError("Invalid 'payment_status' value")
            if payment_status == PaymentStatus.PAID.value:
                updates["paid_at"] = utcnow()
                if "status" not in updates and can_transition(current, OrderStatus.PROCESSING):
                    updates["status"] = OrderStatus.PROCESSING.value
            elif payment_status in (PaymentStatus.FAILED.value, PaymentStatus.CANCELLED.value):
                updates["paid_at"] = None

        fallback = updates.get("status") or self._processing_or_current(current)
        result = await self.apply_update(order_id, updates, fallback_status=fallback)

        new_status = result.order.get("status")
        if new_status != current and (order.get("email") or order.get("customer_email")):
            await self.notifications.notify_order_status_changed(
                order_id=order_id,
                customer_email=order.get("email") or order.get("customer_email"),
                customer_name=order.get("customer_name") or "Customer",
                previous_status=current,
                new_status=new_status,
            )
        return result

    async def _resolve_customer(self, order: Dict[str, Any]):
        if order.get("user_id"):
            user = await self.store.get_user(order["user_id"])
            if not user or not user.get("email"):
                raise NotFoundError("Customer not found")
            if user.get("first_name") and user.get("last_name"):
                name = f"{user['first_name']} {user['last_name']}"
            else:
                name = "Customer"
            return user["email"], name

        if not order.get("customer_email") and not order.get("customer_name"):
            raise NotFoundError("Customer information missing")
        return (
            order.get("customer_email") or "no-email@guest.order",
            order.get("customer_name") or "Guest Customer",
        )

    async def mark_paid(self, order_id: str) -> Dict[str, Any]:
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if order.get("payment_status") == PaymentStatus.PAID.value:
            raise ValidationError("Order is already marked as paid")

        customer_email, customer_name = await self._resolve_customer(order)
        result = await self.settle_payment(order_id, current_status=order.get("status"))

        reference = f"OFFICE_{order_id[:8]}_{int(time.time() * 1000)}"
        await self.store.insert_transaction({
            "order_id": order_id,
            "user_id": order.get("user_id"),
            "amount": order.get("total_amount"),
            "currency": order.get("currency") or "TZS",
            "status": "completed",
            "payment_type": "office_payment",
            "provider": "office",
            "transaction_reference": reference,
            "completed_at": utcnow(),
        })
        logger.info("order_marked_paid", order_id=order_id, reference=reference, path=result.path.value)

        await self.notifications.notify_payment_success(
            order_id=order_id,
            customer_email=customer_email,
            customer_name=customer_name,
            amount=order.get("total_amount") or 0,
            currency=order.get("currency") or "TZS",
            payment_method="Office Payment - Confirmed",
            transaction_id=reference,
        )

        response = {
            "order": result.order,
            "message": "Order marked as paid and customer notified",
        }
        if result.warning:
            response["warning"] = result.warning
        return response

    async def delete_order(self, order_id: str) -> None:
        if not await self.store.delete_order(order_id):
            raise NotFoundError("Order not found")
        logger.info("order_deleted", order_id=order_id)
