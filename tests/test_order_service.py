import asyncpg
import httpx
import pytest

from errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    OrderCreationError,
    PermissionDeniedError,
    ValidationError,
)
from orders.service import SCHEMA_WARNING, OrderService
from schemas.commerce import AdminOrderUpdateRequest, CreateOrderRequest, WritePath
from services.notifications import NotificationService, SendPulseClient
from storage.repository import ORDER_COLUMNS, PAYMENT_STATUS_VALUES


def order_request(*items, **fields):
    body = {"items": list(items), "shipping_address": "Plot 12, Msasani, Dar es Salaam"}
    body.update(fields)
    return CreateOrderRequest.model_validate(body)


async def place_order(orders, customer, product, quantity=1, **fields):
    return await orders.create_order(
        customer, order_request({"product_id": product["id"], "quantity": quantity}, **fields)
    )


# =============================================================================
# CREATE
# =============================================================================

async def test_create_order_prices_items_from_catalog(orders, customer, products, store):
    phone, case = products
    order = await orders.create_order(
        customer,
        order_request(
            {"product_id": phone["id"], "quantity": 1, "price": 1},
            {"productId": case["id"], "quantity": 1, "price": 1},
            {"product_id": case["id"], "quantity": 1, "price": 1},
        ),
    )

    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["total_amount"] == 350000.0 + 2 * 15000.0
    assert sorted((i["product_id"], i["quantity"], i["price"]) for i in order["items"]) == sorted([
        (phone["id"], 1, 350000.0),
        (case["id"], 2, 15000.0),
    ])
    # stock is only taken on delivery
    assert (await store.get_product(phone["id"]))["stock_quantity"] == 5
    assert (await store.get_user(customer.id))["email"] == customer.email


async def test_create_order_requires_items(orders, customer):
    with pytest.raises(ValidationError, match="Items are required"):
        await orders.create_order(customer, order_request())


async def test_create_order_rejects_unknown_product(orders, customer, products):
    with pytest.raises(ConflictError, match="One or more products not found"):
        await orders.create_order(
            customer, order_request({"product_id": "3f2b1c4d-0000-4000-8000-000000000000", "quantity": 1})
        )


async def test_create_order_rejects_insufficient_stock(orders, customer, products):
    _, case = products
    with pytest.raises(ConflictError, match="Insufficient stock"):
        await place_order(orders, customer, case, quantity=3)


async def test_create_order_composes_address_then_falls_back_to_default(orders, customer, products, store):
    phone, _ = products
    order = await place_order(
        orders, customer, phone, shipping_address=None, address_line_1="Mikocheni B", city="Dar es Salaam"
    )
    assert order["shipping_address"] == "Mikocheni B, Dar es Salaam"

    # the composed address was remembered as the default
    again = await place_order(orders, customer, phone, shipping_address=None)
    assert again["shipping_address"].startswith("Mikocheni B")


async def test_create_order_without_any_address(orders, other_customer, products):
    phone, _ = products
    with pytest.raises(ValidationError, match="Shipping address is required"):
        await place_order(orders, other_customer, phone, shipping_address=None)


async def test_failed_item_insert_rolls_back_order(orders, customer, products, store, monkeypatch):
    phone, _ = products

    async def broken_insert(order_id, items):
        raise asyncpg.exceptions.ForeignKeyViolationError("order_items_product_id_fkey")

    monkeypatch.setattr(store, "insert_order_items", broken_insert)

    with pytest.raises(OrderCreationError, match="Order items creation failed"):
        await place_order(orders, customer, phone)
    assert store.orders == {}


# =============================================================================
# CUSTOMER STATUS UPDATES
# =============================================================================

async def test_get_order_is_owner_scoped(orders, customer, other_customer, admin, products):
    phone, _ = products
    order = await place_order(orders, customer, phone)

    with pytest.raises(PermissionDeniedError):
        await orders.get_order(other_customer, order["id"])
    assert (await orders.get_order(admin, order["id"]))["id"] == order["id"]
    with pytest.raises(NotFoundError):
        await orders.get_order(customer, "00000000-0000-4000-8000-000000000000")


async def test_update_status_guards_transitions(orders, customer, other_customer, products):
    phone, _ = products
    order = await place_order(orders, customer, phone)

    with pytest.raises(ValidationError, match="Status is required"):
        await orders.update_status(customer, order["id"], None)
    with pytest.raises(ValidationError, match="Invalid status"):
        await orders.update_status(customer, order["id"], "lost")
    with pytest.raises(PermissionDeniedError):
        await orders.update_status(other_customer, order["id"], "cancelled")
    with pytest.raises(InvalidTransitionError, match="Cannot change status from pending to shipped"):
        await orders.update_status(customer, order["id"], "shipped")


async def test_delivery_decrements_stock_and_appends_reason(orders, customer, products, store, sendpulse):
    phone, _ = products
    order = await place_order(orders, customer, phone, quantity=2, notes="Call before delivery")

    for status in ("processing", "shipped"):
        await orders.update_status(customer, order["id"], status)
    delivered = await orders.update_status(customer, order["id"], "delivered", reason="Received at the gate")

    assert delivered["status"] == "delivered"
    assert delivered["notes"] == "Call before delivery\nReceived at the gate"
    assert (await store.get_product(phone["id"]))["stock_quantity"] == 3
    assert [e["subject"] for e in sendpulse.emails].count("Your order status has changed") == 3


async def test_delivery_never_drives_stock_negative(orders, customer, products, store):
    phone, _ = products
    order = await place_order(orders, customer, phone, quantity=2)
    await store.update_product(phone["id"], {"stock_quantity": 1})

    await orders.update_status(customer, order["id"], "processing")
    await orders.update_status(customer, order["id"], "shipped")
    await orders.update_status(customer, order["id"], "delivered")

    assert (await store.get_product(phone["id"]))["stock_quantity"] == 0


# =============================================================================
# ADMIN UPDATE: DEGRADING WRITER
# =============================================================================

async def test_admin_paid_promotes_to_processing(orders, customer, products):
    phone, _ = products
    order = await place_order(orders, customer, phone)

    result = await orders.admin_update(order["id"], AdminOrderUpdateRequest(payment_status="paid"))

    assert result.path == WritePath.FULL
    assert result.warning is None
    assert result.order["payment_status"] == "paid"
    assert result.order["status"] == "processing"
    assert result.order["paid_at"] is not None


async def test_admin_supplied_status_wins_over_promotion(orders, customer, products):
    phone, _ = products
    order = await place_order(orders, customer, phone)

    result = await orders.admin_update(
        order["id"], AdminOrderUpdateRequest(payment_status="paid", status="confirmed")
    )
    assert result.order["status"] == "confirmed"


async def test_admin_failed_payment_clears_paid_at(orders, customer, products):
    phone, _ = products
    order = await place_order(orders, customer, phone)
    await orders.admin_update(order["id"], AdminOrderUpdateRequest(payment_status="paid"))

    result = await orders.admin_update(order["id"], AdminOrderUpdateRequest(payment_status="failed"))
    assert result.order["paid_at"] is None
    assert result.order["payment_status"] == "failed"


async def test_admin_update_retries_without_paid_at(orders, customer, products, store):
    phone, _ = products
    order = await place_order(orders, customer, phone)
    store.order_columns = ORDER_COLUMNS - {"paid_at"}

    result = await orders.admin_update(order["id"], AdminOrderUpdateRequest(payment_status="paid"))

    assert result.path == WritePath.WITHOUT_PAID_AT
    assert result.order["payment_status"] == "paid"
    assert result.order["status"] == "processing"
    assert "paid_at" not in result.order


@pytest.mark.parametrize("enum_mode", [False, True])
async def test_admin_update_status_only_when_payment_status_rejected(orders, customer, products, store, enum_mode):
    phone, _ = products
    order = await place_order(orders, customer, phone)
    store.payment_status_values = PAYMENT_STATUS_VALUES - {"paid"}
    store.payment_status_enum = enum_mode

    result = await orders.admin_update(order["id"], AdminOrderUpdateRequest(payment_status="paid"))

    assert result.path == WritePath.STATUS_ONLY
    assert result.warning == SCHEMA_WARNING
    assert result.order["status"] == "processing"
    assert result.order["payment_status"] == "pending"


async def test_admin_update_status_only_when_column_missing(orders, customer, products, store):
    phone, _ = products
    order = await place_order(orders, customer, phone)
    store.order_columns = ORDER_COLUMNS - {"payment_status", "paid_at"}

    result = await orders.admin_update(
        order["id"], AdminOrderUpdateRequest(payment_status="paid", status="confirmed")
    )

    assert result.path == WritePath.STATUS_ONLY
    assert result.order["status"] == "confirmed"


async def test_admin_update_propagates_unrelated_database_errors(orders, customer, products, store, monkeypatch):
    phone, _ = products
    order = await place_order(orders, customer, phone)

    async def deadlock(order_id, fields):
        raise asyncpg.exceptions.DeadlockDetectedError("deadlock detected")

    monkeypatch.setattr(store, "update_order", deadlock)

    with pytest.raises(asyncpg.exceptions.DeadlockDetectedError):
        await orders.admin_update(order["id"], AdminOrderUpdateRequest(payment_status="paid"))


async def test_admin_update_validation(orders, customer, products):
    phone, _ = products
    order = await place_order(orders, customer, phone)

    with pytest.raises(ValidationError, match="No valid fields to update"):
        await orders.admin_update(order["id"], AdminOrderUpdateRequest())
    with pytest.raises(ValidationError, match="Invalid 'payment_status' value"):
        await orders.admin_update(order["id"], AdminOrderUpdateRequest(payment_status="partially_paid"))
    with pytest.raises(InvalidTransitionError):
        await orders.admin_update(order["id"], AdminOrderUpdateRequest(status="delivered"))
    with pytest.raises(NotFoundError):
        await orders.admin_update("00000000-0000-4000-8000-000000000000", AdminOrderUpdateRequest(notes="x"))


async def test_admin_update_cannot_reopen_cancelled_order(orders, customer, products, store):
    phone, _ = products
    order = await place_order(orders, customer, phone)
    await orders.update_status(customer, order["id"], "cancelled")

    with pytest.raises(InvalidTransitionError, match="Cannot change status from cancelled to cancelled"):
        await orders.admin_update(
            order["id"], AdminOrderUpdateRequest(status="cancelled", payment_status="paid")
        )

    unchanged = await store.get_order(order["id"])
    assert unchanged["status"] == "cancelled"
    assert unchanged["payment_status"] == "pending"


async def test_admin_update_only_writes_sent_fields(orders, customer, products):
    phone, _ = products
    order = await place_order(orders, customer, phone, notes="keep me")

    result = await orders.admin_update(order["id"], AdminOrderUpdateRequest(tracking_number="TZ123"))
    assert result.order["tracking_number"] == "TZ123"
    assert result.order["notes"] == "keep me"
    assert result.order["status"] == "pending"


# =============================================================================
# OFFICE PAYMENTS & DELETE
# =============================================================================

async def test_mark_paid_records_office_transaction(orders, customer, products, store, sendpulse):
    phone, _ = products
    order = await place_order(orders, customer, phone)
    await store.upsert_user(customer.id, {"first_name": "Amina", "last_name": "Juma"})

    response = await orders.mark_paid(order["id"])

    assert response["message"] == "Order marked as paid and customer notified"
    assert response["order"]["payment_status"] == "paid"
    assert response["order"]["status"] == "processing"
    [txn] = store.transactions.values()
    assert txn["payment_type"] == "office_payment"
    assert txn["status"] == "completed"
    assert txn["transaction_reference"].startswith(f"OFFICE_{order['id'][:8]}_")
    assert sendpulse.emails[-1]["to"] == [{"email": customer.email}]

    with pytest.raises(ValidationError, match="already marked as paid"):
        await orders.mark_paid(order["id"])


async def test_mark_paid_guest_order_without_contact(orders, store):
    order = await store.insert_order({"total_amount": 1000, "status": "pending", "payment_status": "pending"})
    with pytest.raises(NotFoundError, match="Customer information missing"):
        await orders.mark_paid(order["id"])


async def test_mark_paid_survives_email_outage(store, customer, products, sendpulse):
    sendpulse.fail_send = True
    client = SendPulseClient("id", "secret", "https://sendpulse.test", httpx.MockTransport(sendpulse.handler))
    service = OrderService(store, NotificationService(store, client=client, admin_emails=[]))
    phone, _ = products
    order = await place_order(service, customer, phone)
    await store.upsert_user(customer.id, {"email": customer.email})

    response = await service.mark_paid(order["id"])

    assert response["order"]["payment_status"] == "paid"
    assert [n["status"] for n in store.notifications.values()] == ["failed"]


async def test_mark_paid_without_email_client_still_settles(store, customer, products):
    client = SendPulseClient("", "", "https://sendpulse.test")
    service = OrderService(store, NotificationService(store, client=client, admin_emails=[]))
    phone, _ = products
    order = await place_order(service, customer, phone)
    await store.upsert_user(customer.id, {"email": customer.email})

    response = await service.mark_paid(order["id"])

    assert response["order"]["payment_status"] == "paid"
    assert [n["status"] for n in store.notifications.values()] == ["pending"]


async def test_delete_order_removes_dependents(orders, customer, products, store):
    phone, _ = products
    order = await place_order(orders, customer, phone)
    await store.insert_session({"order_id": order["id"], "user_id": customer.id, "transaction_reference": "TISCOX"})

    await orders.delete_order(order["id"])

    assert store.orders == {}
    assert store.order_items == {}
    assert store.sessions == {}
    with pytest.raises(NotFoundError):
        await orders.delete_order(order["id"])
