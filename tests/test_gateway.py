import asyncio
import json

import httpx
import pytest

from conftest import WEBHOOK_SECRET, ZENOPAY_API_KEY
from errors import (
    NotFoundError,
    OrderCreationError,
    PermissionDeniedError,
    ValidationError,
    WebhookAuthError,
    ZenoPayError,
)
from orders.service import OrderService
from payments.gateway import (
    PaymentGateway,
    generate_transaction_reference,
    map_provider_to_channel,
    normalize_tz_phone,
)
from payments.webhook_security import sign_payload
from schemas.commerce import (
    CreateOrderRequest,
    ExternalPaymentStatus,
    InitiatePaymentRequest,
    ProcessPaymentRequest,
    ZenoPayWebhookPayload,
)
from services.notifications import NotificationService, SendPulseClient


def payment_request(product, quantity=1, amount=None, phone="0712345678", provider="M-Pesa"):
    price = product["price"]
    return InitiatePaymentRequest.model_validate({
        "amount": price * quantity if amount is None else amount,
        "provider": provider,
        "phone_number": phone,
        "order_data": {
            "items": [{"product_id": product["id"], "quantity": quantity, "price": price}],
            "email": "amina@example.com",
            "first_name": "Amina",
            "last_name": "Juma",
            "shipping_address": "Plot 12, Msasani",
        },
    })


def log_events(store):
    return [row["event_type"] for row in store.payment_logs]


def signed(body):
    raw = json.dumps(body).encode()
    return raw, sign_payload(WEBHOOK_SECRET, raw)


# =============================================================================
# HELPERS
# =============================================================================

@pytest.mark.parametrize(
    "raw,expected",
    [
        ("0712345678", "0712345678"),
        ("+255 712 345 678", "0712345678"),
        ("255712345678", "0712345678"),
        ("712-345-678", "0712345678"),
    ],
)
def test_normalize_tz_phone(raw, expected):
    assert normalize_tz_phone(raw) == expected


@pytest.mark.parametrize("raw", ["12345", "+1 415 555 0100", "", None])
def test_normalize_tz_phone_rejects(raw):
    with pytest.raises(ValidationError):
        normalize_tz_phone(raw)


def test_provider_channels():
    assert map_provider_to_channel("M-Pesa") == "vodacom"
    assert map_provider_to_channel("Halopesa") == "halotel"
    assert map_provider_to_channel("Cash") is None


def test_transaction_reference_shape():
    first, second = generate_transaction_reference(), generate_transaction_reference()
    assert first.startswith("TISCO")
    assert first[5:].isalnum() and first[5:].upper() == first[5:]
    assert first != second


# =============================================================================
# INITIATION
# =============================================================================

async def test_initiate_creates_order_session_and_pushes_prompt(gateway, customer, products, store, zenopay):
    phone, _ = products

    response = await gateway.initiate_mobile_payment(customer, payment_request(phone, phone="+255 712 345 678"))

    assert response.success and not response.is_duplicate
    assert response.status.value == "processing"
    assert response.message == "Payment request sent to 0712345678. Please approve on your phone."

    session = store.sessions[response.session_id]
    assert session["status"] == "processing"
    assert session["order_id"] == response.order_id
    assert session["transaction_reference"] == response.transaction_reference

    order = await store.get_order(response.order_id)
    assert order["status"] == "pending"
    assert order["payment_method"] == "Mobile Money (M-Pesa)"
    assert [i["product_id"] for i in order["items"]] == [phone["id"]]

    sent = zenopay.created[0]
    assert sent["order_id"] == response.transaction_reference
    assert sent["buyer_phone"] == "0712345678"
    assert sent["buyer_name"] == "Amina Juma"
    assert sent["amount"] == 350000
    assert sent["channel"] == "vodacom"
    assert sent["webhook_url"] == "https://shop.test/api/payments/mobile/webhook"
    assert zenopay.requests[0].headers["x-api-key"] == ZENOPAY_API_KEY

    assert log_events(store) == ["payment_initiated", "payment_processing"]


async def test_initiate_validates_before_touching_anything(gateway, customer, products, store, zenopay):
    phone, _ = products

    with pytest.raises(ValidationError, match="Amount mismatch"):
        await gateway.initiate_mobile_payment(customer, payment_request(phone, amount=1000))
    with pytest.raises(ValidationError, match="Invalid phone number format"):
        await gateway.initiate_mobile_payment(customer, payment_request(phone, phone="555-0100"))
    with pytest.raises(ValidationError, match="Missing required fields"):
        await gateway.initiate_mobile_payment(customer, InitiatePaymentRequest(amount=10))

    assert store.orders == {} and store.sessions == {}
    assert zenopay.requests == []


async def test_initiate_rejects_client_side_discount(gateway, customer, products, store, zenopay):
    phone, _ = products
    cheap = payment_request(phone, amount=1)
    cheap.order_data.items[0].price = 1

    with pytest.raises(ValidationError, match="Amount mismatch") as exc:
        await gateway.initiate_mobile_payment(customer, cheap)

    assert exc.value.details == {"calculated": 350000.0, "provided": 1}
    assert store.orders == {} and zenopay.requests == []


async def test_initiate_prices_order_from_catalog(gateway, customer, products, store, zenopay):
    phone, _ = products
    body = payment_request(phone)
    body.order_data.items[0].price = 1

    response = await gateway.initiate_mobile_payment(customer, body)

    order = await store.get_order(response.order_id)
    assert order["total_amount"] == 350000.0
    assert [i["price"] for i in order["items"]] == [350000.0]
    assert store.sessions[response.session_id]["order_data"]["items"][0]["price"] == 350000.0
    assert zenopay.created[0]["amount"] == 350000


async def test_initiate_returns_recent_processing_session_as_duplicate(gateway, customer, products, store, zenopay):
    phone, _ = products
    first = await gateway.initiate_mobile_payment(customer, payment_request(phone))
    second = await gateway.initiate_mobile_payment(customer, payment_request(phone))

    assert second.is_duplicate
    assert second.transaction_reference == first.transaction_reference
    assert second.message == "Payment session already exists"
    assert len(zenopay.created) == 1
    assert len(store.orders) == 1
    assert "duplicate_prevented" in log_events(store)


async def test_initiate_expires_stale_processing_session(gateway, customer, products, store, zenopay, backdate):
    phone, _ = products
    first = await gateway.initiate_mobile_payment(customer, payment_request(phone))
    backdate("sessions", first.session_id, 61)

    second = await gateway.initiate_mobile_payment(customer, payment_request(phone))

    assert not second.is_duplicate
    assert second.transaction_reference != first.transaction_reference
    stale = store.sessions[first.session_id]
    assert stale["status"] == "failed"
    assert stale["failure_reason"] == "Payment timeout - exceeded 60 second window"
    assert "session_expired" in log_events(store)


async def test_gateway_result_code_fails_session(gateway, customer, products, store, zenopay):
    phone, _ = products
    zenopay.create_response = {"status": "error", "resultcode": "004", "message": "low balance"}

    with pytest.raises(ZenoPayError) as exc:
        await gateway.initiate_mobile_payment(customer, payment_request(phone))

    assert exc.value.message == "Insufficient funds - please top up your mobile money account"
    assert exc.value.retryable
    assert exc.value.details["result_code"] == "004"
    session = store.sessions[exc.value.details["session_id"]]
    assert session["status"] == "failed"
    assert "payment_failed_retryable" in log_events(store)


async def test_gateway_http_error_fails_session(gateway, customer, products, store, zenopay):
    phone, _ = products
    zenopay.create_status_code = 503

    with pytest.raises(ZenoPayError) as exc:
        await gateway.initiate_mobile_payment(customer, payment_request(phone))

    assert exc.value.status_code == 502
    assert exc.value.details["result_code"] is None
    assert store.sessions[exc.value.details["session_id"]]["status"] == "failed"
    assert log_events(store)[-1] == "payment_failed"


# =============================================================================
# STATUS POLLING
# =============================================================================

async def test_check_status_adopts_remote_classification(gateway, customer, products):
    phone, _ = products
    started = await gateway.initiate_mobile_payment(customer, payment_request(phone))

    result = await gateway.check_status(customer, started.transaction_reference)

    assert result.status == ExternalPaymentStatus.PENDING
    assert result.is_session
    assert result.raw["id"] == started.session_id


async def test_check_status_finalizes_completed_session(gateway, customer, products, store, zenopay, sendpulse):
    phone, case = products
    await store.insert_cart_item({"user_id": customer.id, "product_id": case["id"], "quantity": 1})
    started = await gateway.initiate_mobile_payment(customer, payment_request(phone))
    zenopay.status_response = {"result": "SUCCESS", "data": [{"payment_status": "COMPLETED"}]}

    result = await gateway.check_status(customer, started.transaction_reference)

    assert result.status == ExternalPaymentStatus.COMPLETED
    assert result.raw["status"] == "completed"
    order = await store.get_order(started.order_id)
    assert order["payment_status"] == "paid"
    assert order["status"] == "processing"
    assert order["paid_at"] is not None
    assert store.sessions[started.session_id]["status"] == "completed"
    [txn] = store.transactions.values()
    assert txn["payment_type"] == "mobile_money"
    assert txn["transaction_reference"] == started.transaction_reference
    assert await store.list_cart(customer.id) == []
    assert [e["to"][0]["email"] for e in sendpulse.emails] == ["admin@tiscomarket.store"]


async def test_check_status_ignores_gateway_errors(gateway, customer, products, zenopay):
    phone, _ = products
    started = await gateway.initiate_mobile_payment(customer, payment_request(phone))
    zenopay.poll_status_code = 500

    result = await gateway.check_status(customer, started.transaction_reference)
    assert result.status == ExternalPaymentStatus.PROCESSING


async def test_check_status_times_out_processing_in_production(
    store, orders, zenopay_client, verifier, customer, products, backdate
):
    gateway = PaymentGateway(
        store, orders=orders, client=zenopay_client, verifier=verifier, remote_status=False, production=True
    )
    phone, _ = products
    started = await gateway.initiate_mobile_payment(customer, payment_request(phone))

    assert (await gateway.check_status(customer, started.transaction_reference)).status == ExternalPaymentStatus.PROCESSING
    backdate("sessions", started.session_id, 31)
    assert (await gateway.check_status(customer, started.transaction_reference)).status == ExternalPaymentStatus.FAILED


async def test_check_status_for_transaction_skips_remote_when_settled(gateway, customer, store, zenopay):
    await store.insert_transaction({
        "user_id": customer.id,
        "transaction_reference": "TISCOLEGACY01",
        "gateway_transaction_id": "ZP-778",
        "status": "completed",
    })

    result = await gateway.check_status(customer, "ZP-778")

    assert result.status == ExternalPaymentStatus.COMPLETED
    assert not result.is_session
    assert zenopay.requests == []


async def test_check_status_is_owner_scoped(gateway, customer, other_customer, products):
    phone, _ = products
    started = await gateway.initiate_mobile_payment(customer, payment_request(phone))

    with pytest.raises(NotFoundError, match="Transaction not found"):
        await gateway.check_status(other_customer, started.transaction_reference)
    with pytest.raises(ValidationError, match="reference required"):
        await gateway.check_status(customer, "")


# =============================================================================
# SESSION STATUS
# =============================================================================

async def test_session_status_by_reference_and_order_id(gateway, customer, other_customer, products):
    phone, _ = products
    started = await gateway.initiate_mobile_payment(customer, payment_request(phone))

    by_reference = await gateway.get_session_status(customer, started.transaction_reference)
    by_order = await gateway.get_session_status(customer, started.order_id)

    assert by_reference["session"]["id"] == by_order["session"]["id"] == started.session_id
    assert by_reference["order"]["status"] == "pending"
    assert by_reference["message"] == "Payment is being processed. Please check your phone for confirmation."

    with pytest.raises(PermissionDeniedError):
        await gateway.get_session_status(other_customer, started.transaction_reference)
    with pytest.raises(NotFoundError, match="Payment session not found"):
        await gateway.get_session_status(customer, "TISCOUNKNOWN")


async def test_session_status_finds_legacy_paid_order(gateway, customer, store):
    await store.insert_session({
        "user_id": customer.id,
        "amount": 350000.0,
        "transaction_reference": "TISCOLEGACY02",
        "status": "completed",
    })
    order = await store.insert_order({
        "user_id": customer.id,
        "total_amount": 350000.0,
        "payment_status": "paid",
        "status": "processing",
    })

    result = await gateway.get_session_status(customer, "TISCOLEGACY02")

    assert result["order"]["id"] == order["id"]
    assert result["message"] == "Payment completed and order created successfully"


# =============================================================================
# GATEWAY WEBHOOKS
# =============================================================================

async def test_webhook_requires_authentication(gateway):
    with pytest.raises(WebhookAuthError):
        await gateway.process_webhook(b'{"order_id": "X", "status": "COMPLETED"}', "bad", None)


async def test_webhook_unknown_reference(gateway):
    raw, signature = signed({"order_id": "TISCONOPE", "status": "COMPLETED"})
    with pytest.raises(NotFoundError):
        await gateway.process_webhook(raw, signature, None)


async def test_webhook_completes_session_once(gateway, customer, products, store, sendpulse):
    phone, _ = products
    started = await gateway.initiate_mobile_payment(customer, payment_request(phone))
    raw, signature = signed({
        "order_id": started.transaction_reference,
        "status": "COMPLETED",
        "transaction_id": "ZP-1001",
    })

    assert await gateway.process_webhook(raw, signature, None) == {"received": True}
    assert await gateway.process_webhook(raw, signature, None) == {"received": True}

    [txn] = store.transactions.values()
    assert txn["gateway_transaction_id"] == "ZP-1001"
    assert store.sessions[started.session_id]["status"] == "completed"
    assert (await store.get_order(started.order_id))["payment_status"] == "paid"
    assert len(sendpulse.emails) == 1
    assert log_events(store).count("payment_completed") == 1
    assert "duplicate_prevented" in log_events(store)


async def test_webhook_nested_status_and_api_key(gateway, customer, products, store):
    phone, _ = products
    started = await gateway.initiate_mobile_payment(customer, payment_request(phone))
    raw = json.dumps({
        "data": {"order_id": started.transaction_reference, "status": "cancelled"},
    }).encode()

    await gateway.process_webhook(raw, None, ZENOPAY_API_KEY)

    session = store.sessions[started.session_id]
    assert session["status"] == "cancelled"
    assert session["failure_reason"] == "Payment was cancelled"


async def test_webhook_unhandled_status_is_acknowledged(gateway, customer, products, store):
    phone, _ = products
    started = await gateway.initiate_mobile_payment(customer, payment_request(phone))
    raw, signature = signed({"order_id": started.transaction_reference, "status": "REVERSED"})

    assert await gateway.process_webhook(raw, signature, None) == {"received": True}
    assert store.sessions[started.session_id]["status"] == "processing"


async def test_webhook_settles_legacy_transaction(gateway, orders, customer, products, store, sendpulse):
    phone, _ = products
    order = await orders.create_order(customer, _order_body(phone))
    txn = await store.insert_transaction({
        "order_id": order["id"],
        "user_id": customer.id,
        "amount": 350000.0,
        "currency": "TZS",
        "status": "pending",
        "transaction_reference": "TISCOLEGACY03",
    })
    raw, signature = signed({"reference": "TISCOLEGACY03", "payment_status": "SETTLED", "transaction_id": "ZP-9"})

    await gateway.process_webhook(raw, signature, None)

    updated = store.transactions[txn["id"]]
    assert updated["status"] == "completed"
    assert updated["gateway_transaction_id"] == "ZP-9"
    assert updated["completed_at"] is not None
    settled = await store.get_order(order["id"])
    assert (settled["status"], settled["payment_status"]) == ("processing", "paid")
    assert sendpulse.emails[-1]["subject"] == "Payment Confirmed - Order Processing"
    assert sendpulse.emails[-1]["to"] == [{"email": customer.email}]


async def test_webhook_fails_legacy_transaction(gateway, orders, customer, products, store, sendpulse):
    phone, _ = products
    order = await orders.create_order(customer, _order_body(phone))
    txn = await store.insert_transaction({
        "order_id": order["id"],
        "user_id": customer.id,
        "amount": 350000.0,
        "status": "processing",
        "transaction_reference": "TISCOLEGACY04",
    })
    raw, signature = signed({
        "transaction_reference": "TISCOLEGACY04",
        "status": "declined",
        "failure_reason": "Insufficient balance",
    })

    await gateway.process_webhook(raw, signature, None)

    updated = store.transactions[txn["id"]]
    assert updated["status"] == "failed"
    assert updated["failure_reason"] == "Insufficient balance"
    assert (await store.get_order(order["id"]))["payment_status"] == "failed"
    assert sendpulse.emails[-1]["subject"] == "Payment Failed"


async def test_webhook_handler_errors_are_logged_not_raised(gateway, customer, store):
    session = await store.insert_session({
        "user_id": customer.id,
        "amount": 1000.0,
        "transaction_reference": "TISCOEMPTY01",
        "status": "processing",
        "order_data": {"items": []},
    })
    raw, signature = signed({"order_id": "TISCOEMPTY01", "status": "SUCCESS"})

    assert await gateway.process_webhook(raw, signature, None) == {"received": True}

    assert store.sessions[session["id"]]["status"] == "failed"
    assert store.sessions[session["id"]]["failure_reason"] == "No items in session"
    assert log_events(store)[-2:] == ["order_creation_failed", "webhook_error"]


def _order_body(product):
    return CreateOrderRequest.model_validate({
        "items": [{"product_id": product["id"], "quantity": 1}],
        "shipping_address": "Plot 12, Msasani",
    })


# =============================================================================
# MOBILE WEBHOOK
# =============================================================================

async def test_mobile_webhook_completes_then_is_idempotent(gateway, customer, products, store):
    phone, _ = products
    started = await gateway.initiate_mobile_payment(customer, payment_request(phone))
    payload = ZenoPayWebhookPayload(
        order_id=started.transaction_reference,
        payment_status="COMPLETED",
        reference="0948512379",
        transid="CLK9XYZ",
        amount="350000",
    )

    first = await gateway.process_mobile_webhook(payload)
    second = await gateway.process_mobile_webhook(payload)

    assert first["success"] and first["order_id"] == started.order_id
    assert first["transaction_reference"] == started.transaction_reference
    assert second == {"success": True, "message": "Payment already processed", "idempotent": True}
    assert store.sessions[started.session_id]["gateway_transaction_id"] == "CLK9XYZ"
    assert len(store.transactions) == 1
    assert "webhook_processed" in log_events(store)


@pytest.fixture(params=["failing", "unconfigured"])
def gateway_without_email(request, store, zenopay_client, verifier, sendpulse):
    if request.param == "failing":
        sendpulse.fail_send = True
        client = SendPulseClient("id", "secret", "https://sendpulse.test", httpx.MockTransport(sendpulse.handler))
    else:
        client = SendPulseClient("", "", "https://sendpulse.test")
    notifications = NotificationService(store, client=client, admin_emails=["admin@tiscomarket.store"])
    return PaymentGateway(
        store,
        orders=OrderService(store, notifications),
        client=zenopay_client,
        verifier=verifier,
        notifications=notifications,
        remote_status=True,
        production=False,
        public_base_url="https://shop.test",
    )


async def test_mobile_webhook_settles_while_email_is_down(gateway_without_email, customer, products, store):
    phone, _ = products
    started = await gateway_without_email.initiate_mobile_payment(customer, payment_request(phone))

    result = await gateway_without_email.process_mobile_webhook(
        ZenoPayWebhookPayload(order_id=started.transaction_reference, payment_status="COMPLETED", transid="CLK2")
    )

    assert result["success"] and result["order_id"] == started.order_id
    assert (await store.get_order(started.order_id))["payment_status"] == "paid"
    assert store.sessions[started.session_id]["status"] == "completed"
    statuses = {n["status"] for n in store.notifications.values()}
    assert statuses and statuses <= {"failed", "pending"}


async def test_session_completion_survives_email_outage(gateway_without_email, customer, products, store):
    phone, _ = products
    session = await store.insert_session({
        "user_id": customer.id,
        "amount": 350000.0,
        "provider": "M-Pesa",
        "transaction_reference": "TISCONOMAIL1",
        "status": "processing",
        "order_data": {"items": [{"product_id": phone["id"], "quantity": 1}], "email": customer.email},
    })

    result = await gateway_without_email.complete_session(session, {"status": "COMPLETED"})

    order = await store.get_order(result["order_id"])
    assert order["payment_status"] == "paid"
    assert store.sessions[session["id"]]["status"] == "completed"
    assert len(store.transactions) == 1


async def test_mobile_webhook_acknowledges_other_statuses(gateway):
    payload = ZenoPayWebhookPayload(order_id="TISCOANY", payment_status="PENDING")
    assert await gateway.process_mobile_webhook(payload) == {"success": True, "message": "Payment status: PENDING"}


async def test_mobile_webhook_validation(gateway):
    with pytest.raises(ValidationError):
        await gateway.process_mobile_webhook(ZenoPayWebhookPayload(order_id="TISCOANY"))
    with pytest.raises(NotFoundError):
        await gateway.process_mobile_webhook(ZenoPayWebhookPayload(order_id="TISCOANY", payment_status="COMPLETED"))


async def test_mobile_webhook_requires_api_key_in_production(store, orders, zenopay_client, verifier):
    gateway = PaymentGateway(store, orders=orders, client=zenopay_client, verifier=verifier, production=True)
    payload = ZenoPayWebhookPayload(order_id="TISCOANY", payment_status="COMPLETED")

    with pytest.raises(WebhookAuthError):
        await gateway.process_mobile_webhook(payload, api_key="wrong")
    with pytest.raises(NotFoundError):
        await gateway.process_mobile_webhook(payload, api_key=ZENOPAY_API_KEY)


async def test_mobile_webhook_reports_completion_failure(gateway, customer, store):
    await store.insert_session({
        "user_id": customer.id,
        "amount": 1000.0,
        "transaction_reference": "TISCOEMPTY02",
        "status": "processing",
        "order_data": {"items": [{"product_id": "3f2b1c4d-0000-4000-8000-000000000000", "quantity": 1}]},
    })

    with pytest.raises(OrderCreationError) as exc:
        await gateway.process_mobile_webhook(
            ZenoPayWebhookPayload(order_id="TISCOEMPTY02", payment_status="COMPLETED")
        )
    assert exc.value.details == {"message": "No valid items after validation"}


# =============================================================================
# SESSION COMPLETION
# =============================================================================

async def test_completion_creates_order_at_server_prices(gateway, customer, products, store):
    phone, case = products
    session = await store.insert_session({
        "user_id": customer.id,
        "amount": 1.0,
        "currency": "TZS",
        "provider": "Tigo Pesa",
        "transaction_reference": "TISCONEW01",
        "status": "processing",
        "order_data": {
            "items": [
                {"product_id": phone["id"], "quantity": 1, "price": 1},
                {"product_id": case["id"], "quantity": 2, "price": 1},
                {"product_id": "3f2b1c4d-0000-4000-8000-000000000000", "quantity": 1, "price": 1},
            ],
            "email": "amina@example.com",
            "shipping_address": "Plot 12, Msasani",
        },
    })

    result = await gateway.complete_session(session, {"status": "COMPLETED"})

    assert result["items_count"] == 2 and not result["idempotent"]
    order = await store.get_order(result["order_id"])
    assert order["total_amount"] == 380000.0
    assert order["payment_status"] == "paid"
    assert order["payment_method"] == "Mobile Money (Tigo Pesa)"
    assert store.sessions[session["id"]]["order_id"] == order["id"]


async def test_concurrent_completion_settles_once(gateway, customer, products, store):
    phone, _ = products
    started = await gateway.initiate_mobile_payment(customer, payment_request(phone))
    session = store.sessions[started.session_id]

    results = await asyncio.gather(
        gateway.complete_session(dict(session), {"status": "COMPLETED"}),
        gateway.complete_session(dict(session), {"status": "COMPLETED"}),
    )

    assert sorted(r["idempotent"] for r in results) == [False, True]
    assert {r["order_id"] for r in results} == {started.order_id}
    assert len(store.transactions) == 1
    assert gateway._reference_locks == {}


async def test_completion_links_webhook_supplied_order_of_same_user(gateway, orders, customer, other_customer, products, store):
    phone, _ = products
    own = await orders.create_order(customer, _order_body(phone))
    foreign = await orders.create_order(other_customer, _order_body(phone))
    session = await store.insert_session({
        "user_id": customer.id,
        "amount": 350000.0,
        "transaction_reference": "TISCOLINK01",
        "status": "processing",
        "order_data": {"items": [{"product_id": phone["id"], "quantity": 1}]},
    })

    linked = await gateway.complete_session(session, {"order_id": own["id"]})
    assert linked["order_id"] == own["id"]

    other_session = await store.insert_session({
        "user_id": customer.id,
        "amount": 350000.0,
        "transaction_reference": "TISCOLINK02",
        "status": "processing",
        "order_data": {"items": [{"product_id": phone["id"], "quantity": 1}]},
    })
    created = await gateway.complete_session(other_session, {"order_id": foreign["id"]})
    assert created["order_id"] not in (own["id"], foreign["id"])
    assert (await store.get_order(foreign["id"]))["payment_status"] == "pending"


# =============================================================================
# RECONCILIATION
# =============================================================================

@pytest.mark.parametrize(
    "remote,outcome,session_status",
    [
        ({"data": [{"payment_status": "COMPLETED"}]}, "completed", "completed"),
        ({"status": "FAILED"}, "failed", "failed"),
        ({"result": "CANCELLED"}, "cancelled", "cancelled"),
        ({"data": [{"payment_status": "PENDING"}]}, "pending", "processing"),
    ],
)
async def test_reconcile_session(gateway, customer, products, store, zenopay, remote, outcome, session_status):
    phone, _ = products
    started = await gateway.initiate_mobile_payment(customer, payment_request(phone))
    zenopay.status_response = remote

    result = await gateway.reconcile_session(store.sessions[started.session_id], expire_after_seconds=1800)

    assert result == outcome
    assert store.sessions[started.session_id]["status"] == session_status


async def test_reconcile_expires_old_unconfirmed_session(gateway, customer, products, store, zenopay, backdate):
    phone, _ = products
    started = await gateway.initiate_mobile_payment(customer, payment_request(phone))
    backdate("sessions", started.session_id, 1801)

    result = await gateway.reconcile_session(store.sessions[started.session_id], expire_after_seconds=1800)

    assert result == "expired"
    assert store.sessions[started.session_id]["status"] == "expired"
    assert log_events(store)[-1] == "session_expired"


async def test_reconcile_never_expires_when_gateway_unreachable(gateway, customer, products, store, zenopay, backdate):
    phone, _ = products
    started = await gateway.initiate_mobile_payment(customer, payment_request(phone))
    backdate("sessions", started.session_id, 1801)
    zenopay.poll_status_code = 500

    result = await gateway.reconcile_session(store.sessions[started.session_id], expire_after_seconds=1800)

    assert result == "error"
    assert store.sessions[started.session_id]["status"] == "processing"

    # the gateway comes back and reports the payment it settled meanwhile
    zenopay.poll_status_code = 200
    zenopay.status_response = {"data": [{"payment_status": "COMPLETED"}]}
    result = await gateway.reconcile_session(store.sessions[started.session_id], expire_after_seconds=1800)

    assert result == "completed"
    assert store.sessions[started.session_id]["status"] == "completed"


# =============================================================================
# OFFLINE PAYMENTS
# =============================================================================

def offline_request(order, payment_type, amount=None):
    return ProcessPaymentRequest(
        order_id=order["id"],
        amount=order["total_amount"] if amount is None else amount,
        payment_type=payment_type,
    )


async def test_bank_transfer_awaits_verification(gateway, orders, customer, products, store, zenopay):
    phone, _ = products
    order = await orders.create_order(customer, _order_body(phone))

    result = await gateway.process_payment(customer, offline_request(order, "bank_transfer"))

    txn = result["transaction"]
    assert txn["status"] == "awaiting_verification"
    assert txn["payment_type"] == "bank_transfer"
    assert txn["amount"] == 350000.0
    assert result["payment_response"]["bank_details"]["reference"] == txn["transaction_reference"]

    unchanged = await store.get_order(order["id"])
    assert (unchanged["status"], unchanged["payment_status"]) == ("pending", "pending")

    polled = await gateway.check_status(customer, txn["transaction_reference"])
    assert polled.status == ExternalPaymentStatus.PENDING
    assert not polled.is_session
    assert zenopay.requests == []
    assert log_events(store) == ["payment_awaiting_verification"]


async def test_cash_on_delivery_ships_unpaid(gateway, orders, customer, products, store):
    phone, _ = products
    order = await orders.create_order(customer, _order_body(phone))

    result = await gateway.process_payment(customer, offline_request(order, "cash_on_delivery"))

    assert result["transaction"]["status"] == "awaiting_verification"
    assert "bank_details" not in result["payment_response"]
    updated = await store.get_order(order["id"])
    assert updated["status"] == "processing"
    assert updated["payment_status"] == "pending"

    with pytest.raises(ValidationError, match="Order cannot be paid. Current status: processing"):
        await gateway.process_payment(customer, offline_request(order, "bank_transfer"))


async def test_offline_payment_validation(gateway, orders, customer, other_customer, products, store):
    phone, _ = products
    order = await orders.create_order(customer, _order_body(phone))

    with pytest.raises(ValidationError, match="Order ID and amount are required"):
        await gateway.process_payment(customer, ProcessPaymentRequest(order_id=order["id"], payment_type="bank_transfer"))
    with pytest.raises(ValidationError, match="Unsupported payment method"):
        await gateway.process_payment(customer, offline_request(order, "mobile_money"))
    with pytest.raises(ValidationError, match="Unsupported payment method"):
        await gateway.process_payment(customer, offline_request(order, "cheque"))
    with pytest.raises(ValidationError, match="Payment amount does not match order total"):
        await gateway.process_payment(customer, offline_request(order, "bank_transfer", amount=1000))
    with pytest.raises(NotFoundError):
        await gateway.process_payment(other_customer, offline_request(order, "bank_transfer"))

    assert store.transactions == {}
