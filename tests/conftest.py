"""Shared fixtures: in-memory store, mock ZenoPay and SendPulse transports"""

import json
from datetime import timedelta

import httpx
import pytest

from orders.service import OrderService
from payments.gateway import PaymentGateway
from payments.webhook_security import WebhookVerifier
from payments.zenopay import ZenoPayClient, ZenoPayConfig
from schemas.commerce import AuthUser, utcnow
from services.notifications import NotificationService, SendPulseClient
from storage.repository import InMemoryCommerceStore

WEBHOOK_SECRET = "whsec_test"
ZENOPAY_API_KEY = "zeno-test-key"


class FakeZenoPay:
    """Records requests and answers with configurable bodies"""

    def __init__(self):
        self.requests = []
        self.create_response = {"status": "success", "resultcode": "000", "message": "Request in progress"}
        self.create_status_code = 200
        self.status_response = {"data": [{"payment_status": "PENDING"}]}
        self.poll_status_code = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/mobile_money_tanzania"):
            return httpx.Response(self.create_status_code, json=self.create_response)
        if request.url.path.endswith("/order-status"):
            return httpx.Response(self.poll_status_code, json=self.status_response)
        return httpx.Response(404, text="not found")

    @property
    def created(self):
        return [json.loads(r.content) for r in self.requests if r.method == "POST"]


class FakeSendPulse:
    def __init__(self, fail_send: bool = False):
        self.fail_send = fail_send
        self.emails = []
        self.token_requests = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/access_token":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        if request.url.path == "/smtp/emails":
            if self.fail_send:
                return httpx.Response(500, text="smtp down")
            self.emails.append(json.loads(request.content)["email"])
            return httpx.Response(200, json={"result": True})
        return httpx.Response(404)


@pytest.fixture
def store():
    return InMemoryCommerceStore()


@pytest.fixture
def sendpulse():
    return FakeSendPulse()


@pytest.fixture
def notifications(store, sendpulse):
    client = SendPulseClient(
        client_id="id",
        client_secret="secret",
        base_url="https://sendpulse.test",
        transport=httpx.MockTransport(sendpulse.handler),
    )
    return NotificationService(store, client=client, admin_emails=["admin@tiscomarket.store"])


@pytest.fixture
def orders(store, notifications):
    return OrderService(store, notifications)


@pytest.fixture
def zenopay():
    return FakeZenoPay()


@pytest.fixture
def zenopay_client(zenopay):
    return ZenoPayClient(
        ZenoPayConfig(base_url="https://zeno.test/api/payments", api_key=ZENOPAY_API_KEY),
        transport=httpx.MockTransport(zenopay.handler),
    )


@pytest.fixture
def verifier():
    return WebhookVerifier(secret=WEBHOOK_SECRET, api_key=ZENOPAY_API_KEY, production=True)


@pytest.fixture
def gateway(store, orders, notifications, zenopay_client, verifier):
    return PaymentGateway(
        store,
        orders=orders,
        client=zenopay_client,
        verifier=verifier,
        notifications=notifications,
        remote_status=True,
        production=False,
        public_base_url="https://shop.test",
    )


@pytest.fixture
def customer():
    return AuthUser(
        id="6a1f9c3e-0d4b-4f55-9a3c-2b7e8d1f0a11",
        email="amina@example.com",
        first_name="Amina",
        last_name="Juma",
    )


@pytest.fixture
def other_customer():
    return AuthUser(id="0b5e7d2a-8c61-4a9f-b3d4-5e6f7a8b9c0d", email="baraka@example.com")


@pytest.fixture
def admin():
    return AuthUser(id="9d8c7b6a-5f4e-4d3c-8b2a-1f0e9d8c7b6a", email="ops@tiscomarket.store", role="admin")


@pytest.fixture
async def products(store):
    phone = await store.create_product({"name": "Tecno Spark 20", "price": 350000.0, "stock_quantity": 5})
    case = await store.create_product({"name": "Phone case", "price": 15000.0, "stock_quantity": 2})
    return phone, case


@pytest.fixture
def backdate(store):
    """Move a row's created_at into the past"""
    def _backdate(table: str, row_id: str, seconds: int):
        getattr(store, table)[row_id]["created_at"] = utcnow() - timedelta(seconds=seconds)
    return _backdate
