# api/dependencies.py
# ============================================================================
# TISCO MARKET BACKEND v1.0 — SERVICE WIRING
# ============================================================================
# One Services container per app, stored on app.state. Routes reach it
# through get_services so tests can build an app over the in-memory store.
# ============================================================================

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from api.rate_limit import RateLimiter
from orders.service import OrderService
from payments.gateway import PaymentGateway
from payments.webhook_security import WebhookVerifier
from payments.zenopay import ZenoPayClient
from services.catalog import CatalogService
from services.notifications import NotificationService, SendPulseClient
from storage.repository import CommerceStore
from tasks.payment_monitor import PaymentMonitor


@dataclass
class Services:
    store: CommerceStore
    notifications: NotificationService
    orders: OrderService
    gateway: PaymentGateway
    catalog: CatalogService
    monitor: PaymentMonitor
    rate_limiter: RateLimiter

    async def close(self):
        self.monitor.stop()
        await self.gateway.close()
        await self.notifications.close()
        await self.rate_limiter.close()


def build_services(
    store: CommerceStore,
    zenopay: Optional[ZenoPayClient] = None,
    email_client: Optional[SendPulseClient] = None,
    webhook_verifier: Optional[WebhookVerifier] = None,
    rate_limiter: Optional[RateLimiter] = None,
    remote_status: Optional[bool] = None,
    production: Optional[bool] = None,
) -> Services:
    notifications = NotificationService(store, client=email_client)
    orders = OrderService(store, notifications)
    gateway = PaymentGateway(
        store,
        orders=orders,
        client=zenopay,
        verifier=webhook_verifier,
        notifications=notifications,
        remote_status=remote_status,
        production=production,
    )
    return Services(
        store=store,
        notifications=notifications,
        orders=orders,
        gateway=gateway,
        catalog=CatalogService(store),
        monitor=PaymentMonitor(gateway),
        rate_limiter=rate_limiter or RateLimiter(),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or (request.client.host if request.client else "unknown")
