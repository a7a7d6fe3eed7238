"""
Email Notifications
===================
Customer and admin emails for order and payment events.

Every notification is first stored in the `notifications` table, then sent
through the SendPulse SMTP API:

1. POST /oauth/access_token  (client credentials, cached for 90% of its life)
2. POST /smtp/emails         (HTML body base64-encoded)

A failed delivery marks the row `failed` and is logged. It never reaches the
caller: a lost email must not undo a payment or an order update.
"""

import base64
import html
import os
import re
import time
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog

from schemas.commerce import NotificationEvent, utcnow
from storage.repository import CommerceStore

logger = structlog.get_logger().bind(component="notifications")


# =============================================================================
# CONFIGURATION
# =============================================================================

class NotificationConfig:
    """SendPulse settings from environment"""

    API_BASE_URL = os.getenv("SENDPULSE_API_URL", "https://api.sendpulse.com")
    CLIENT_ID = os.getenv("SENDPULSE_CLIENT_ID", "")
    CLIENT_SECRET = os.getenv("SENDPULSE_CLIENT_SECRET", "")
    FROM_EMAIL = os.getenv("SENDPULSE_FROM_EMAIL", "info@tiscomarket.store")
    FROM_NAME = os.getenv("SENDPULSE_FROM_NAME", "TISCO Market")
    ADMIN_EMAILS = [
        e.strip() for e in os.getenv("ADMIN_NOTIFICATION_EMAILS", "").split(",") if e.strip()
    ]
    TIMEOUT_SECONDS = float(os.getenv("SENDPULSE_TIMEOUT", "30"))


config = NotificationConfig()

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


# =============================================================================
# SENDPULSE CLIENT
# =============================================================================

class SendPulseClient:
    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = config.CLIENT_ID if client_id is None else client_id
        self.client_secret = config.CLIENT_SECRET if client_secret is None else client_secret
        self.base_url = (base_url or config.API_BASE_URL).rstrip("/")
        self._client = httpx.AsyncClient(transport=transport, timeout=config.TIMEOUT_SECONDS)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def close(self):
        await self._client.aclose()

    async def _get_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        response = await self._client.post(
            f"{self.base_url}/oauth/access_token",
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        if response.is_error:
            raise RuntimeError(f"SendPulse token error: {response.status_code} {response.text}")

        body = response.json()
        token = body.get("access_token")
        if not token:
            raise RuntimeError("SendPulse token missing in response")

        expires_in = float(body.get("expires_in") or 3600)
        self._token = token
        self._token_expires_at = time.monotonic() + expires_in * 0.9
        return token

    async def send_email(
        self,
        to: Sequence[str],
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> None:
        recipients = [{"email": r} for r in to if r and EMAIL_PATTERN.match(r)]
        if not recipients:
            raise ValueError("No valid recipient emails found")
        if not html_body.strip():
            raise ValueError("Email HTML content is empty")

        token = await self._get_token()
        text = text_body or re.sub(r"\s+", " ", re.sub(r"<[^>]*>", "", html_body)).strip()

        response = await self._client.post(
            f"{self.base_url}/smtp/emails",
            headers={"Authorization": f"Bearer {token}"},
            json={
                "email": {
                    "subject": subject,
                    "from": {"name": config.FROM_NAME, "email": config.FROM_EMAIL},
                    "to": recipients,
                    "html": base64.b64encode(html_body.strip().encode("utf-8")).decode("ascii"),
                    "text": text[:1000],
                }
            },
        )
        if response.is_error:
            raise RuntimeError(f"SendPulse send error: {response.status_code} {response.text}")

        logger.info("email_sent", recipients=len(recipients), subject=subject)


# =============================================================================
# TEMPLATES
# =============================================================================

SUBJECTS = {
    NotificationEvent.ORDER_CREATED: "New order received",
    NotificationEvent.PAYMENT_SUCCESS: "Payment Confirmed - Order Processing",
    NotificationEvent.PAYMENT_FAILED: "Payment Failed",
    NotificationEvent.ORDER_STATUS_CHANGED: "Your order status has changed",
}


def _render(title: str, greeting: str, lines: List[str]) -> str:
    body = "".join(f"<p>{html.escape(line)}</p>" for line in lines)
    return (
        "<html><body style=\"font-family: Arial, sans-serif\">"
        f"<h2>{html.escape(title)}</h2>"
        f"<p>{html.escape(greeting)}</p>{body}"
        "<p>TISCO Market</p>"
        "</body></html>"
    )


def _short(order_id: str) -> str:
    return str(order_id)[:8]


# =============================================================================
# NOTIFICATION SERVICE
# =============================================================================

class NotificationService:
    """Persist-then-send email notifications"""

    def __init__(
        self,
        store: CommerceStore,
        client: Optional[SendPulseClient] = None,
        admin_emails: Optional[List[str]] = None,
    ):
        self.store = store
        self.client = client or SendPulseClient()
        self.admin_emails = list(config.ADMIN_EMAILS if admin_emails is None else admin_emails)

    async def close(self):
        await self.client.close()

    async def send(
        self,
        event: NotificationEvent,
        recipient_email: str,
        recipient_name: Optional[str],
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        subject: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Store and deliver one notification; returns the stored row or None"""
        subject = subject or SUBJECTS.get(event, f"TISCO Market - {event.value}")
        try:
            record = await self.store.insert_notification({
                "event": event.value,
                "recipient_email": recipient_email,
                "recipient_name": recipient_name,
                "subject": subject,
                "content": content,
                "metadata": metadata or {},
                "status": "pending",
            })
        except Exception as e:
            logger.error("notification_store_failed", notification_event=event.value, error=str(e))
            return None

        if not self.client.configured:
            logger.warning("notification_not_sent", reason="sendpulse_not_configured", notification_event=event.value)
            return record

        try:
            await self.client.send_email([recipient_email], subject, content)
        except Exception as e:
            logger.error(
                "notification_delivery_failed",
                notification_event=event.value,
                recipient=recipient_email,
                error=str(e),
            )
            update = {"status": "failed", "error_message": str(e)}
        else:
            update = {"status": "sent", "sent_at": utcnow()}

        try:
            record = await self.store.update_notification(record["id"], update) or record
        except Exception as e:
            logger.error("notification_update_failed", notification_id=record["id"], error=str(e))
        return record

    # -------------------------------------------------------------------------
    # Event helpers
    # -------------------------------------------------------------------------

    async def notify_admin_order_created(
        self,
        order_id: str,
        customer_email: str,
        customer_name: str,
        total_amount: Any,
        currency: str,
        payment_method: str,
        payment_status: str,
        items_count: int,
    ) -> int:
        """Email every admin recipient; returns how many rows were stored"""
        metadata = {
            "order_id": order_id,
            "customer_email": customer_email,
            "customer_name": customer_name,
            "total_amount": str(total_amount),
            "currency": currency,
            "payment_method": payment_method,
            "payment_status": payment_status,
            "items_count": items_count,
        }
        content = _render(
            f"New order #{_short(order_id)}",
            "A new order was placed.",
            [
                f"Customer: {customer_name} <{customer_email}>",
                f"Total: {total_amount} {currency}",
                f"Payment: {payment_method} ({payment_status})",
                f"Items: {items_count}",
            ],
        )
        sent = 0
        for admin in self.admin_emails:
            if await self.send(NotificationEvent.ORDER_CREATED, admin, "Admin", content, metadata):
                sent += 1
        return sent

    async def notify_payment_success(
        self,
        order_id: str,
        customer_email: str,
        customer_name: str,
        amount: Any,
        currency: str,
        payment_method: str,
        transaction_id: str,
    ):
        content = _render(
            "Payment confirmed",
            f"Hello {customer_name},",
            [
                f"Your payment for order #{_short(order_id)} has been confirmed. Order is now processing.",
                f"Amount: {amount} {currency}",
                f"Method: {payment_method}",
                f"Reference: {transaction_id}",
            ],
        )
        return await self.send(
            NotificationEvent.PAYMENT_SUCCESS,
            customer_email,
            customer_name,
            content,
            {
                "order_id": order_id,
                "amount": str(amount),
                "currency": currency,
                "payment_method": payment_method,
                "transaction_id": transaction_id,
            },
        )

    async def notify_payment_failed(
        self,
        customer_email: str,
        customer_name: str,
        amount: Any,
        currency: str,
        reason: str,
        transaction_reference: str,
    ):
        content = _render(
            "Payment failed",
            f"Hello {customer_name},",
            [
                f"Your payment of {amount} {currency} could not be completed: {reason}",
                "You can retry the payment from your cart.",
            ],
        )
        return await self.send(
            NotificationEvent.PAYMENT_FAILED,
            customer_email,
            customer_name,
            content,
            {"reason": reason, "transaction_reference": transaction_reference},
        )

    async def notify_order_status_changed(
        self,
        order_id: str,
        customer_email: str,
        customer_name: str,
        previous_status: str,
        new_status: str,
    ):
        content = _render(
            f"Order #{_short(order_id)} update",
            f"Hello {customer_name},",
            [f"Your order status changed from {previous_status} to {new_status}."],
        )
        return await self.send(
            NotificationEvent.ORDER_STATUS_CHANGED,
            customer_email,
            customer_name,
            content,
            {"order_id": order_id, "previous_status": previous_status, "new_status": new_status},
        )
