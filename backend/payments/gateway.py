"""
Payment Gateway - Mobile Money Reconciliation
=============================================
Orchestrates ZenoPay mobile-money payments:

- Initiation: pending order -> payment session -> USSD push to the buyer's phone
- Offline methods: bank transfer and cash on delivery await manual verification
- Status poll: internal status, production timeout, optional remote check
- Webhooks: authenticated callbacks routed by classified status
- Session completion: idempotent, per-reference locking, order settlement

Two kinds of rows can be the subject of a callback:

    payment_transactions  existing orders paid through the legacy flow
    payment_sessions      the mobile flow; completion creates or settles an order

Every state change is logged with a correlation_id and written to
payment_logs. A failure to write a log line never breaks a payment.
"""

import asyncio
import json
import os
import re
import secrets
import string
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog

from errors import (
    CommerceError,
    NotFoundError,
    OrderCreationError,
    PermissionDeniedError,
    ValidationError,
    WebhookAuthError,
    ZenoPayError,
)
from orders.service import OrderService
from payments.status_mapping import (
    classify_gateway_status,
    extract_gateway_status,
    map_transaction_status,
)
from payments.webhook_security import WebhookVerifier
from payments.zenopay import ZenoPayClient
from schemas.commerce import (
    AuthUser,
    ExternalPaymentStatus,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    OrderData,
    OrderItemInput,
    OrderStatus,
    PaymentLogEvent,
    PaymentProvider,
    PaymentSession,
    PaymentSessionStatus,
    PaymentStatus,
    PaymentType,
    ProcessPaymentRequest,
    StatusCheckResult,
    TransactionStatus,
    ZenoPayWebhookPayload,
    utcnow,
)
from services.notifications import NotificationService
from storage.repository import CommerceStore

Row = Dict[str, Any]


# =============================================================================
# CONFIGURATION
# =============================================================================

class GatewayConfig:
    PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "https://tiscomarket.store")
    REMOTE_STATUS = os.getenv("ZENOPAY_REMOTE_STATUS", "true").lower() != "false"
    IS_PRODUCTION = os.getenv("ENV", "development").lower() == "production"

    # Frontend polls for 50s; 10s buffer
    DUPLICATE_WINDOW_SECONDS = 60
    PROCESSING_TIMEOUT_SECONDS = 30
    LEGACY_ORDER_WINDOW_MINUTES = 5
    DEFAULT_BUYER_EMAIL = "no-reply@tiscomarket.store"

    BANK_ACCOUNT_NAME = os.getenv("BANK_ACCOUNT_NAME", "TISCO Market Ltd")
    BANK_ACCOUNT_NUMBER = os.getenv("BANK_ACCOUNT_NUMBER", "")
    BANK_NAME = os.getenv("BANK_NAME", "")


config = GatewayConfig()

RESULT_CODE_MESSAGES = {
    "001": "Invalid API key - please contact support",
    "002": "Missing required parameters - please retry",
    "003": "Invalid phone number format - please check your phone number",
    "004": "Insufficient funds - please top up your mobile money account",
    "005": "Payment canceled - you can retry the payment",
    "999": "Gateway error - please try again",
}
RETRYABLE_RESULT_CODES = frozenset(RESULT_CODE_MESSAGES)

OFFLINE_PAYMENT_TYPES = (PaymentType.BANK_TRANSFER, PaymentType.CASH_ON_DELIVERY)
OFFLINE_PROVIDERS = {
    PaymentType.BANK_TRANSFER: "bank",
    PaymentType.CASH_ON_DELIVERY: "cash",
}

PROVIDER_CHANNELS = {
    PaymentProvider.MPESA: "vodacom",
    PaymentProvider.TIGO_PESA: "tigo",
    PaymentProvider.AIRTEL_MONEY: "airtel",
    PaymentProvider.HALOPESA: "halotel",
}

SESSION_STATUS_MESSAGES = {
    PaymentSessionStatus.PROCESSING.value: "Payment is being processed. Please check your phone for confirmation.",
    PaymentSessionStatus.PENDING.value: "Waiting for payment confirmation from mobile money provider.",
    PaymentSessionStatus.FAILED.value: "Payment failed. Please try again or use a different payment method.",
    PaymentSessionStatus.EXPIRED.value: "Payment session expired. Please start a new payment.",
}


# =============================================================================
# HELPERS
# =============================================================================

def normalize_tz_phone(raw: Optional[str]) -> str:
    """Normalize a Tanzanian number to local 0XXXXXXXXX form"""
    digits = re.sub(r"\D", "", str(raw or ""))
    if len(digits) == 10 and digits.startswith("0"):
        return digits
    if len(digits) == 12 and digits.startswith("255"):
        return f"0{digits[3:]}"
    if len(digits) == 9:
        return f"0{digits}"
    raise ValidationError(
        "Invalid Tanzania phone number format",
        details={"raw": raw, "digits": digits},
    )


def map_provider_to_channel(provider: Any) -> Optional[str]:
    try:
        return PROVIDER_CHANNELS.get(PaymentProvider(getattr(provider, "value", provider)))
    except ValueError:
        return None


_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(_BASE36[rem])
    return "".join(reversed(out))


def generate_transaction_reference() -> str:
    ts = _to_base36(int(time.time() * 1000))
    rand = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"TISCO{ts}{rand}"


def session_status_message(status: Optional[str], has_order: bool) -> str:
    if status == PaymentSessionStatus.COMPLETED.value:
        if has_order:
            return "Payment completed and order created successfully"
        return "Payment completed, order is being processed"
    return SESSION_STATUS_MESSAGES.get(status, "Payment status unknown")


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError):
        return False
    return True


def _first(*values: Any) -> Optional[str]:
    for value in values:
        if value:
            return str(value)
    return None


def _age_seconds(created_at: Optional[datetime]) -> float:
    if not isinstance(created_at, datetime):
        return 0.0
    return (utcnow() - created_at).total_seconds()


# =============================================================================
# STATUS ROUTER
# =============================================================================

StatusHandler = Callable[[Row, Row, str], Awaitable[Any]]


class StatusRouter:
    """Routes a classified callback to the handler for (row kind, status)"""

    def __init__(self):
        self._handlers: Dict[tuple, StatusHandler] = {}
        self._logger = structlog.get_logger().bind(component="payment_status_router")

    def register(self, kind: str, status: ExternalPaymentStatus):
        def decorator(handler: StatusHandler):
            self._handlers[(kind, status)] = handler
            return handler
        return decorator

    async def route(
        self,
        kind: str,
        status: Optional[ExternalPaymentStatus],
        row: Row,
        payload: Row,
        correlation_id: str,
    ) -> Optional[Any]:
        handler = self._handlers.get((kind, status))
        if handler is None:
            self._logger.warning(
                "unhandled_webhook_status",
                kind=kind,
                status=status.value if status else None,
                correlation_id=correlation_id,
            )
            return None
        return await handler(row, payload, correlation_id)


# =============================================================================
# PAYMENT GATEWAY
# =============================================================================

class PaymentGateway:
    """
    Mobile-money payment orchestration.

    Example:
        gateway = PaymentGateway(store)
        response = await gateway.initiate_mobile_payment(user, body)
        # buyer approves on the phone; ZenoPay calls the webhook
        await gateway.process_webhook(raw_body, signature, api_key)
    """

    def __init__(
        self,
        store: CommerceStore,
        orders: Optional[OrderService] = None,
        client: Optional[ZenoPayClient] = None,
        verifier: Optional[WebhookVerifier] = None,
        notifications: Optional[NotificationService] = None,
        remote_status: Optional[bool] = None,
        production: Optional[bool] = None,
        public_base_url: Optional[str] = None,
    ):
        self.store = store
        self.notifications = notifications or (orders.notifications if orders else NotificationService(store))
        self.orders = orders or OrderService(store, self.notifications)
        self.client = client or ZenoPayClient()
        self.verifier = verifier or WebhookVerifier()
        self.remote_status = config.REMOTE_STATUS if remote_status is None else remote_status
        self.production = config.IS_PRODUCTION if production is None else production
        self.public_base_url = (public_base_url or config.PUBLIC_BASE_URL).rstrip("/")

        self.router = StatusRouter()
        self._register_handlers()

        # reference -> [lock, holders]; entries are dropped once nobody holds or awaits them
        self._reference_locks: Dict[str, List[Any]] = {}

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(
            component="payment_gateway",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    @asynccontextmanager
    async def _reference_lock(self, reference: str):
        entry = self._reference_locks.setdefault(reference, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._reference_locks.pop(reference, None)

    async def _emit(
        self,
        event: PaymentLogEvent,
        session_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        user_id: Optional[str] = None,
        **data: Any,
    ) -> None:
        """Write a payment_logs row; failures are logged only"""
        try:
            await self.store.insert_payment_log({
                "session_id": session_id,
                "transaction_id": transaction_id,
                "user_id": user_id,
                "event_type": event.value,
                "data": {k: v for k, v in data.items() if v is not None},
            })
        except Exception as e:
            self._base_logger.warning("payment_log_write_failed", event_type=event.value, error=str(e))

    async def _update_session(self, session_id: str, **fields: Any) -> Optional[Row]:
        return await self.store.update_session(session_id, {**fields, "updated_at": utcnow()})

    # =========================================================================
    # INITIATION
    # =========================================================================

    async def _find_active_duplicate(self, user: AuthUser, amount: float, provider: str, phone: str):
        """Return a fresh processing session, expiring stale ones on the way"""
        sessions = await self.store.list_processing_sessions(user.id, amount, provider, phone, limit=5)
        for session in sessions:
            age = _age_seconds(session.get("created_at"))
            if age < config.DUPLICATE_WINDOW_SECONDS:
                await self._emit(
                    PaymentLogEvent.DUPLICATE_PREVENTED,
                    session_id=session["id"],
                    user_id=user.id,
                    transaction_reference=session["transaction_reference"],
                    reason="Active processing session found",
                    age_seconds=round(age),
                )
                return session

            await self._update_session(
                session["id"],
                status=PaymentSessionStatus.FAILED.value,
                failure_reason="Payment timeout - exceeded 60 second window",
            )
            await self._emit(
                PaymentLogEvent.SESSION_EXPIRED,
                session_id=session["id"],
                user_id=user.id,
                transaction_reference=session["transaction_reference"],
                reason="Automatic timeout after 60 seconds",
                age_seconds=round(age),
            )
        return None

    async def initiate_mobile_payment(self, user: AuthUser, body: InitiatePaymentRequest) -> InitiatePaymentResponse:
        if not body.amount or not body.provider or not body.phone_number or body.order_data is None:
            raise ValidationError(
                "Missing required fields",
                details={"required": ["amount", "provider", "phone_number", "order_data"]},
            )

        order_data: OrderData = body.order_data
        if not order_data.items:
            raise ValidationError("Order must contain at least one item")

        priced = await self.orders.price_items(order_data.items)
        calculated = round(sum(i["price"] * i["quantity"] for i in priced), 2)
        if abs(calculated - float(body.amount)) > 0.01:
            raise ValidationError(
                "Amount mismatch",
                details={"calculated": calculated, "provided": body.amount},
            )
        order_data = order_data.model_copy(
            update={"items": [OrderItemInput.model_validate(i) for i in priced]}
        )

        try:
            phone = normalize_tz_phone(body.phone_number)
        except ValidationError:
            raise ValidationError(
                "Invalid phone number format. Please use Tanzania mobile numbers (07XX XXX XXX)."
            )

        provider = body.provider.value
        amount = calculated

        duplicate = await self._find_active_duplicate(user, amount, provider, body.phone_number)
        if duplicate:
            return InitiatePaymentResponse(
                success=True,
                transaction_reference=duplicate["transaction_reference"],
                status=duplicate["status"],
                message="Payment session already exists",
                session_id=duplicate["id"],
                order_id=duplicate.get("order_id"),
                is_duplicate=True,
            )

        customer_name = order_data.customer_name or None
        order = await self.orders.insert_order_with_items(
            {
                "user_id": user.id,
                "total_amount": calculated,
                "currency": body.currency,
                "status": OrderStatus.PENDING.value,
                "payment_status": PaymentStatus.PENDING.value,
                "payment_method": f"Mobile Money ({provider})",
                "shipping_address": order_data.shipping_address or "N/A",
                "address_line_1": order_data.address_line_1,
                "city": order_data.city,
                "email": order_data.email,
                "first_name": order_data.first_name,
                "last_name": order_data.last_name,
                "contact_phone": order_data.contact_phone or order_data.phone,
                "notes": order_data.notes,
                "customer_name": customer_name,
                "customer_email": order_data.email,
                "customer_phone": order_data.contact_phone or order_data.phone,
            },
            priced,
        )

        reference = generate_transaction_reference()
        log = self._get_logger(reference)
        session = await self.store.insert_session({
            "user_id": user.id,
            "order_id": order["id"],
            "amount": amount,
            "currency": body.currency,
            "provider": provider,
            "phone_number": body.phone_number,
            "transaction_reference": reference,
            "order_data": order_data.model_dump(mode="json"),
            "status": PaymentSessionStatus.PENDING.value,
        })
        await self._emit(
            PaymentLogEvent.PAYMENT_INITIATED,
            session_id=session["id"],
            user_id=user.id,
            transaction_reference=reference,
            order_id=order["id"],
            amount=amount,
            currency=body.currency,
            provider=provider,
        )
        log.info("payment_initiated", session_id=session["id"], order_id=order["id"], amount=amount)

        buyer_name = (
            " ".join(p for p in (user.first_name, user.last_name) if p)
            or order_data.customer_name
            or "Customer"
        )
        buyer_email = user.email or order_data.email or config.DEFAULT_BUYER_EMAIL
        channel = map_provider_to_channel(provider)

        try:
            response = await self.client.create_order(
                order_id=reference,
                buyer_name=buyer_name,
                buyer_phone=phone,
                buyer_email=buyer_email,
                amount=int(round(amount)),
                webhook_url=f"{self.public_base_url}/api/payments/mobile/webhook",
                channel=channel,
            )
        except ZenoPayError as e:
            await self._fail_initiation(session, str(e), retryable=e.retryable, result_code=None, log=log)
            raise ZenoPayError(
                e.message,
                retryable=e.retryable,
                details=self._failure_details(session, order, e.retryable, None),
            ) from e
        except httpx.HTTPError as e:
            await self._fail_initiation(session, str(e), retryable=True, result_code=None, log=log)
            raise ZenoPayError(
                "Payment initiation failed. Please try again.",
                details=self._failure_details(session, order, True, None),
            ) from e

        result_code = str(
            response.get("code") or response.get("result_code") or response.get("resultcode") or "000"
        )
        if result_code != "000":
            message = RESULT_CODE_MESSAGES.get(result_code) or response.get("message") or "Payment failed"
            retryable = result_code in RETRYABLE_RESULT_CODES
            await self._fail_initiation(session, message, retryable=retryable, result_code=result_code, log=log)
            raise ZenoPayError(
                message,
                retryable=retryable,
                details=self._failure_details(session, order, retryable, result_code),
            )

        data = response.get("data") if isinstance(response.get("data"), dict) else {}
        gateway_id = _first(
            data.get("order_id"),
            data.get("transaction_id"),
            response.get("order_id"),
            response.get("transaction_id"),
        )
        await self._update_session(
            session["id"],
            status=PaymentSessionStatus.PROCESSING.value,
            gateway_transaction_id=gateway_id,
        )
        await self._emit(
            PaymentLogEvent.PAYMENT_PROCESSING,
            session_id=session["id"],
            user_id=user.id,
            transaction_reference=reference,
            gateway_transaction_id=gateway_id,
            phone=phone,
            channel=channel,
            result_code=result_code,
        )
        log.info("payment_request_sent", gateway_transaction_id=gateway_id, channel=channel)

        return InitiatePaymentResponse(
            success=True,
            transaction_reference=reference,
            status=PaymentSessionStatus.PROCESSING,
            message=f"Payment request sent to {phone}. Please approve on your phone.",
            session_id=session["id"],
            order_id=order["id"],
        )

    @staticmethod
    def _failure_details(session: Row, order: Row, retryable: bool, result_code: Optional[str]) -> Row:
        return {
            "success": False,
            "retryable": retryable,
            "result_code": result_code,
            "transaction_reference": session["transaction_reference"],
            "order_id": order["id"],
            "session_id": session["id"],
        }

    async def _fail_initiation(self, session: Row, message: str, retryable: bool, result_code, log) -> None:
        await self._update_session(
            session["id"],
            status=PaymentSessionStatus.FAILED.value,
            failure_reason=message,
        )
        event = PaymentLogEvent.PAYMENT_FAILED_RETRYABLE if retryable and result_code else PaymentLogEvent.PAYMENT_FAILED
        await self._emit(
            event,
            session_id=session["id"],
            user_id=session["user_id"],
            transaction_reference=session["transaction_reference"],
            error=message,
            result_code=result_code,
            retryable=retryable,
        )
        log.warning("payment_initiation_failed", error=message, result_code=result_code, retryable=retryable)

    # =========================================================================
    # OFFLINE PAYMENTS
    # =========================================================================

    async def process_payment(self, user: AuthUser, body: ProcessPaymentRequest) -> Row:
        """Record a bank-transfer or cash-on-delivery payment for a pending order.

        The transaction waits in `awaiting_verification` until the back office
        confirms the money. Cash on delivery moves the order to processing so it
        can ship; the order stays unpaid either way.
        """
        if not body.order_id or not body.amount:
            raise ValidationError("Order ID and amount are required")
        try:
            payment_type = PaymentType(body.payment_type)
        except ValueError:
            raise ValidationError("Unsupported payment method", details={"payment_type": body.payment_type})
        if payment_type not in OFFLINE_PAYMENT_TYPES:
            raise ValidationError(
                "Unsupported payment method",
                details={"payment_type": payment_type.value, "supported": [t.value for t in OFFLINE_PAYMENT_TYPES]},
            )

        order = await self.store.get_order(body.order_id)
        if order is None or order.get("user_id") != user.id:
            raise NotFoundError("Order not found")
        if order.get("status") != OrderStatus.PENDING.value:
            raise ValidationError(f"Order cannot be paid. Current status: {order.get('status')}")
        if abs(float(order.get("total_amount") or 0) - float(body.amount)) > 0.01:
            raise ValidationError("Payment amount does not match order total")

        reference = generate_transaction_reference()
        log = self._get_logger(reference)
        txn = await self.store.insert_transaction({
            "order_id": order["id"],
            "user_id": user.id,
            "amount": float(body.amount),
            "currency": body.currency,
            "status": TransactionStatus.AWAITING_VERIFICATION.value,
            "payment_type": payment_type.value,
            "provider": OFFLINE_PROVIDERS[payment_type],
            "transaction_reference": reference,
        })

        response: Row = {
            "status": TransactionStatus.AWAITING_VERIFICATION.value,
            "reference": reference,
        }
        if payment_type == PaymentType.BANK_TRANSFER:
            response["message"] = "Bank transfer payment recorded. Please transfer funds and upload receipt."
            response["bank_details"] = {
                "account_name": config.BANK_ACCOUNT_NAME,
                "account_number": config.BANK_ACCOUNT_NUMBER,
                "bank_name": config.BANK_NAME,
                "reference": reference,
            }
        else:
            await self.store.update_order(order["id"], {
                "status": OrderStatus.PROCESSING.value,
                "payment_method": "Cash on Delivery",
                "updated_at": utcnow(),
            })
            response["message"] = "Cash on delivery confirmed. Pay when your order arrives."

        await self._emit(
            PaymentLogEvent.PAYMENT_AWAITING_VERIFICATION,
            transaction_id=txn["id"],
            user_id=user.id,
            order_id=order["id"],
            payment_type=payment_type.value,
        )
        log.info("offline_payment_recorded", order_id=order["id"], payment_type=payment_type.value)
        return {"transaction": txn, "payment_response": response}

    # =========================================================================
    # STATUS POLLING
    # =========================================================================

    async def _poll_remote(self, reference: str, log, raise_errors: bool = False) -> Optional[ExternalPaymentStatus]:
        try:
            remote = await self.client.get_order_status(reference)
        except (ZenoPayError, httpx.HTTPError) as e:
            log.warning("remote_status_failed", error=str(e))
            if raise_errors:
                raise
            return None
        raw = extract_gateway_status(remote)
        classified = classify_gateway_status(raw)
        log.info("remote_status_checked", raw=raw, classified=classified.value if classified else None)
        return classified

    async def check_status(self, user: AuthUser, reference: Optional[str]) -> StatusCheckResult:
        if not reference:
            raise ValidationError("reference required")

        is_session = False
        row = await self.store.find_transaction(references=[reference], gateway_ids=[reference], user_id=user.id)
        if row is None:
            row = await self.store.find_session(references=[reference], gateway_ids=[reference], user_id=user.id)
            is_session = row is not None
        if row is None:
            raise NotFoundError("Transaction not found")

        log = self._get_logger(row["transaction_reference"])
        status = map_transaction_status(row.get("status"))

        if (
            status == ExternalPaymentStatus.PROCESSING
            and self.production
            and _age_seconds(row.get("created_at")) > config.PROCESSING_TIMEOUT_SECONDS
        ):
            log.info("payment_timed_out", reference=row["transaction_reference"])
            status = ExternalPaymentStatus.FAILED

        offline = row.get("payment_type") in {t.value for t in OFFLINE_PAYMENT_TYPES}
        if (
            self.remote_status
            and not offline
            and status in (ExternalPaymentStatus.PENDING, ExternalPaymentStatus.PROCESSING)
        ):
            classified = await self._poll_remote(row["transaction_reference"], log)
            if classified:
                status = classified
            if status == ExternalPaymentStatus.COMPLETED and is_session:
                try:
                    await self.complete_session(
                        row,
                        {"transaction_reference": row["transaction_reference"], "status": "COMPLETED", "source": "status_poll"},
                        correlation_id=row["transaction_reference"],
                    )
                    row = await self.store.find_session(
                        references=[row["transaction_reference"]], user_id=user.id
                    ) or row
                except CommerceError as e:
                    log.error("session_finalize_failed", error=e.message)

        return StatusCheckResult(status=status, raw=row, is_session=is_session)

    async def get_session_status(self, user: AuthUser, reference: Optional[str]) -> Row:
        if not reference:
            raise ValidationError("Transaction reference is required")

        session = await self.store.find_session(references=[reference])
        if session is None and _is_uuid(reference):
            session = await self.store.get_session_by_order_id(reference)
        if session is None:
            raise NotFoundError("Payment session not found")
        if session.get("user_id") != user.id:
            raise PermissionDeniedError("Permission denied")

        order = None
        if session.get("order_id"):
            order = await self.store.get_order(session["order_id"])
        elif session.get("status") == PaymentSessionStatus.COMPLETED.value:
            created = session["created_at"]
            order = await self.store.find_paid_order(
                user.id,
                session["amount"],
                created,
                created + timedelta(minutes=config.LEGACY_ORDER_WINDOW_MINUTES),
            )

        record = PaymentSession.model_validate(session)
        return {
            "session": record.model_dump(
                mode="json",
                include={
                    "id", "transaction_reference", "status", "amount", "currency",
                    "provider", "failure_reason", "created_at", "updated_at",
                },
            ),
            "order": {
                "id": order["id"],
                "status": order.get("status"),
                "payment_status": order.get("payment_status"),
                "total_amount": order.get("total_amount"),
                "created_at": order.get("created_at"),
            } if order else None,
            "message": session_status_message(session.get("status"), order is not None),
        }

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def process_webhook(self, raw_body: bytes, signature: Optional[str], api_key: Optional[str]) -> Row:
        """Authenticated gateway callback for transactions and sessions"""
        self.verifier.authenticate(raw_body, signature, api_key)

        try:
            body = json.loads(raw_body or b"{}")
        except ValueError:
            raise ValidationError("Invalid JSON payload")
        if not isinstance(body, dict):
            raise ValidationError("Invalid JSON payload")

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        references = [v for v in (body.get("order_id"), data.get("order_id"), body.get("reference"),
                                  body.get("transaction_reference")) if v]
        gateway_ids = [v for v in (body.get("transaction_id"), data.get("transaction_id"),
                                   body.get("gateway_transaction_id")) if v]

        kind = "transaction"
        row = await self.store.find_transaction(references=references[:1], gateway_ids=gateway_ids[:1])
        if row is None:
            kind = "session"
            row = await self.store.find_session(references=references[:1], gateway_ids=gateway_ids[:1])
        if row is None:
            self._base_logger.warning("webhook_row_not_found", references=references, gateway_ids=gateway_ids)
            raise NotFoundError("Transaction not found")

        correlation_id = row["transaction_reference"]
        log = self._get_logger(correlation_id)

        raw_status = _first(
            body.get("status"),
            data.get("status"),
            body.get("payment_status"),
            data.get("payment_status"),
            body.get("event_type"),
            body.get("event"),
            body.get("type"),
        ) or ""
        status = classify_gateway_status(raw_status)
        log.info("webhook_received", kind=kind, raw_status=raw_status, status=status.value if status else None)

        payload = {
            **body,
            "gateway_transaction_id": _first(gateway_ids[0] if gateway_ids else None, data.get("transaction_id")),
        }
        try:
            await self.router.route(kind, status, row, payload, correlation_id)
        except Exception as e:
            log.error("webhook_handler_failed", kind=kind, error=str(e), error_type=type(e).__name__)
            await self._emit(
                PaymentLogEvent.WEBHOOK_ERROR,
                session_id=row["id"] if kind == "session" else None,
                transaction_id=row["id"] if kind == "transaction" else None,
                user_id=row.get("user_id"),
                error=str(e),
            )

        return {"received": True}

    async def process_mobile_webhook(self, payload: ZenoPayWebhookPayload, api_key: Optional[str] = None) -> Row:
        """ZenoPay's direct mobile-money callback"""
        started = time.monotonic()
        if not payload.order_id or not payload.payment_status:
            raise ValidationError("Missing required fields: order_id, payment_status")

        if self.production and not self.verifier.verify_api_key(api_key):
            raise WebhookAuthError("Invalid webhook authentication")

        reference = payload.order_id
        log = self._get_logger(reference)

        if payload.payment_status != "COMPLETED":
            log.info("mobile_webhook_not_completed", payment_status=payload.payment_status)
            return {"success": True, "message": f"Payment status: {payload.payment_status}"}

        session = await self.store.find_session(references=[reference])
        if session is None:
            log.warning("mobile_webhook_session_not_found")
            raise NotFoundError("Payment session not found")

        if session.get("status") == PaymentSessionStatus.COMPLETED.value:
            await self._emit(
                PaymentLogEvent.DUPLICATE_PREVENTED,
                session_id=session["id"],
                user_id=session["user_id"],
                transaction_reference=reference,
                reason="Webhook already processed",
            )
            return {"success": True, "message": "Payment already processed", "idempotent": True}

        await self._emit(
            PaymentLogEvent.WEBHOOK_RECEIVED,
            session_id=session["id"],
            user_id=session["user_id"],
            transaction_reference=reference,
            payment_status=payload.payment_status,
            reference=payload.reference,
            transid=payload.transid,
        )

        gateway_id = payload.transid or payload.reference or reference
        session = await self._update_session(
            session["id"],
            status=PaymentSessionStatus.PROCESSING.value,
            gateway_transaction_id=gateway_id,
        ) or session

        try:
            result = await self.complete_session(
                session,
                {**payload.model_dump(exclude_none=True), "gateway_transaction_id": gateway_id},
                correlation_id=reference,
            )
        except CommerceError as e:
            await self._emit(
                PaymentLogEvent.WEBHOOK_ERROR,
                session_id=session["id"],
                user_id=session["user_id"],
                transaction_reference=reference,
                error=e.message,
            )
            raise OrderCreationError("Order creation failed", details={"message": e.message}) from e

        elapsed_ms = int((time.monotonic() - started) * 1000)
        await self._emit(
            PaymentLogEvent.WEBHOOK_PROCESSED,
            session_id=session["id"],
            user_id=session["user_id"],
            transaction_reference=reference,
            order_id=result["order_id"],
            processing_time_ms=elapsed_ms,
            items_count=result["items_count"],
        )
        return {
            "success": True,
            "message": "Payment processed successfully",
            "order_id": result["order_id"],
            "transaction_reference": reference,
            "processing_time_ms": elapsed_ms,
        }

    # =========================================================================
    # HANDLERS (registered with the router)
    # =========================================================================

    def _register_handlers(self):
        @self.router.register("transaction", ExternalPaymentStatus.COMPLETED)
        async def transaction_success(row, payload, correlation_id):
            return await self._on_transaction_success(row, payload, correlation_id)

        @self.router.register("transaction", ExternalPaymentStatus.PENDING)
        async def transaction_pending(row, payload, correlation_id):
            return await self._on_transaction_pending(row, correlation_id)

        @self.router.register("transaction", ExternalPaymentStatus.FAILED)
        async def transaction_failed(row, payload, correlation_id):
            reason = payload.get("failure_reason") or "Payment failed"
            return await self._on_transaction_closed(row, TransactionStatus.FAILED, reason, correlation_id)

        @self.router.register("transaction", ExternalPaymentStatus.CANCELLED)
        async def transaction_cancelled(row, payload, correlation_id):
            reason = payload.get("failure_reason") or "Payment was cancelled"
            return await self._on_transaction_closed(row, TransactionStatus.CANCELLED, reason, correlation_id)

        @self.router.register("session", ExternalPaymentStatus.COMPLETED)
        async def session_success(row, payload, correlation_id):
            return await self.complete_session(row, payload, correlation_id)

        @self.router.register("session", ExternalPaymentStatus.PENDING)
        async def session_pending(row, payload, correlation_id):
            return await self._on_session_pending(row, correlation_id)

        @self.router.register("session", ExternalPaymentStatus.FAILED)
        async def session_failed(row, payload, correlation_id):
            reason = payload.get("failure_reason") or "Payment failed"
            return await self.close_session(row, PaymentSessionStatus.FAILED, reason, correlation_id)

        @self.router.register("session", ExternalPaymentStatus.CANCELLED)
        async def session_cancelled(row, payload, correlation_id):
            return await self.close_session(row, PaymentSessionStatus.CANCELLED, "Payment was cancelled", correlation_id)

    async def _customer_for_order(self, order: Optional[Row]):
        if not order:
            return None, None
        email = order.get("email") or order.get("customer_email")
        name = order.get("customer_name") or " ".join(
            p for p in (order.get("first_name"), order.get("last_name")) if p
        )
        if not email and order.get("user_id"):
            user = await self.store.get_user(order["user_id"])
            if user:
                email = user.get("email")
                name = name or " ".join(p for p in (user.get("first_name"), user.get("last_name")) if p)
        return email, name or "Customer"

    async def _on_transaction_success(self, txn: Row, payload: Row, correlation_id: str):
        log = self._get_logger(correlation_id)
        if txn.get("status") == TransactionStatus.COMPLETED.value:
            await self._emit(
                PaymentLogEvent.DUPLICATE_PREVENTED,
                transaction_id=txn["id"],
                user_id=txn.get("user_id"),
                transaction_reference=txn["transaction_reference"],
                reason="Webhook already processed",
            )
            log.info("transaction_already_completed", transaction_id=txn["id"])
            return

        now = utcnow()
        await self.store.update_transaction(txn["id"], {
            "status": TransactionStatus.COMPLETED.value,
            "gateway_transaction_id": payload.get("gateway_transaction_id") or txn.get("gateway_transaction_id"),
            "completed_at": now,
            "webhook_data": payload,
            "updated_at": now,
        })

        result = None
        if txn.get("order_id"):
            result = await self.orders.settle_payment(txn["order_id"])
            log.info("order_settled", order_id=txn["order_id"], path=result.path.value)

        await self._emit(
            PaymentLogEvent.PAYMENT_COMPLETED,
            transaction_id=txn["id"],
            user_id=txn.get("user_id"),
            transaction_reference=txn["transaction_reference"],
            order_id=txn.get("order_id"),
        )

        email, name = await self._customer_for_order(result.order if result else None)
        if email:
            await self.notifications.notify_payment_success(
                order_id=txn["order_id"],
                customer_email=email,
                customer_name=name,
                amount=txn.get("amount"),
                currency=txn.get("currency") or "TZS",
                payment_method="Mobile Money",
                transaction_id=txn["transaction_reference"],
            )
        log.info("transaction_completed", transaction_id=txn["id"])

    async def _on_transaction_pending(self, txn: Row, correlation_id: str):
        if txn.get("status") != TransactionStatus.PENDING.value:
            await self.store.update_transaction(txn["id"], {
                "status": TransactionStatus.PENDING.value,
                "updated_at": utcnow(),
            })
        await self._emit(
            PaymentLogEvent.PAYMENT_PENDING,
            transaction_id=txn["id"],
            user_id=txn.get("user_id"),
            message="Payment is pending confirmation",
        )
        self._get_logger(correlation_id).info("transaction_pending", transaction_id=txn["id"])

    async def _on_transaction_closed(self, txn: Row, status: TransactionStatus, reason: str, correlation_id: str):
        log = self._get_logger(correlation_id)
        now = utcnow()
        stamp = "failed_at" if status == TransactionStatus.FAILED else "cancelled_at"
        await self.store.update_transaction(txn["id"], {
            "status": status.value,
            "failure_reason": reason,
            stamp: now,
            "updated_at": now,
        })

        payment_status = PaymentStatus.FAILED if status == TransactionStatus.FAILED else PaymentStatus.CANCELLED
        order = None
        if txn.get("order_id"):
            result = await self.orders.apply_update(txn["order_id"], {"payment_status": payment_status.value})
            order = result.order

        event = PaymentLogEvent.PAYMENT_FAILED if status == TransactionStatus.FAILED else PaymentLogEvent.PAYMENT_CANCELLED
        await self._emit(event, transaction_id=txn["id"], user_id=txn.get("user_id"), reason=reason)

        if status == TransactionStatus.FAILED:
            email, name = await self._customer_for_order(order)
            if email:
                await self.notifications.notify_payment_failed(
                    customer_email=email,
                    customer_name=name,
                    amount=txn.get("amount"),
                    currency=txn.get("currency") or "TZS",
                    reason=reason,
                    transaction_reference=txn["transaction_reference"],
                )
        log.info("transaction_closed", transaction_id=txn["id"], status=status.value, reason=reason)

    async def _on_session_pending(self, session: Row, correlation_id: str):
        if session.get("status") != PaymentSessionStatus.PENDING.value:
            await self._update_session(session["id"], status=PaymentSessionStatus.PENDING.value)
        await self._emit(
            PaymentLogEvent.PAYMENT_PENDING,
            session_id=session["id"],
            user_id=session.get("user_id"),
            message="Payment is pending confirmation",
        )
        self._get_logger(correlation_id).info("session_pending", session_id=session["id"])

    async def close_session(
        self,
        session: Row,
        status: PaymentSessionStatus,
        reason: str,
        correlation_id: Optional[str] = None,
    ) -> Optional[Row]:
        """Move a session to failed/cancelled/expired and log why"""
        updated = await self._update_session(session["id"], status=status.value, failure_reason=reason)
        event = {
            PaymentSessionStatus.CANCELLED: PaymentLogEvent.PAYMENT_CANCELLED,
            PaymentSessionStatus.EXPIRED: PaymentLogEvent.SESSION_EXPIRED,
        }.get(status, PaymentLogEvent.PAYMENT_FAILED)
        await self._emit(event, session_id=session["id"], user_id=session.get("user_id"), reason=reason)
        self._get_logger(correlation_id or session.get("transaction_reference")).info(
            "session_closed", session_id=session["id"], status=status.value, reason=reason
        )
        return updated

    # =========================================================================
    # SESSION COMPLETION
    # =========================================================================

    async def _linked_order(self, session: Row, payload: Row) -> Optional[Row]:
        """Session's own order, else a webhook-supplied order owned by the same user"""
        if session.get("order_id"):
            order = await self.store.get_order(session["order_id"])
            if order:
                return order

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        candidate = payload.get("order_id") or data.get("order_id")
        if candidate and _is_uuid(candidate):
            order = await self.store.get_order(str(candidate))
            if order and order.get("user_id") == session.get("user_id"):
                return order
        return None

    async def _fail_completion(self, session: Row, reason: str, log) -> None:
        await self._update_session(session["id"], status=PaymentSessionStatus.FAILED.value, failure_reason=reason)
        await self._emit(
            PaymentLogEvent.ORDER_CREATION_FAILED,
            session_id=session["id"],
            user_id=session.get("user_id"),
            transaction_reference=session.get("transaction_reference"),
            error=reason,
        )
        log.error("session_completion_failed", session_id=session["id"], reason=reason)

    async def complete_session(self, session: Row, payload: Row, correlation_id: Optional[str] = None) -> Row:
        """
        Finalize a paid session exactly once.

        Returns:
            {"order_id", "items_count", "idempotent"}

        Raises:
            OrderCreationError: the session could not be turned into a paid order
        """
        reference = session["transaction_reference"]
        log = self._get_logger(correlation_id or reference)

        async with self._reference_lock(reference):
            current = await self.store.find_session(references=[reference]) or session

            existing = await self.store.find_transaction(
                references=[reference],
                statuses=[TransactionStatus.COMPLETED.value, TransactionStatus.PROCESSING.value],
            )
            if existing:
                if current.get("status") != PaymentSessionStatus.COMPLETED.value:
                    await self._update_session(current["id"], status=PaymentSessionStatus.COMPLETED.value)
                log.info("session_already_completed", order_id=existing.get("order_id"))
                return {"order_id": existing.get("order_id"), "items_count": 0, "idempotent": True}

            provider = current.get("provider")
            payment_method = f"Mobile Money ({provider})" if provider else "Mobile Money"
            order_data = OrderData.model_validate(current.get("order_data") or {})

            order = await self._linked_order(current, payload)
            if order is not None:
                items_count = len(order.get("items") or [])
                if not items_count and order_data.items:
                    priced = await self.orders.price_known_items(order_data.items)
                    if priced:
                        await self.store.insert_order_items(order["id"], priced)
                        items_count = len(priced)
                amount = current.get("amount")
            else:
                if not order_data.items:
                    await self._fail_completion(current, "No items in session", log)
                    raise OrderCreationError("No items in session")

                priced = await self.orders.price_known_items(order_data.items)
                if not priced:
                    await self._fail_completion(current, "No valid items after validation", log)
                    raise OrderCreationError("No valid items after validation")

                amount = round(sum(i["price"] * i["quantity"] for i in priced), 2)
                try:
                    order = await self.orders.insert_order_with_items(
                        {
                            "user_id": current["user_id"],
                            "total_amount": amount,
                            "currency": current.get("currency") or "TZS",
                            "payment_method": order_data.payment_method or payment_method,
                            "shipping_address": order_data.shipping_address,
                            "notes": order_data.notes,
                            "status": OrderStatus.PENDING.value,
                            "payment_status": PaymentStatus.PENDING.value,
                            "contact_phone": order_data.contact_phone,
                            "address_line_1": order_data.address_line_1,
                            "city": order_data.city,
                            "email": order_data.email,
                            "place": order_data.place,
                            "first_name": order_data.first_name,
                            "last_name": order_data.last_name,
                            "country": order_data.country,
                        },
                        priced,
                    )
                except OrderCreationError:
                    await self._fail_completion(current, "Order items creation failed", log)
                    raise
                except Exception as e:
                    await self._fail_completion(current, "Order creation failed after payment success", log)
                    raise OrderCreationError("Order creation failed after payment success") from e
                items_count = len(priced)

            result = await self.orders.settle_payment(
                order["id"],
                payment_method=payment_method,
                current_status=order.get("status"),
            )

            gateway_id = payload.get("gateway_transaction_id") or current.get("gateway_transaction_id")
            transaction = await self.store.insert_transaction({
                "order_id": order["id"],
                "user_id": current["user_id"],
                "amount": amount,
                "currency": current.get("currency") or "TZS",
                "status": TransactionStatus.COMPLETED.value,
                "payment_type": "mobile_money",
                "provider": provider,
                "transaction_reference": reference,
                "gateway_transaction_id": gateway_id,
                "completed_at": utcnow(),
                "webhook_data": payload,
            })

            await self._update_session(
                current["id"],
                status=PaymentSessionStatus.COMPLETED.value,
                order_id=order["id"],
                gateway_transaction_id=gateway_id,
            )
            cleared = await self.store.clear_cart(current["user_id"])

        await self._emit(
            PaymentLogEvent.PAYMENT_COMPLETED,
            session_id=current["id"],
            transaction_id=transaction["id"],
            user_id=current["user_id"],
            transaction_reference=reference,
            order_id=order["id"],
            write_path=result.path.value,
        )
        log.info(
            "session_completed",
            order_id=order["id"],
            items=items_count,
            cart_items_cleared=cleared,
            write_path=result.path.value,
        )

        sent = await self.notifications.notify_admin_order_created(
            order_id=order["id"],
            customer_email=order_data.email or "customer@example.com",
            customer_name=order_data.customer_name or "Customer",
            total_amount=amount,
            currency=current.get("currency") or "TZS",
            payment_method="Mobile Money",
            payment_status=PaymentStatus.PAID.value,
            items_count=items_count,
        )
        await self._emit(
            PaymentLogEvent.NOTIFICATION_SENT if sent else PaymentLogEvent.NOTIFICATION_FAILED,
            session_id=current["id"],
            user_id=current["user_id"],
            order_id=order["id"],
            recipients=sent,
        )

        return {"order_id": order["id"], "items_count": items_count, "idempotent": False}

    # =========================================================================
    # BACKGROUND RECONCILIATION
    # =========================================================================

    async def reconcile_session(self, session: Row, expire_after_seconds: int) -> str:
        """
        Poll the gateway for one stuck session and apply the result.

        Returns one of: completed, failed, cancelled, expired, pending, error
        """
        reference = session["transaction_reference"]
        log = self._get_logger(reference)

        try:
            status = await self._poll_remote(reference, log, raise_errors=True)
        except (ZenoPayError, httpx.HTTPError):
            # outcome unknown; leave the session for the next cycle
            return "error"

        if status == ExternalPaymentStatus.COMPLETED:
            try:
                await self.complete_session(session, {"transaction_reference": reference, "source": "monitor"}, reference)
            except CommerceError as e:
                log.error("monitor_completion_failed", error=e.message)
                return "error"
            return "completed"

        if status == ExternalPaymentStatus.FAILED:
            await self.close_session(session, PaymentSessionStatus.FAILED, "Payment failed at gateway", reference)
            return "failed"

        if status == ExternalPaymentStatus.CANCELLED:
            await self.close_session(session, PaymentSessionStatus.CANCELLED, "Payment was cancelled", reference)
            return "cancelled"

        if _age_seconds(session.get("created_at")) > expire_after_seconds:
            await self.close_session(
                session,
                PaymentSessionStatus.EXPIRED,
                "Payment not confirmed before session expiry",
                reference,
            )
            return "expired"

        return "pending"

    async def close(self):
        await self.client.close()
