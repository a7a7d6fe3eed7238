# schemas/commerce.py
# ============================================================================
# TISCO MARKET BACKEND v1.0 — DOMAIN SCHEMAS
# ============================================================================
# Enums, persisted records and request/response bodies shared by the
# storefront and back-office routes.
# ============================================================================

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    AWAITING_VERIFICATION = "awaiting_verification"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentSessionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ExternalPaymentStatus(str, Enum):
    """Coarse status surfaced to the storefront while it polls"""
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PROCESSING = "PROCESSING"
    PENDING = "PENDING"
    CANCELLED = "CANCELLED"


class PaymentProvider(str, Enum):
    MPESA = "M-Pesa"
    TIGO_PESA = "Tigo Pesa"
    AIRTEL_MONEY = "Airtel Money"
    HALOPESA = "Halopesa"


class PaymentLogEvent(str, Enum):
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_PROCESSING = "payment_processing"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_AWAITING_VERIFICATION = "payment_awaiting_verification"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_FAILED_RETRYABLE = "payment_failed_retryable"
    PAYMENT_CANCELLED = "payment_cancelled"
    SESSION_EXPIRED = "session_expired"
    ORDER_CREATED = "order_created"
    ORDER_CREATION_FAILED = "order_creation_failed"
    WEBHOOK_RECEIVED = "webhook_received"
    WEBHOOK_PROCESSED = "webhook_processed"
    WEBHOOK_ERROR = "webhook_error"
    DUPLICATE_PREVENTED = "duplicate_prevented"
    NOTIFICATION_SENT = "notification_sent"
    NOTIFICATION_FAILED = "notification_failed"


class PaymentType(str, Enum):
    MOBILE_MONEY = "mobile_money"
    BANK_TRANSFER = "bank_transfer"
    CASH_ON_DELIVERY = "cash_on_delivery"
    OFFICE_PAYMENT = "office_payment"


class NotificationEvent(str, Enum):
    ORDER_CREATED = "order_created"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    ORDER_STATUS_CHANGED = "order_status_changed"


class WritePath(str, Enum):
    """Which of the degrading order writes finally succeeded"""
    FULL = "full"
    WITHOUT_PAID_AT = "without_paid_at"
    STATUS_ONLY = "status_only"


# ============================================================================
# SECTION 2: ORDER PAYLOADS
# ============================================================================

class OrderItemInput(BaseModel):
    """Line item as submitted by the storefront (price is advisory)"""
    model_config = ConfigDict(populate_by_name=True)

    product_id: Optional[str] = Field(default=None, alias="productId")
    quantity: int = Field(ge=1)
    price: float = 0

    @field_validator("product_id", mode="before")
    @classmethod
    def _stringify_id(cls, v):
        return str(v) if v is not None else None


class OrderData(BaseModel):
    """Checkout snapshot stored on a payment session"""
    items: List[OrderItemInput] = Field(default_factory=list)
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    contact_phone: Optional[str] = None
    address_line_1: Optional[str] = None
    city: Optional[str] = None
    place: Optional[str] = None
    country: Optional[str] = None
    shipping_address: Optional[str] = None
    payment_method: Optional[str] = None
    currency: Optional[str] = None
    notes: Optional[str] = None

    @property
    def customer_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class CreateOrderRequest(BaseModel):
    items: List[OrderItemInput] = Field(default_factory=list)
    shipping_address: Optional[str] = None
    payment_method: Optional[str] = None
    currency: str = "TZS"
    notes: Optional[str] = None
    contact_phone: Optional[str] = None
    address_line_1: Optional[str] = None
    city: Optional[str] = None
    email: Optional[str] = None
    place: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    country: Optional[str] = None

    @field_validator(
        "address_line_1", "city", "email", "place", "first_name", "last_name", "country",
        mode="before",
    )
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v


class OrderStatusUpdateRequest(BaseModel):
    status: Optional[str] = None
    reason: Optional[str] = None


class AdminOrderUpdateRequest(BaseModel):
    """Only the fields actually sent are applied (see model_fields_set)"""
    status: Optional[str] = None
    payment_status: Optional[str] = None
    payment_method: Optional[str] = None
    shipping_address: Optional[Any] = None
    notes: Optional[str] = None
    currency: Optional[str] = None
    total_amount: Optional[float] = None
    shipping_amount: Optional[float] = None
    tax_amount: Optional[float] = None
    tracking_number: Optional[str] = None


class OrderUpdateResult(BaseModel):
    order: Dict[str, Any]
    path: WritePath = WritePath.FULL
    warning: Optional[str] = None


# ============================================================================
# SECTION 3: PAYMENTS
# ============================================================================

class PaymentSession(BaseModel):
    """Row of payment_sessions; the transaction_reference is the gateway order_id"""
    id: str
    user_id: str
    amount: float
    currency: str = "TZS"
    provider: Optional[str] = None
    phone_number: Optional[str] = None
    transaction_reference: str
    gateway_transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    order_data: OrderData = Field(default_factory=OrderData)
    status: PaymentSessionStatus = PaymentSessionStatus.PENDING
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("id", "user_id", "order_id", mode="before")
    @classmethod
    def _uuid_to_str(cls, v):
        return str(v) if v is not None else None

    @field_validator("order_data", mode="before")
    @classmethod
    def _parse_order_data(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except ValueError:
                return {}
        return v or {}

    @computed_field
    @property
    def is_completed(self) -> bool:
        return self.status == PaymentSessionStatus.COMPLETED


class InitiatePaymentRequest(BaseModel):
    amount: Optional[float] = None
    currency: str = "TZS"
    provider: Optional[PaymentProvider] = None
    phone_number: Optional[str] = None
    order_data: Optional[OrderData] = None


class ProcessPaymentRequest(BaseModel):
    """Offline checkout: bank transfer or cash on delivery for an existing order"""
    order_id: Optional[str] = None
    amount: Optional[float] = None
    currency: str = "TZS"
    payment_type: Optional[str] = None


class InitiatePaymentResponse(BaseModel):
    success: bool
    transaction_reference: str
    status: PaymentSessionStatus
    message: str
    session_id: Optional[str] = None
    order_id: Optional[str] = None
    is_duplicate: bool = False


class StatusCheckRequest(BaseModel):
    reference: Optional[str] = None
    transaction_id: Optional[str] = None


class StatusCheckResult(BaseModel):
    status: ExternalPaymentStatus
    raw: Dict[str, Any]
    is_session: bool


class SessionStatusRequest(BaseModel):
    reference: Optional[str] = None


class ZenoPayWebhookPayload(BaseModel):
    order_id: Optional[str] = None
    payment_status: Optional[str] = None
    reference: Optional[str] = None
    amount: Optional[str] = None
    transid: Optional[str] = None
    channel: Optional[str] = None
    msisdn: Optional[str] = None


# ============================================================================
# SECTION 4: CATALOG
# ============================================================================

class CartItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(default=1, ge=1, le=999)


class CartQuantityRequest(BaseModel):
    quantity: int = Field(ge=1, le=999)


class ReviewRequest(BaseModel):
    product_id: str
    rating: int = Field(ge=1, le=5)
    title: Optional[str] = Field(default=None, max_length=200)
    comment: Optional[str] = Field(default=None, max_length=5000)


class ProductRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=300)
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    stock_quantity: Optional[int] = Field(default=None, ge=0)
    category_id: Optional[str] = None
    image_url: Optional[str] = None
    is_featured: Optional[bool] = None
    is_active: Optional[bool] = None


class AuthUser(BaseModel):
    """Identity extracted from a verified bearer token"""
    id: str
    email: Optional[str] = None
    role: Literal["customer", "admin"] = "customer"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
