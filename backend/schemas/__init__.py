# schemas/__init__.py
from schemas.commerce import (
    OrderStatus,
    PaymentStatus,
    TransactionStatus,
    PaymentSessionStatus,
    ExternalPaymentStatus,
    PaymentProvider,
    PaymentLogEvent,
    NotificationEvent,
    WritePath,
    OrderData,
    PaymentSession,
    AuthUser,
)

__all__ = [
    "OrderStatus",
    "PaymentStatus",
    "TransactionStatus",
    "PaymentSessionStatus",
    "ExternalPaymentStatus",
    "PaymentProvider",
    "PaymentLogEvent",
    "NotificationEvent",
    "WritePath",
    "OrderData",
    "PaymentSession",
    "AuthUser",
]
