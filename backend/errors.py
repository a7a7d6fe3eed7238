"""
Error Hierarchy
===============
Domain exceptions raised by the services layer.

Every error carries the HTTP status the API should answer with, a stable
machine code, and whether the caller may retry. The FastAPI app converts
them into `{"error": message, ...details}` responses.
"""

from typing import Any, Dict, Optional


class CommerceError(Exception):
    """Base class for all handled storefront/back-office errors"""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.retryable = retryable
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, **self.details}


class ValidationError(CommerceError):
    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidTransitionError(ValidationError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot change status from {current} to {target}")
        self.current = current
        self.target = target


class AuthenticationError(CommerceError):
    status_code = 401
    code = "UNAUTHORIZED"


class WebhookAuthError(AuthenticationError):
    code = "WEBHOOK_AUTH_FAILED"


class PermissionDeniedError(CommerceError):
    status_code = 403
    code = "PERMISSION_DENIED"


class NotFoundError(CommerceError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(CommerceError):
    status_code = 409
    code = "CONFLICT"


class RateLimitedError(CommerceError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: int, limit: int, reset_at: int):
        super().__init__(message, retryable=True)
        self.retry_after = retry_after
        self.limit = limit
        self.reset_at = reset_at


class PaymentError(CommerceError):
    status_code = 502
    code = "PAYMENT_ERROR"


class ZenoPayError(PaymentError):
    code = "ZENOPAY_ERROR"

    def __init__(self, message: str, retryable: bool = True, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, retryable=retryable, details=details)


class OrderCreationError(CommerceError):
    status_code = 500
    code = "ORDER_CREATION_ERROR"
