"""
Payment Status Reconciliation Tables
====================================
Two lookups sit between the payment gateway and our rows:

- internal transaction/session status -> coarse status shown to the client
- free-form gateway status string -> one of COMPLETED/PENDING/CANCELLED/FAILED

Gateway strings are matched after trimming and upper-casing. The sets are
checked in order and the first hit wins; anything else is "no opinion" and
the caller keeps whatever status it already had.
"""

from typing import Any, Dict, Optional

from schemas.commerce import ExternalPaymentStatus


# =============================================================================
# INTERNAL -> EXTERNAL
# =============================================================================

INTERNAL_TO_EXTERNAL: Dict[str, ExternalPaymentStatus] = {
    "completed": ExternalPaymentStatus.COMPLETED,
    "failed": ExternalPaymentStatus.FAILED,
    "processing": ExternalPaymentStatus.PROCESSING,
    "pending": ExternalPaymentStatus.PENDING,
    "cancelled": ExternalPaymentStatus.CANCELLED,
    "awaiting_verification": ExternalPaymentStatus.PENDING,
}


def map_transaction_status(internal: Optional[str]) -> ExternalPaymentStatus:
    """Unknown or missing internal values surface as PENDING"""
    key = getattr(internal, "value", internal)
    return INTERNAL_TO_EXTERNAL.get(str(key or "").lower(), ExternalPaymentStatus.PENDING)


# =============================================================================
# GATEWAY STRING CLASSIFICATION
# =============================================================================

SUCCESS_STATUSES = frozenset(
    {"SUCCESS", "SUCCEEDED", "COMPLETED", "APPROVED", "PAID", "SETTLED", "SUCCESSFUL"}
)
PENDING_STATUSES = frozenset({"PENDING", "PROCESSING", "AWAITING", "QUEUED"})
CANCEL_STATUSES = frozenset({"CANCELLED", "CANCELED"})
FAIL_STATUSES = frozenset({"FAILED", "DECLINED", "ERROR", "REJECTED", "TIMEOUT"})

CLASSIFICATION_ORDER = (
    (SUCCESS_STATUSES, ExternalPaymentStatus.COMPLETED),
    (PENDING_STATUSES, ExternalPaymentStatus.PENDING),
    (CANCEL_STATUSES, ExternalPaymentStatus.CANCELLED),
    (FAIL_STATUSES, ExternalPaymentStatus.FAILED),
)


def classify_gateway_status(raw: Optional[Any]) -> Optional[ExternalPaymentStatus]:
    """Classify a gateway status string, or return None when it matches nothing"""
    if raw is None:
        return None
    value = str(raw).strip().upper()
    if not value:
        return None
    for members, status in CLASSIFICATION_ORDER:
        if value in members:
            return status
    return None


def extract_gateway_status(response: Any) -> str:
    """
    Pull the status string out of an order-status response.

    ZenoPay answers either with {"data": [{...}]} or with the fields at the
    top level. The first non-empty of payment_status, status, result wins.
    """
    if not isinstance(response, dict):
        return ""

    data = response.get("data")
    candidate = response
    if isinstance(data, list) and data and isinstance(data[0], dict):
        candidate = data[0]

    for field in ("payment_status", "status", "result"):
        value = candidate.get(field)
        if value:
            return str(value).upper()
    return ""
