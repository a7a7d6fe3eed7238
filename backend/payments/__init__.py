# payments/__init__.py
# ============================================================================
# TISCO MARKET BACKEND v1.0 — PAYMENTS MODULE
# ============================================================================
# ZenoPay client, webhook authentication, status reconciliation
# ============================================================================

from payments.status_mapping import (
    map_transaction_status,
    classify_gateway_status,
    extract_gateway_status,
)

from payments.webhook_security import WebhookVerifier, sign_payload
from payments.zenopay import ZenoPayClient, ZenoPayConfig

from payments.gateway import (
    PaymentGateway,
    generate_transaction_reference,
    map_provider_to_channel,
    normalize_tz_phone,
)

__all__ = [
    # Reconciliation tables
    "map_transaction_status",
    "classify_gateway_status",
    "extract_gateway_status",
    # Gateway plumbing
    "WebhookVerifier",
    "sign_payload",
    "ZenoPayClient",
    "ZenoPayConfig",
    # Orchestration
    "PaymentGateway",
    "generate_transaction_reference",
    "map_provider_to_channel",
    "normalize_tz_phone",
]
