# services/__init__.py
# ============================================================================
# TISCO MARKET BACKEND v1.0 — SERVICES MODULE
# ============================================================================
# Catalog CRUD and email notifications
# ============================================================================

from services.catalog import CatalogService

from services.notifications import (
    NotificationService,
    SendPulseClient,
)

__all__ = [
    # Catalog
    "CatalogService",
    # Notifications
    "NotificationService",
    "SendPulseClient",
]
