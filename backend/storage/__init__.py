# storage/__init__.py
# ============================================================================
# TISCO MARKET BACKEND v1.0 — STORAGE MODULE
# ============================================================================
# Commerce persistence interface with Postgres and in-memory backends
# ============================================================================

from storage.repository import (
    CommerceStore,
    PostgresCommerceStore,
    InMemoryCommerceStore,
    record_to_dict,
)

__all__ = [
    "CommerceStore",
    "PostgresCommerceStore",
    "InMemoryCommerceStore",
    "record_to_dict",
]
