# orders/__init__.py
from orders.transitions import (
    ALLOWED_TRANSITIONS,
    can_transition,
    ensure_transition,
)
from orders.service import OrderService, SCHEMA_WARNING

__all__ = [
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "ensure_transition",
    "OrderService",
    "SCHEMA_WARNING",
]
