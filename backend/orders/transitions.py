"""
Order status transition guard.

Delivered and cancelled orders are terminal. Re-asserting the current status
is rejected like any other transition missing from the table.
"""

from typing import Dict, FrozenSet, Union

from errors import InvalidTransitionError, ValidationError
from schemas.commerce import OrderStatus


ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.CANCELLED}
    ),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def parse_order_status(value: Union[str, OrderStatus, None]) -> OrderStatus:
    try:
        return OrderStatus(getattr(value, "value", value))
    except ValueError:
        raise ValidationError("Invalid status", details={"status": value})


def can_transition(current: Union[str, OrderStatus], target: Union[str, OrderStatus]) -> bool:
    try:
        src = OrderStatus(getattr(current, "value", current))
        dst = OrderStatus(getattr(target, "value", target))
    except ValueError:
        return False
    return dst in ALLOWED_TRANSITIONS[src]


def ensure_transition(current: Union[str, OrderStatus], target: Union[str, OrderStatus]) -> OrderStatus:
    """Return the target status, or raise InvalidTransitionError (HTTP 400)"""
    dst = parse_order_status(target)
    if not can_transition(current, dst):
        src = getattr(current, "value", current)
        raise InvalidTransitionError(str(src), dst.value)
    return dst
