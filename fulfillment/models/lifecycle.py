"""
Lifecycle State Machines - closed transition tables for orders and refunds.

Callers never set a status directly; they ask for an edge and the edge is
validated here first.
"""

from fulfillment.exceptions import InvalidStateTransitionError
from fulfillment.models.api import OrderStatus, RefundStatus

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.EXPIRED}),
    OrderStatus.PAID: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

REFUND_TRANSITIONS: dict[RefundStatus, frozenset[RefundStatus]] = {
    RefundStatus.REQUESTED: frozenset({RefundStatus.PROCESSED, RefundStatus.REJECTED}),
    RefundStatus.PROCESSED: frozenset(),
    RefundStatus.REJECTED: frozenset(),
}


def can_transition_order(current: OrderStatus, target: OrderStatus) -> bool:
    """Check whether an order may move from current to target."""
    return target in ORDER_TRANSITIONS[OrderStatus(current)]


def can_transition_refund(current: RefundStatus, target: RefundStatus) -> bool:
    """Check whether a refund may move from current to target."""
    return target in REFUND_TRANSITIONS[RefundStatus(current)]


def ensure_order_transition(current: OrderStatus, target: OrderStatus) -> None:
    """
    Validate an order edge.

    Raises:
        InvalidStateTransitionError: edge not in ORDER_TRANSITIONS
    """
    if not can_transition_order(current, target):
        raise InvalidStateTransitionError("order", OrderStatus(current).value, target.value)


def ensure_refund_transition(current: RefundStatus, target: RefundStatus) -> None:
    """
    Validate a refund edge.

    Raises:
        InvalidStateTransitionError: edge not in REFUND_TRANSITIONS
    """
    if not can_transition_refund(current, target):
        raise InvalidStateTransitionError("refund", RefundStatus(current).value, target.value)
