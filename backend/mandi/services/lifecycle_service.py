# Overview: Order status state machine and lifecycle timestamps.

"""
Order Lifecycle

STATE MACHINE:
    pending -> confirmed -> processing -> packed -> shipped -> delivered
    (any non-terminal state) -> cancelled

    delivered and cancelled are TERMINAL: no edges leave them.

RULES (NON-NEGOTIABLE):
1. Cannot skip states (pending -> packed is forbidden)
2. Cannot reverse states (shipped -> packed is forbidden)
3. Requesting the current state is a no-op, not an error
4. Entering packed/shipped/delivered/cancelled stamps the matching timestamp
5. shipped_at >= packed_at and delivered_at >= shipped_at

This module is pure bookkeeping on an Order instance. Who may request a
transition is decided by order_service and the route permissions.
"""

from __future__ import annotations

from datetime import datetime

from mandi.models.orders import (
    ORDER_STATUSES,
    STATUS_PENDING,
    STATUS_CONFIRMED,
    STATUS_PROCESSING,
    STATUS_PACKED,
    STATUS_SHIPPED,
    STATUS_DELIVERED,
    STATUS_CANCELLED,
)


VALID_TRANSITIONS = {
    STATUS_PENDING: (STATUS_CONFIRMED, STATUS_CANCELLED),
    STATUS_CONFIRMED: (STATUS_PROCESSING, STATUS_CANCELLED),
    STATUS_PROCESSING: (STATUS_PACKED, STATUS_CANCELLED),
    STATUS_PACKED: (STATUS_SHIPPED, STATUS_CANCELLED),
    STATUS_SHIPPED: (STATUS_DELIVERED, STATUS_CANCELLED),
    STATUS_DELIVERED: (),
    STATUS_CANCELLED: (),
}

TERMINAL_STATUSES = frozenset(s for s, nxt in VALID_TRANSITIONS.items() if not nxt)


class OrderError(Exception):
    """
    Domain error for order operations.

    This is a business-rule violation, not a technical error. Routes map it
    to 400 with `details` in the body.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class LifecycleError(OrderError):
    """Raised when a status transition is not in the table."""

    def __init__(self, message: str, current: str, requested: str):
        super().__init__(
            message,
            {
                "current_status": current,
                "requested_status": requested,
                "allowed": list(allowed_transitions(current)),
            },
        )


def is_valid_status(status) -> bool:
    return status in ORDER_STATUSES


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def allowed_transitions(status: str) -> tuple[str, ...]:
    return VALID_TRANSITIONS.get(status, ())


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in allowed_transitions(from_status)


def apply_transition(order, new_status: str, *, now: datetime, user_id: int | None = None, reason: str | None = None) -> bool:
    """
    Move `order` to `new_status`, stamping lifecycle timestamps.

    Returns False (and changes nothing) when the order is already in
    `new_status`. Raises LifecycleError for an edge not in the table or for
    timestamps that would run backwards.
    """
    current = order.status
    if new_status == current:
        return False

    if not can_transition(current, new_status):
        raise LifecycleError(
            f"Cannot change status from {current} to {new_status}",
            current,
            new_status,
        )

    if new_status == STATUS_PACKED:
        order.packed_at = now
    elif new_status == STATUS_SHIPPED:
        if order.packed_at is not None and now < order.packed_at:
            raise LifecycleError("Shipped time cannot be before packed time", current, new_status)
        order.shipped_at = now
    elif new_status == STATUS_DELIVERED:
        if order.shipped_at is not None and now < order.shipped_at:
            raise LifecycleError("Delivered time cannot be before shipped time", current, new_status)
        order.delivered_at = now
    elif new_status == STATUS_CANCELLED:
        order.cancelled_at = now
        order.cancelled_by_user_id = user_id
        order.cancel_reason = reason

    order.status = new_status
    return True
