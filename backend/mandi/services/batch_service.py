# Overview: Batch collaborator hooks and the lock-guarded auto-confirm job.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Order
from ..models.orders import STATUS_CONFIRMED, STATUS_PENDING
from mandi.time_utils import utcnow
from mandi.validation import ValidationError
from . import lock_service
from .lifecycle_service import OrderError, apply_transition, is_terminal
from .order_service import get_order


AUTO_CONFIRM_LOCK = "batch-auto-confirm"


def _clean_ref(batch_ref) -> str:
    if not isinstance(batch_ref, str) or not batch_ref.strip():
        raise ValidationError({"batch_ref": "batch_ref is required"})
    batch_ref = batch_ref.strip()
    if len(batch_ref) > 64:
        raise ValidationError({"batch_ref": "batch_ref must be 64 characters or less"})
    return batch_ref


def assign_to_batch(order_id: int, batch_ref: str) -> Order:
    """Attach an opaque batch reference to an order. The core does not interpret it."""
    batch_ref = _clean_ref(batch_ref)
    order = get_order(order_id, for_update=True)
    if is_terminal(order.status):
        raise OrderError(f"Cannot batch a {order.status} order", {"status": order.status})
    order.batch_ref = batch_ref
    order.updated_at = utcnow()
    db.session.commit()
    return order


def confirm_batch_orders(batch_ref: str, user=None) -> list[str]:
    """
    Bulk pending -> confirmed for every order in `batch_ref`.

    Returns the confirmed order numbers. Orders already past pending are
    left alone.
    """
    batch_ref = _clean_ref(batch_ref)
    orders = (
        db.session.query(Order)
        .filter(Order.batch_ref == batch_ref, Order.status == STATUS_PENDING)
        .order_by(Order.id.asc())
        .all()
    )
    now = utcnow()
    confirmed = []
    for order in orders:
        apply_transition(order, STATUS_CONFIRMED, now=now, user_id=user.id if user else None)
        order.updated_at = now
        confirmed.append(order.order_number)
    db.session.commit()
    return confirmed


def run_auto_confirm(batch_ref: str, *, ttl_seconds=None, timeout_seconds=None) -> lock_service.GuardedRunResult:
    """Scheduled job: confirm a batch on exactly one instance."""
    batch_ref = _clean_ref(batch_ref)
    outcome = lock_service.run_with_lock(
        f"{AUTO_CONFIRM_LOCK}:{batch_ref}",
        lambda: confirm_batch_orders(batch_ref),
        ttl_seconds=ttl_seconds,
        timeout_seconds=timeout_seconds,
    )
    if outcome.executed and outcome.error is None:
        current_app.logger.info(
            "Auto-confirmed %s orders in batch %s", len(outcome.result or []), batch_ref
        )
    return outcome
