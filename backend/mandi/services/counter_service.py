# Overview: Service-layer operations for atomic counters and order numbering.

from __future__ import annotations

import re
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Counter, Order
from mandi.time_utils import utcnow
from .concurrency import run_with_retry


ORDER_PREFIX = "ORD"
ORDER_COUNTER_PREFIX = "order_"
ORDER_NUMBER_PATTERN = re.compile(r"^ORD(\d{4})(\d{4,})$")


class CounterError(Exception):
    """Raised when a counter cannot be advanced."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


def _read_sequence(key: str) -> int | None:
    return db.session.query(Counter.sequence).filter_by(key=key).scalar()


def next_sequence(key: str) -> int:
    """
    Atomically increment counter `key` and return its new value.

    The first call for a key inserts the row with sequence=1. When two
    callers race on that first insert, the loser's INSERT violates the
    primary key and it falls back to the increment.

    The increment joins the caller's transaction: it becomes durable when the
    caller commits and is released if the caller rolls back.

    Call it before adding anything else to the session: the first-insert race
    fallback rolls back the whole session transaction, which would discard
    pending work. create_order draws its number before adding the order.
    """
    if not key:
        raise CounterError("Counter key is required")

    def _op() -> int:
        stmt = (
            update(Counter)
            .where(Counter.key == key)
            .values(sequence=Counter.sequence + 1, updated_at=utcnow())
        )
        result = db.session.execute(stmt)
        if result.rowcount:
            return _read_sequence(key)

        db.session.add(Counter(key=key, sequence=1, updated_at=utcnow()))
        try:
            db.session.flush()
            return 1
        except IntegrityError:
            db.session.rollback()
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise CounterError("Invalid counter state", {"key": key})
            return _read_sequence(key)

    value = run_with_retry(_op)
    if not isinstance(value, int) or value < 1:
        raise CounterError("Invalid counter state", {"key": key, "value": value})
    return value


def order_prefix(when: datetime) -> str:
    return f"{ORDER_PREFIX}{when:%y%m}"


def format_order_number(when: datetime, sequence: int) -> str:
    """ORD + YY + MM + sequence zero-padded to 4 digits, e.g. ORD26100007."""
    return f"{order_prefix(when)}{sequence:04d}"


def next_order_number(when: datetime | None = None) -> str:
    when = when or utcnow()
    prefix = order_prefix(when)
    sequence = next_sequence(f"{ORDER_COUNTER_PREFIX}{prefix}")
    return f"{prefix}{sequence:04d}"


def seed_counters_from_orders(*, dry_run: bool = False) -> list[dict]:
    """
    Raise each month's order counter to at least the highest sequence already
    used by an existing order number. Counters are never lowered.

    Used after importing historic orders so new numbers do not collide.
    Returns one row per month scope: {key, max_sequence, previous, action}.
    """
    max_sequences: dict[str, int] = {}
    for (order_number,) in db.session.query(Order.order_number).all():
        match = ORDER_NUMBER_PATTERN.match(order_number or "")
        if not match:
            continue
        prefix = f"{ORDER_PREFIX}{match.group(1)}"
        seq = int(match.group(2))
        if seq > max_sequences.get(prefix, 0):
            max_sequences[prefix] = seq

    report = []
    for prefix in sorted(max_sequences):
        key = f"{ORDER_COUNTER_PREFIX}{prefix}"
        max_seq = max_sequences[prefix]
        counter = db.session.get(Counter, key)
        previous = counter.sequence if counter else None

        if counter is None:
            action = "created"
            if not dry_run:
                db.session.add(Counter(key=key, sequence=max_seq, updated_at=utcnow()))
        elif counter.sequence < max_seq:
            action = "updated"
            if not dry_run:
                db.session.execute(
                    update(Counter)
                    .where(Counter.key == key, Counter.sequence < max_seq)
                    .values(sequence=max_seq, updated_at=utcnow())
                )
        else:
            action = "skipped"

        report.append({"key": key, "max_sequence": max_seq, "previous": previous, "action": action})

    if dry_run:
        db.session.rollback()
    else:
        db.session.commit()
    return report
