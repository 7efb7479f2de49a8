# Overview: Shared database concurrency helpers for the order, ledger and counter services.

from __future__ import annotations

import time

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Row lock for read-modify-write paths (order edits, status changes).

    NOTE: SQLite ignores SELECT ... FOR UPDATE and serialises writers on the
    database file instead; PostgreSQL/MySQL honour it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.05):
    """
    Execute a short DB operation, retrying transient lock failures.

    Only OperationalError (database locked / deadlock) and StaleDataError are
    retried. Business errors and IntegrityError propagate on the first try.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError):
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))


def is_unique_violation(exc: IntegrityError, column: str) -> bool:
    """
    True when an IntegrityError names `column` in its driver message.

    SQLite reports "UNIQUE constraint failed: orders.idempotency_key",
    PostgreSQL reports the constraint or key name. Both contain the column.
    """
    return column in str(getattr(exc, "orig", exc))
