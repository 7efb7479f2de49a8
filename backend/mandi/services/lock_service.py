# Overview: Lease-based distributed lock for scheduled jobs running on several processes.

"""
Distributed Lock Service

WHY: Scheduled jobs (batch auto-confirm) may be triggered on every app
instance at once. A named lease in the database makes sure only one of them
does the work; the others skip.

PROTOCOL:
- acquire: a single conditional UPDATE takes over the row only when its
  lease has expired. When no row exists an INSERT creates it; losing that
  INSERT race raises IntegrityError and the current holder is read back.
- release: DELETE ... WHERE name = :name AND holder_id = :me. Releasing a
  lease held by someone else is a no-op.
- leases expire on their own (ttl_seconds), so a crashed holder cannot
  block a job forever.

Instance identity is hostname-pid-<6 random hex chars>, fixed for the
process lifetime, unless LOCK_INSTANCE_ID is configured.
"""

from __future__ import annotations

import os
import secrets
import socket
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

from flask import current_app
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DistributedLock
from mandi.time_utils import utcnow


_PROCESS_INSTANCE_ID = f"{socket.gethostname()}-{os.getpid()}-{secrets.token_hex(3)}"


class LockError(Exception):
    """Raised for invalid lock requests (empty name, non-positive TTL)."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


@dataclass(frozen=True)
class LockResult:
    acquired: bool
    holder: str | None


@dataclass
class GuardedRunResult:
    executed: bool
    skipped: bool
    holder: str | None = None
    result: Any = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "executed": self.executed,
            "skipped": self.skipped,
            "holder": self.holder,
            "result": self.result,
            "error": self.error,
        }


def instance_id() -> str:
    configured = current_app.config.get("LOCK_INSTANCE_ID")
    return configured or _PROCESS_INSTANCE_ID


def _validate(name: str, ttl_seconds: int | float | None = None) -> None:
    if not name or not isinstance(name, str):
        raise LockError("Lock name is required")
    if ttl_seconds is not None and ttl_seconds <= 0:
        raise LockError("Lock TTL must be positive", {"ttl_seconds": ttl_seconds})


def _current_holder(name: str) -> str | None:
    return (
        db.session.query(DistributedLock.holder_id)
        .filter(DistributedLock.name == name)
        .scalar()
    )


def acquire_lock(name: str, ttl_seconds: int | float, holder_id: str | None = None) -> LockResult:
    """
    Try to take the lease `name` for `ttl_seconds`.

    Never blocks. Returns LockResult(acquired, holder) where holder is the
    current lease owner either way. Re-acquiring a live lease you already
    hold does NOT extend it: leases are not re-entrant.
    """
    _validate(name, ttl_seconds)
    holder_id = holder_id or instance_id()
    now = utcnow()
    expires_at = now + timedelta(seconds=ttl_seconds)

    result = db.session.execute(
        update(DistributedLock)
        .where(DistributedLock.name == name, DistributedLock.expires_at < now)
        .values(holder_id=holder_id, acquired_at=now, expires_at=expires_at)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        db.session.commit()
        return LockResult(acquired=True, holder=holder_id)

    holder = _current_holder(name)
    if holder is not None:
        db.session.rollback()
        return LockResult(acquired=False, holder=holder)

    db.session.add(DistributedLock(name=name, holder_id=holder_id, acquired_at=now, expires_at=expires_at))
    try:
        db.session.commit()
        return LockResult(acquired=True, holder=holder_id)
    except IntegrityError:
        db.session.rollback()
        return LockResult(acquired=False, holder=_current_holder(name))


def release_lock(name: str, holder_id: str | None = None) -> bool:
    """Release `name` if (and only if) `holder_id` holds it."""
    _validate(name)
    holder_id = holder_id or instance_id()
    result = db.session.execute(
        delete(DistributedLock)
        .where(DistributedLock.name == name, DistributedLock.holder_id == holder_id)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return bool(result.rowcount)


def force_release(name: str) -> bool:
    """Operator escape hatch: drop a lease regardless of holder."""
    _validate(name)
    result = db.session.execute(
        delete(DistributedLock)
        .where(DistributedLock.name == name)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return bool(result.rowcount)


def run_with_lock(
    name: str,
    func: Callable[[], Any],
    ttl_seconds: int | float | None = None,
    timeout_seconds: float | None = None,
) -> GuardedRunResult:
    """
    Run `func` only if the lease `name` can be taken.

    `func` runs in a worker thread with its own application context and is
    given `timeout_seconds` to finish. A timeout or exception is reported in
    the result rather than raised. The lease is released afterwards in every
    case; a failed release is logged and the lease is left to expire.

    NOTE: a timed-out worker is not killed. It keeps running in the
    background and may still commit work after the lease is released.
    """
    app = current_app._get_current_object()
    ttl_seconds = ttl_seconds or app.config.get("LOCK_TTL_SECONDS", 300)
    timeout_seconds = timeout_seconds or app.config.get("LOCK_TIMEOUT_SECONDS", 30.0)
    holder_id = instance_id()

    lock = acquire_lock(name, ttl_seconds, holder_id)
    if not lock.acquired:
        app.logger.warning("Skipping job %s: lock held by %s", name, lock.holder)
        return GuardedRunResult(executed=False, skipped=True, holder=lock.holder)

    def _worker():
        with app.app_context():
            return func()

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"lock-{name}")
    try:
        future = executor.submit(_worker)
        try:
            value = future.result(timeout=timeout_seconds)
            return GuardedRunResult(executed=True, skipped=False, holder=holder_id, result=value)
        except FutureTimeoutError:
            app.logger.warning("Job %s timed out after %ss", name, timeout_seconds)
            return GuardedRunResult(
                executed=True,
                skipped=False,
                holder=holder_id,
                error=f"Timed out after {timeout_seconds}s",
            )
        except Exception as e:
            app.logger.exception("Job %s failed", name)
            return GuardedRunResult(executed=True, skipped=False, holder=holder_id, error=str(e))
    finally:
        executor.shutdown(wait=False)
        try:
            if not release_lock(name, holder_id):
                app.logger.warning("Lock %s was no longer held by %s at release", name, holder_id)
        except Exception:
            db.session.rollback()
            app.logger.exception("Failed to release lock %s", name)
