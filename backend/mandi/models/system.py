from __future__ import annotations

from ..extensions import db
from mandi.time_utils import to_utc_z


class Counter(db.Model):
    """
    Named atomic sequence (e.g. "order_ORD2610" for October 2026 orders).

    WHY: Order numbers must be unique without application-level locking.
    The only write is UPDATE ... SET sequence = sequence + 1.
    """
    __tablename__ = "counters"

    key = db.Column(db.String(64), primary_key=True)
    sequence = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "sequence": self.sequence,
            "updated_at": to_utc_z(self.updated_at),
        }


class DistributedLock(db.Model):
    """
    Lease record for cross-process mutual exclusion.

    A lease is held while expires_at is in the future. Acquire and release
    are single conditional statements (see lock_service).
    """
    __tablename__ = "distributed_locks"

    name = db.Column(db.String(128), primary_key=True)
    holder_id = db.Column(db.String(255), nullable=False)
    acquired_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "holder_id": self.holder_id,
            "acquired_at": to_utc_z(self.acquired_at),
            "expires_at": to_utc_z(self.expires_at),
        }
