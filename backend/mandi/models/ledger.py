from __future__ import annotations

from ..extensions import db
from mandi.money import as_float
from mandi.time_utils import to_utc_z


ENTRY_INVOICE = "invoice"
ENTRY_PAYMENT = "payment"
ENTRY_ADJUSTMENT = "adjustment"
ENTRY_TYPES = (ENTRY_INVOICE, ENTRY_PAYMENT, ENTRY_ADJUSTMENT)


class LedgerEntry(db.Model):
    """
    Append-only customer account ledger.

    amount is the signed delta applied to the customer's balance
    (invoices positive, payments negative, adjustments either sign).
    balance is the customer's balance immediately after this entry; it is a
    snapshot and is never recomputed.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "ledger_entries"
    __table_args__ = (
        db.Index("ix_ledger_customer_date", "customer_id", "date", "id"),
        db.Index("ix_ledger_type_date", "type", "date"),
        # One invoice per order
        db.UniqueConstraint("order_id", "type", name="uq_ledger_order_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    type = db.Column(db.String(16), nullable=False)

    date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    order_number = db.Column(db.String(16), nullable=True)

    description = db.Column(db.String(500), nullable=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    balance = db.Column(db.Numeric(12, 2), nullable=False)
    notes = db.Column(db.String(1000), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_by_name = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    customer = db.relationship("Customer", backref=db.backref("ledger_entries", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "type": self.type,
            "date": to_utc_z(self.date),
            "order_id": self.order_id,
            "order_number": self.order_number,
            "description": self.description,
            "amount": as_float(self.amount),
            "balance": as_float(self.balance),
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_by_name": self.created_by_name,
            "created_at": to_utc_z(self.created_at),
        }
