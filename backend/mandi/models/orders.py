from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from mandi.money import as_float
from mandi.time_utils import to_utc_z


STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_PROCESSING = "processing"
STATUS_PACKED = "packed"
STATUS_SHIPPED = "shipped"
STATUS_DELIVERED = "delivered"
STATUS_CANCELLED = "cancelled"

ORDER_STATUSES = (
    STATUS_PENDING,
    STATUS_CONFIRMED,
    STATUS_PROCESSING,
    STATUS_PACKED,
    STATUS_SHIPPED,
    STATUS_DELIVERED,
    STATUS_CANCELLED,
)

PAYMENT_UNPAID = "unpaid"
PAYMENT_PARTIAL = "partial"
PAYMENT_PAID = "paid"


class Order(db.Model):
    """
    Customer order document.

    WHY: Lines snapshot product name, unit and the resolved rate at order
    time, so later market-rate or catalogue changes never re-price history.

    INVARIANTS:
    - total_amount == sum(line.amount) exactly
    - order_number is allocated from the atomic counter (ORDYYMM####)
    - idempotency_key is unique when present
    - orders are never deleted, only cancelled
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_customer_created", "customer_id", "created_at"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(16), nullable=False, unique=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING, index=True)

    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    paid_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_UNPAID)

    # NULLs do not collide under a UNIQUE constraint, so most orders carry none
    idempotency_key = db.Column(db.String(128), nullable=True, unique=True)

    notes = db.Column(db.String(1000), nullable=True)
    used_pricing_fallback = db.Column(db.Boolean, nullable=False, default=False)

    # Owned by external collaborators; stored, not interpreted
    batch_ref = db.Column(db.String(64), nullable=True, index=True)
    packing_done = db.Column(db.Boolean, nullable=False, default=False)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    packed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True))
    lines = db.relationship(
        "OrderLine",
        back_populates="order",
        lazy=True,
        order_by="OrderLine.position",
        cascade="all, delete-orphan",
    )
    price_audit = db.relationship(
        "PriceAuditEntry",
        back_populates="order",
        lazy=True,
        order_by="PriceAuditEntry.id",
    )

    def recalculate_total(self) -> Decimal:
        self.total_amount = sum((line.amount for line in self.lines), Decimal("0"))
        return self.total_amount

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number} status={self.status}>"

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "customer_name": self.customer.name if self.customer else None,
            "status": self.status,
            "total_amount": as_float(self.total_amount),
            "paid_amount": as_float(self.paid_amount),
            "payment_status": self.payment_status,
            "idempotency_key": self.idempotency_key,
            "notes": self.notes,
            "used_pricing_fallback": self.used_pricing_fallback,
            "batch_ref": self.batch_ref,
            "packing_done": self.packing_done,
            "created_by_user_id": self.created_by_user_id,
            "packed_at": to_utc_z(self.packed_at) if self.packed_at else None,
            "shipped_at": to_utc_z(self.shipped_at) if self.shipped_at else None,
            "delivered_at": to_utc_z(self.delivered_at) if self.delivered_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "cancelled_by_user_id": self.cancelled_by_user_id,
            "cancel_reason": self.cancel_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class OrderLine(db.Model):
    """Snapshot of one product on an order."""
    __tablename__ = "order_lines"
    __table_args__ = (
        db.UniqueConstraint("order_id", "product_id", name="uq_order_lines_order_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)

    product_name = db.Column(db.String(100), nullable=False)
    unit = db.Column(db.String(16), nullable=False)
    quantity = db.Column(db.Numeric(12, 3), nullable=False)
    rate = db.Column(db.Numeric(12, 2), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)

    # Contract lines are locked to their snapshot rate forever
    is_contract_price = db.Column(db.Boolean, nullable=False, default=False)

    order = db.relationship("Order", back_populates="lines")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "unit": self.unit,
            "quantity": as_float(self.quantity),
            "rate": as_float(self.rate),
            "amount": as_float(self.amount),
            "is_contract_price": self.is_contract_price,
        }


class PriceAuditEntry(db.Model):
    """
    Append-only record of a rate or quantity change on an order line.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "order_price_audit"
    __table_args__ = (
        db.Index("ix_price_audit_order_changed", "order_id", "changed_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    order_line_id = db.Column(db.Integer, db.ForeignKey("order_lines.id"), nullable=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    product_name = db.Column(db.String(100), nullable=True)

    old_rate = db.Column(db.Numeric(12, 2), nullable=False)
    new_rate = db.Column(db.Numeric(12, 2), nullable=False)
    old_quantity = db.Column(db.Numeric(12, 3), nullable=False)
    new_quantity = db.Column(db.Numeric(12, 3), nullable=False)
    old_total = db.Column(db.Numeric(12, 2), nullable=False)
    new_total = db.Column(db.Numeric(12, 2), nullable=False)
    reason = db.Column(db.String(255), nullable=True)

    changed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    changed_by_name = db.Column(db.String(100), nullable=True)
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="price_audit")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "order_line_id": self.order_line_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "old_rate": as_float(self.old_rate),
            "new_rate": as_float(self.new_rate),
            "old_quantity": as_float(self.old_quantity),
            "new_quantity": as_float(self.new_quantity),
            "old_total": as_float(self.old_total),
            "new_total": as_float(self.new_total),
            "reason": self.reason,
            "changed_by_user_id": self.changed_by_user_id,
            "changed_by_name": self.changed_by_name,
            "changed_at": to_utc_z(self.changed_at),
        }
