from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from mandi.money import as_float
from mandi.time_utils import to_utc_z


PRICING_MARKET = "market"
PRICING_MARKUP = "markup"
PRICING_CONTRACT = "contract"
PRICING_TYPES = (PRICING_MARKET, PRICING_MARKUP, PRICING_CONTRACT)


class Customer(db.Model):
    """
    Trade customer with a pricing policy and a running account balance.

    WHY: Every order is priced against the customer's pricing type, and
    every invoice/payment/adjustment moves `balance`.

    INVARIANTS:
    - balance is mutated ONLY by ledger_service (atomic UPDATE + LedgerEntry)
    - positive balance = customer owes the business
    - customers are soft-deleted (is_active=False), never hard-deleted
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.CheckConstraint(
            "markup_percentage >= 0 AND markup_percentage <= 200",
            name="ck_customers_markup_range",
        ),
        db.Index("ix_customers_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, index=True)
    phone = db.Column(db.String(20), nullable=True)
    address = db.Column(db.String(500), nullable=True)

    pricing_type = db.Column(db.String(16), nullable=False, default=PRICING_MARKET)
    markup_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal("0"))

    balance = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    contract_prices = db.relationship(
        "ContractPrice",
        back_populates="customer",
        lazy=True,
        order_by="ContractPrice.product_id",
    )

    def contract_price_map(self) -> dict[int, Decimal]:
        return {cp.product_id: cp.price for cp in self.contract_prices}

    def __repr__(self) -> str:
        return f"<Customer id={self.id} name={self.name!r} pricing={self.pricing_type}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "address": self.address,
            "pricing_type": self.pricing_type,
            "markup_percentage": as_float(self.markup_percentage),
            # Keys are strings so the JSON object is stable across serializers
            "contract_prices": {
                str(cp.product_id): as_float(cp.price)
                for cp in sorted(self.contract_prices, key=lambda c: c.product_id)
            },
            "balance": as_float(self.balance),
            "is_active": self.is_active,
            "deleted_at": to_utc_z(self.deleted_at) if self.deleted_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ContractPrice(db.Model):
    """
    Fixed customer+product rate for contract customers.

    IMMUTABLE through the ordering flow: rows are inserted when staff price a
    product for the first time and are never rewritten by orders.
    """
    __tablename__ = "customer_contract_prices"
    __table_args__ = (
        db.UniqueConstraint("customer_id", "product_id", name="uq_contract_prices_customer_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    price = db.Column(db.Numeric(12, 2), nullable=False)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    customer = db.relationship("Customer", back_populates="contract_prices")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "product_id": self.product_id,
            "price": as_float(self.price),
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
