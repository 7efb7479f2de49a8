from __future__ import annotations

from ..extensions import db
from mandi.money import as_float
from mandi.time_utils import to_utc_z


UNIT_PIECE = "piece"
UNITS = ("kg", "g", UNIT_PIECE, "dozen", "bunch", "box", "litre")


class Product(db.Model):
    """Sellable produce item. Only `unit` matters to the pricing core."""
    __tablename__ = "products"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, index=True)
    unit = db.Column(db.String(16), nullable=False, default="kg")
    category = db.Column(db.String(64), nullable=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} unit={self.unit}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "unit": self.unit,
            "category": self.category,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class MarketRate(db.Model):
    """
    Append-only market rate series.

    The current rate for a product is the row with the latest
    (effective_date, id). Rows are never updated.
    """
    __tablename__ = "market_rates"
    __table_args__ = (
        db.Index("ix_market_rates_product_effective", "product_id", "effective_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    rate = db.Column(db.Numeric(12, 2), nullable=False)
    effective_date = db.Column(db.DateTime(timezone=True), nullable=False)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("market_rates", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "rate": as_float(self.rate),
            "effective_date": to_utc_z(self.effective_date),
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
