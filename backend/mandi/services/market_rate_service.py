# Overview: Service-layer operations for the append-only market rate series.

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from ..extensions import db
from ..models import MarketRate, Product
from mandi.money import round2
from mandi.time_utils import utcnow
from mandi.validation import NotFoundError, ValidationError


def current_market_rates(product_ids) -> dict[int, Decimal]:
    """
    Latest rate per product, keyed by product id.

    Fetched once per request for every product on an order so all lines are
    priced against the same snapshot. Products without any rate are absent.
    """
    ids = sorted({pid for pid in product_ids if pid})
    if not ids:
        return {}

    rows = (
        db.session.query(MarketRate)
        .filter(MarketRate.product_id.in_(ids))
        .order_by(
            MarketRate.product_id.asc(),
            MarketRate.effective_date.desc(),
            MarketRate.id.desc(),
        )
        .all()
    )

    rates: dict[int, Decimal] = {}
    for row in rows:
        if row.product_id not in rates:
            rates[row.product_id] = row.rate
    return rates


def record_market_rate(
    product_id: int,
    rate: Decimal,
    user,
    effective_date: datetime | None = None,
) -> MarketRate:
    """Append a new market rate. Existing rows are never modified."""
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    if rate is None or rate < 0:
        raise ValidationError({"rate": "rate must be zero or greater"})

    entry = MarketRate(
        product_id=product_id,
        rate=round2(rate),
        effective_date=effective_date or utcnow(),
        created_by_user_id=user.id if user else None,
    )
    db.session.add(entry)
    db.session.commit()
    return entry
