# Overview: Service-layer pricing resolution for order lines.

"""
Pricing Resolver

WHY: Every path that prices an order line (order creation, dashboard rate
entry, bulk re-pricing) must agree on the rate for a customer+product.
This module is the single resolver they all call.

RULES (by customer pricing type):
- contract: an existing contract price always wins and is returned verbatim,
  the caller's override is ignored. With no contract price, a positive
  override becomes the line rate AND is flagged to be saved as the new
  contract price. With neither, the market rate is used as a fallback.
- markup: a positive override is used as-is, otherwise
  round2(market * (1 + markup / 100)).
- market: a positive override, otherwise the raw market rate.

A missing market rate counts as 0. Every returned rate is rounded half-up to
2 decimal places.

The resolver is PURE: no database access, no side effects. Quantity
validation (whole pieces) belongs to callers via validate_quantity_for_unit().
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping

from mandi.models.catalog import UNIT_PIECE
from mandi.models.customers import PRICING_CONTRACT, PRICING_MARKUP, PRICING_MARKET, PRICING_TYPES
from mandi.money import ZERO, round2, to_decimal, is_whole

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class CustomerPricing:
    """Snapshot of a customer's pricing policy, built once per request."""
    pricing_type: str = PRICING_MARKET
    markup_percentage: Decimal = ZERO
    contract_prices: Mapping[int, Decimal] = field(default_factory=dict)

    @classmethod
    def from_customer(cls, customer) -> "CustomerPricing":
        pricing_type = customer.pricing_type if customer.pricing_type in PRICING_TYPES else PRICING_MARKET
        return cls(
            pricing_type=pricing_type,
            markup_percentage=to_decimal(customer.markup_percentage or 0),
            contract_prices=dict(customer.contract_price_map()),
        )


@dataclass(frozen=True)
class PriceResolution:
    rate: Decimal
    is_contract_price: bool = False
    used_fallback: bool = False
    save_as_contract_price: bool = False


def _positive(value) -> Decimal | None:
    if value is None:
        return None
    amount = to_decimal(value)
    return amount if amount > 0 else None


def resolve_line_price(
    pricing: CustomerPricing,
    product_id: int,
    market_rate=None,
    override_rate=None,
) -> PriceResolution:
    market = to_decimal(market_rate) if market_rate is not None else ZERO
    override = _positive(override_rate)

    if pricing.pricing_type == PRICING_CONTRACT:
        contract_price = pricing.contract_prices.get(product_id)
        if contract_price is not None:
            return PriceResolution(rate=round2(contract_price), is_contract_price=True)
        if override is not None:
            return PriceResolution(
                rate=round2(override),
                is_contract_price=True,
                save_as_contract_price=True,
            )
        return PriceResolution(rate=round2(market), used_fallback=True)

    if override is not None:
        return PriceResolution(rate=round2(override))

    if pricing.pricing_type == PRICING_MARKUP:
        factor = 1 + to_decimal(pricing.markup_percentage) / HUNDRED
        return PriceResolution(rate=round2(market * factor))

    return PriceResolution(rate=round2(market))


def effective_rate(pricing: CustomerPricing, product_id: int, market_rate=None) -> Decimal:
    """Rate a customer would pay today with no manual override."""
    return resolve_line_price(pricing, product_id, market_rate).rate


def line_amount(quantity: Decimal, rate: Decimal) -> Decimal:
    return round2(quantity * rate)


def validate_quantity_for_unit(unit: str, quantity: Decimal) -> str | None:
    """Return an error message when `quantity` is not allowed for `unit`."""
    if quantity <= 0:
        return "Quantity must be greater than 0"
    if unit == UNIT_PIECE and not is_whole(quantity):
        return "Quantity must be a whole number for piece items"
    return None
