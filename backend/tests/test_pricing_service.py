import unittest
from decimal import Decimal

from mandi.services.pricing_service import (
    CustomerPricing,
    PriceResolution,
    effective_rate,
    resolve_line_price,
    validate_quantity_for_unit,
)


TOMATO = 1
ONION = 2


class ResolveLinePriceTests(unittest.TestCase):
    def test_market_customer_gets_raw_market_rate(self):
        pricing = CustomerPricing("market")
        result = resolve_line_price(pricing, TOMATO, Decimal("100"))
        self.assertEqual(result, PriceResolution(rate=Decimal("100.00")))

    def test_market_customer_override_wins(self):
        pricing = CustomerPricing("market")
        result = resolve_line_price(pricing, TOMATO, Decimal("100"), Decimal("95.5"))
        self.assertEqual(result.rate, Decimal("95.50"))
        self.assertFalse(result.is_contract_price)

    def test_zero_override_is_ignored(self):
        pricing = CustomerPricing("market")
        result = resolve_line_price(pricing, TOMATO, Decimal("100"), Decimal("0"))
        self.assertEqual(result.rate, Decimal("100.00"))

    def test_markup_applies_percentage(self):
        pricing = CustomerPricing("markup", Decimal("20"))
        result = resolve_line_price(pricing, TOMATO, Decimal("100"))
        self.assertEqual(result.rate, Decimal("120.00"))

    def test_markup_rounds_half_up(self):
        # 33.33 * 1.15 = 38.3295
        pricing = CustomerPricing("markup", Decimal("15"))
        self.assertEqual(resolve_line_price(pricing, TOMATO, Decimal("33.33")).rate, Decimal("38.33"))
        # 10.01 * 1.05 = 10.5105
        pricing = CustomerPricing("markup", Decimal("5"))
        self.assertEqual(resolve_line_price(pricing, TOMATO, Decimal("10.01")).rate, Decimal("10.51"))
        # 0.5 * 1.01 = 0.505 -> 0.51
        pricing = CustomerPricing("markup", Decimal("1"))
        self.assertEqual(resolve_line_price(pricing, TOMATO, Decimal("0.5")).rate, Decimal("0.51"))

    def test_markup_override_used_as_is(self):
        pricing = CustomerPricing("markup", Decimal("20"))
        result = resolve_line_price(pricing, TOMATO, Decimal("100"), Decimal("90"))
        self.assertEqual(result.rate, Decimal("90.00"))

    def test_contract_price_always_wins(self):
        pricing = CustomerPricing("contract", contract_prices={TOMATO: Decimal("42.75")})
        for market, override in [(Decimal("100"), None), (Decimal("10"), Decimal("500")), (None, None)]:
            result = resolve_line_price(pricing, TOMATO, market, override)
            self.assertEqual(result.rate, Decimal("42.75"))
            self.assertTrue(result.is_contract_price)
            self.assertFalse(result.save_as_contract_price)
            self.assertFalse(result.used_fallback)

    def test_contract_override_becomes_new_contract_price(self):
        pricing = CustomerPricing("contract", contract_prices={TOMATO: Decimal("42")})
        result = resolve_line_price(pricing, ONION, Decimal("100"), Decimal("80"))
        self.assertEqual(result.rate, Decimal("80.00"))
        self.assertTrue(result.is_contract_price)
        self.assertTrue(result.save_as_contract_price)

    def test_contract_without_price_falls_back_to_market(self):
        pricing = CustomerPricing("contract")
        result = resolve_line_price(pricing, ONION, Decimal("37.5"))
        self.assertEqual(result.rate, Decimal("37.50"))
        self.assertTrue(result.used_fallback)
        self.assertFalse(result.is_contract_price)

    def test_missing_market_rate_counts_as_zero(self):
        self.assertEqual(resolve_line_price(CustomerPricing("market"), TOMATO, None).rate, Decimal("0.00"))
        self.assertEqual(resolve_line_price(CustomerPricing("markup", Decimal("50")), TOMATO, None).rate, Decimal("0.00"))

    def test_effective_rate_matches_resolver_without_override(self):
        pricing = CustomerPricing("markup", Decimal("12.5"))
        self.assertEqual(effective_rate(pricing, TOMATO, Decimal("80")), Decimal("90.00"))


class QuantityValidationTests(unittest.TestCase):
    def test_piece_requires_whole_numbers(self):
        self.assertIsNone(validate_quantity_for_unit("piece", Decimal("3")))
        self.assertIsNotNone(validate_quantity_for_unit("piece", Decimal("2.5")))

    def test_weight_units_accept_fractions(self):
        self.assertIsNone(validate_quantity_for_unit("kg", Decimal("2.5")))

    def test_non_positive_quantity_rejected(self):
        self.assertIsNotNone(validate_quantity_for_unit("kg", Decimal("0")))
        self.assertIsNotNone(validate_quantity_for_unit("kg", Decimal("-1")))


if __name__ == "__main__":
    unittest.main()
