from decimal import Decimal

import pytest

from order_service.errors import ValidationError
from order_service.models import CartItem
from order_service.totals import ShippingRule, calculate_totals, quantize_money, to_decimal

FLAT_15 = ShippingRule(flat_rate=Decimal("15.00"), free_shipping_threshold=Decimal("100.00"))


def items(*lines):
    return [CartItem(sku=sku, quantity=qty, unit_price=Decimal(price)) for sku, qty, price in lines]


class TestCalculateTotals:
    def test_reference_cart(self):
        totals = calculate_totals(
            items(("SKU-A", 2, "19.99"), ("SKU-B", 1, "25.50")), Decimal("0.19"), FLAT_15
        )
        assert totals.subtotal == Decimal("65.48")
        assert totals.tax == Decimal("12.44")
        assert totals.shipping == Decimal("15.00")
        assert totals.total == Decimal("92.92")

    def test_total_is_exact_sum_of_parts(self):
        totals = calculate_totals(
            items(("A", 3, "0.10"), ("B", 7, "3.33"), ("C", 1, "999.99")),
            Decimal("0.075"),
            FLAT_15,
            discount=Decimal("5.55"),
        )
        assert totals.total == totals.subtotal + totals.tax + totals.shipping - totals.discount
        for value in (totals.subtotal, totals.tax, totals.shipping, totals.discount, totals.total):
            assert value == value.quantize(Decimal("0.01"))

    def test_tax_rounds_half_up(self):
        # 0.50 × 0.05 = 0.025 → 0.03
        totals = calculate_totals(items(("A", 1, "0.50")), Decimal("0.05"), ShippingRule())
        assert totals.tax == Decimal("0.03")

    def test_free_shipping_at_threshold(self):
        totals = calculate_totals(items(("A", 1, "100.00")), Decimal("0"), FLAT_15)
        assert totals.shipping == Decimal("0.00")
        assert totals.total == Decimal("100.00")

    def test_region_rate(self):
        rule = ShippingRule(flat_rate=Decimal("4.99"), region_rates={"CH": Decimal("12.00")})
        assert calculate_totals(items(("A", 1, "10.00")), 0, rule, region="CH").shipping == Decimal("12.00")
        assert calculate_totals(items(("A", 1, "10.00")), 0, rule, region="DE").shipping == Decimal("4.99")

    def test_discount_applied(self):
        totals = calculate_totals(
            items(("A", 1, "50.00")), Decimal("0.10"), FLAT_15, discount=Decimal("10.00")
        )
        assert totals.total == Decimal("60.00")


class TestValidation:
    def test_empty_cart(self):
        with pytest.raises(ValidationError):
            calculate_totals([], Decimal("0.19"), FLAT_15)

    def test_negative_tax_rate(self):
        with pytest.raises(ValidationError):
            calculate_totals(items(("A", 1, "1.00")), Decimal("-0.01"), FLAT_15)

    def test_float_tax_rate_rejected(self):
        with pytest.raises(ValidationError):
            calculate_totals(items(("A", 1, "1.00")), 0.19, FLAT_15)

    def test_discount_larger_than_order(self):
        with pytest.raises(ValidationError):
            calculate_totals(items(("A", 1, "1.00")), 0, FLAT_15, discount=Decimal("100.00"))

    def test_to_decimal_rejects_float_and_bool(self):
        with pytest.raises(ValidationError):
            to_decimal(1.5)
        with pytest.raises(ValidationError):
            to_decimal(True)
        assert to_decimal("2.50") == Decimal("2.50")

    def test_quantize_money(self):
        assert quantize_money(Decimal("2.345")) == Decimal("2.35")
        assert quantize_money("1") == Decimal("1.00")
