from datetime import datetime, timezone
from decimal import Decimal

import pytest

from application.dtos.payments import OrderItemInput
from domain.commerce.entity import Coupon, DiscountType, TaxRate
from domain.common.exceptions import DomainValidationException
from domain.order.pricing import OrderPricer


def _items(*pairs):
    return [OrderItemInput(name=f"item-{i}", unit_amount=a, quantity=q) for i, (a, q) in enumerate(pairs)]


def _tax(rate: str) -> TaxRate:
    return TaxRate(country_code="US", rate_percentage=Decimal(rate), effective_from=datetime(2020, 1, 1, tzinfo=timezone.utc))


def test_percentage_coupon_then_tax_on_discounted_amount():
    coupon = Coupon(code="save25", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("25"))
    breakdown = OrderPricer().price(_items((100, 2), (100, 1)), "USD", coupon=coupon, tax_rate=_tax("8.5"))

    assert breakdown.subtotal == 300
    assert breakdown.discount == 75
    assert breakdown.taxable == 225
    # 225 * 8.5% = 19.125
    assert breakdown.tax == 19
    assert breakdown.total == 244


def test_tax_rounds_half_up():
    breakdown = OrderPricer().price(_items((320, 1)), "USD", tax_rate=_tax("8.5"))
    assert breakdown.tax == 27  # 27.2
    assert breakdown.total == 347

    breakdown = OrderPricer().price(_items((105, 1)), "USD", tax_rate=_tax("10"))
    assert breakdown.tax == 11  # 10.5


def test_line_allocations_sum_to_order_amounts():
    coupon = Coupon(code="TENOFF", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("10"))
    breakdown = OrderPricer().price(_items((333, 1), (333, 1), (334, 1)), "USD", coupon=coupon, tax_rate=_tax("7.25"))

    assert sum(line.discount for line in breakdown.lines) == breakdown.discount
    assert sum(line.tax for line in breakdown.lines) == breakdown.tax
    assert [line.total for line in breakdown.lines] == [333, 333, 334]


def test_fixed_coupon_is_capped_at_subtotal():
    coupon = Coupon(code="BIG", discount_type=DiscountType.FIXED, discount_value=Decimal("500"), currency="USD")
    breakdown = OrderPricer().price(_items((300, 1)), "USD", coupon=coupon, tax_rate=_tax("8.5"))

    assert breakdown.discount == 300
    assert breakdown.tax == 0
    assert breakdown.total == 0


def test_fixed_coupon_currency_mismatch_rejected():
    coupon = Coupon(code="EURO5", discount_type=DiscountType.FIXED, discount_value=Decimal("500"), currency="EUR")
    with pytest.raises(DomainValidationException):
        OrderPricer().price(_items((1000, 1)), "USD", coupon=coupon)


def test_no_coupon_no_tax():
    breakdown = OrderPricer().price(_items((1999, 3)), "USD")
    assert (breakdown.subtotal, breakdown.discount, breakdown.tax, breakdown.total) == (5997, 0, 0, 5997)


def test_empty_order_rejected():
    with pytest.raises(DomainValidationException):
        OrderPricer().price([], "USD")


@pytest.mark.parametrize("rate", [None, "0", "5", "8.5", "7.25", "19", "33.333", "50"])
@pytest.mark.parametrize(
    "pairs",
    [
        [(1, 1)],
        [(0, 3), (99, 1)],
        [(199, 7), (1, 1), (12345, 2)],
        [(333, 3), (333, 3), (334, 3)],
        [(1, 1), (1, 1), (1, 1), (1, 1), (1, 1)],
        [(99, 1), (0, 3)],
    ],
)
@pytest.mark.parametrize("coupon_value", [None, "12.5", "100"])
def test_amounts_always_reconcile(pairs, rate, coupon_value):
    coupon = (
        Coupon(code="P", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal(coupon_value))
        if coupon_value
        else None
    )
    breakdown = OrderPricer().price(
        _items(*pairs), "USD", coupon=coupon, tax_rate=_tax(rate) if rate else None
    )

    values = (breakdown.subtotal, breakdown.discount, breakdown.tax, breakdown.total)
    assert all(isinstance(v, int) and v >= 0 for v in values)
    assert breakdown.total == breakdown.subtotal - breakdown.discount + breakdown.tax
    assert sum(line.discount for line in breakdown.lines) == breakdown.discount
    assert sum(line.tax for line in breakdown.lines) == breakdown.tax
    for line in breakdown.lines:
        assert 0 <= line.discount <= line.total
        assert line.tax >= 0


def test_small_lines_never_get_negative_tax():
    # 5 * 50% = 2.5 -> 3, spread over five one-cent lines
    breakdown = OrderPricer().price(_items(*[(1, 1)] * 5), "USD", tax_rate=_tax("50"))

    assert breakdown.tax == 3
    assert [line.tax for line in breakdown.lines] == [1, 1, 1, 0, 0]


def test_zero_amount_line_gets_no_discount_or_tax():
    coupon = Coupon(code="HALF", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("50"))
    breakdown = OrderPricer().price(_items((99, 1), (0, 3)), "USD", coupon=coupon, tax_rate=_tax("10"))

    assert breakdown.lines[1].discount == 0
    assert breakdown.lines[1].tax == 0
    assert breakdown.lines[0].discount == breakdown.discount
