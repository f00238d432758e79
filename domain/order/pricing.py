"""
订单计价 - 纯函数式计算小计、折扣、税额与总额

所有金额均为最小货币单位整数；百分比计算使用 Decimal 并四舍五入（ROUND_HALF_UP）。
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Protocol, Sequence

from domain.common.exceptions import DomainValidationException
from domain.commerce.entity import Coupon, DiscountType, TaxRate


class PricedItem(Protocol):
    unit_amount: int
    quantity: int


@dataclass(frozen=True)
class LinePrice:
    total: int
    discount: int
    tax: int


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: int
    discount: int
    tax: int
    total: int
    lines: tuple[LinePrice, ...]

    @property
    def taxable(self) -> int:
        return self.subtotal - self.discount


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _percent_of(amount: int, percentage: Decimal) -> int:
    return _round_half_up(Decimal(amount) * Decimal(percentage) / Decimal(100))


def _allocate(amount: int, weights: Sequence[int]) -> list[int]:
    """最大余数法分摊：各行先向下取整，余下的单位按余数从大到小逐一补齐。

    要求 ``0 <= amount <= sum(weights)``，因此每行分摊额落在 ``[0, weight]`` 内，
    权重为 0 的行分摊额为 0。
    """
    basis = sum(weights)
    if basis <= 0 or amount == 0:
        return [0] * len(weights)
    floors: list[int] = []
    remainders: list[tuple[int, int]] = []
    for index, weight in enumerate(weights):
        share, remainder = divmod(amount * weight, basis)
        floors.append(share)
        remainders.append((remainder, index))
    leftover = amount - sum(floors)
    # 余数相同时靠前的行优先
    for _, index in sorted(remainders, key=lambda r: (-r[0], r[1]))[:leftover]:
        floors[index] += 1
    return floors


class OrderPricer:
    """计价器：至多应用一张优惠券与一个税率。"""

    def price(
        self,
        items: Sequence[PricedItem],
        currency: str,
        *,
        coupon: Optional[Coupon] = None,
        tax_rate: Optional[TaxRate] = None,
    ) -> PriceBreakdown:
        if not items:
            raise DomainValidationException("Order must contain at least one item", field="items")
        for index, item in enumerate(items):
            if item.quantity <= 0:
                raise DomainValidationException(
                    "Item quantity must be positive", field=f"items[{index}].quantity"
                )
            if item.unit_amount < 0:
                raise DomainValidationException(
                    "Item unit amount cannot be negative", field=f"items[{index}].unit_amount"
                )

        line_totals = [item.unit_amount * item.quantity for item in items]
        subtotal = sum(line_totals)

        discount = self._discount(subtotal, currency, coupon)
        taxable = subtotal - discount
        tax = _percent_of(taxable, tax_rate.rate_percentage) if tax_rate else 0
        total = taxable + tax

        line_discounts = _allocate(discount, line_totals)
        line_tax = _allocate(tax, [t - d for t, d in zip(line_totals, line_discounts)])
        lines = tuple(
            LinePrice(total=t, discount=d, tax=x)
            for t, d, x in zip(line_totals, line_discounts, line_tax)
        )
        return PriceBreakdown(subtotal=subtotal, discount=discount, tax=tax, total=total, lines=lines)

    @staticmethod
    def _discount(subtotal: int, currency: str, coupon: Optional[Coupon]) -> int:
        if coupon is None:
            return 0
        if coupon.currency and coupon.currency != currency.upper():
            raise DomainValidationException(
                f"Coupon currency {coupon.currency} does not match order currency {currency.upper()}",
                field="coupon_codes",
            )
        if coupon.discount_type == DiscountType.PERCENTAGE:
            return min(_percent_of(subtotal, coupon.discount_value), subtotal)
        return min(int(coupon.discount_value), subtotal)
