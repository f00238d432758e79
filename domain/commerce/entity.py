"""
营销/计税实体：优惠券与税率
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException
from domain.order.entity import _ensure_utc


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class CouponStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    ARCHIVED = "archived"


@dataclass
class Coupon:
    """
    优惠券

    - percentage: discount_value 为百分点（如 25 表示 25%）
    - fixed: discount_value 为最小货币单位金额，必须指定 currency
    - max_redemptions 为空表示不限次数
    """

    code: str
    discount_type: DiscountType
    discount_value: Decimal
    status: CouponStatus = CouponStatus.ACTIVE
    currency: Optional[str] = None
    redemption_count: int = 0
    max_redemptions: Optional[int] = None
    stackable: bool = False
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    id: Optional[int] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.code = self.code.strip().upper()
        self.discount_type = DiscountType(self.discount_type)
        self.status = CouponStatus(self.status)
        self.discount_value = Decimal(str(self.discount_value))
        if self.currency:
            self.currency = self.currency.upper()
        if self.discount_value <= 0:
            raise DomainValidationException("Coupon value must be positive", field="discount_value")
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise DomainValidationException("Percentage coupon cannot exceed 100", field="discount_value")
        if self.discount_type == DiscountType.FIXED and not self.currency:
            raise DomainValidationException("Fixed coupon requires a currency", field="currency")
        self.valid_from = _ensure_utc(self.valid_from)
        self.valid_until = _ensure_utc(self.valid_until)

    def is_within_window(self, now: datetime) -> bool:
        if self.valid_from and now < self.valid_from:
            return False
        if self.valid_until and now >= self.valid_until:
            return False
        return True

    @property
    def has_remaining_redemptions(self) -> bool:
        return self.max_redemptions is None or self.redemption_count < self.max_redemptions


@dataclass
class TaxRate:
    country_code: str
    rate_percentage: Decimal
    effective_from: datetime
    region_code: Optional[str] = None
    label: Optional[str] = None
    is_default: bool = False
    effective_until: Optional[datetime] = None
    id: Optional[int] = None

    def __post_init__(self):
        self.country_code = self.country_code.upper()
        if self.region_code:
            self.region_code = self.region_code.upper()
        self.rate_percentage = Decimal(str(self.rate_percentage))
        if self.rate_percentage < 0:
            raise DomainValidationException("Tax rate cannot be negative", field="rate_percentage")
        self.effective_from = _ensure_utc(self.effective_from)
        self.effective_until = _ensure_utc(self.effective_until)

    def is_effective(self, as_of: datetime) -> bool:
        if as_of < self.effective_from:
            return False
        return self.effective_until is None or as_of < self.effective_until
