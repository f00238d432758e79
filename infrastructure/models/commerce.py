"""
优惠券与税率数据库模型
"""
from sqlalchemy import Boolean, Column, Integer, Numeric, String, DateTime, Text, Index
from datetime import datetime, timezone

from .base import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CouponModel(Base):
    __tablename__ = "commerce_coupons"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    discount_type = Column(String(20), nullable=False, comment="percentage/fixed")
    discount_value = Column(Numeric(12, 4), nullable=False, comment="百分点或最小货币单位金额")
    currency = Column(String(3), nullable=True)
    redemption_count = Column(Integer, nullable=False, default=0)
    max_redemptions = Column(Integer, nullable=True, comment="为空表示不限")
    stackable = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default="active", index=True)
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)


class TaxRateModel(Base):
    __tablename__ = "commerce_tax_rates"

    id = Column(Integer, primary_key=True, index=True)
    country_code = Column(String(2), nullable=False)
    region_code = Column(String(10), nullable=True)
    rate_percentage = Column(Numeric(7, 4), nullable=False)
    label = Column(String(100), nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    effective_from = Column(DateTime(timezone=True), nullable=False, default=_now)
    effective_until = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_commerce_tax_rates_country_region", "country_code", "region_code"),
    )
