"""Coupon eligibility checks and the redemption counter."""
from __future__ import annotations

from datetime import datetime

from core.logging_config import get_logger
from domain.commerce.entity import Coupon, CouponStatus
from domain.common.exceptions import CouponExhaustedException, CouponNotApplicableException
from domain.common.unit_of_work import AbstractUnitOfWork


logger = get_logger(__name__)


class CouponLedger:
    """The redemption counter only moves through single conditional UPDATEs,
    so it stays within ``max_redemptions`` under concurrent callers."""

    async def validate(
        self,
        uow: AbstractUnitOfWork,
        code: str,
        currency: str,
        now: datetime,
    ) -> Coupon:
        """Check a coupon can be applied; does not touch the counter."""
        coupon = await uow.coupons.get_by_code(code)
        if coupon is None:
            raise CouponNotApplicableException(code, "not found")
        if coupon.status != CouponStatus.ACTIVE:
            raise CouponNotApplicableException(coupon.code, f"coupon is {coupon.status.value}")
        if not coupon.is_within_window(now):
            raise CouponNotApplicableException(coupon.code, "outside validity window")
        if coupon.currency and coupon.currency != currency.upper():
            raise CouponNotApplicableException(coupon.code, "currency mismatch")
        if not coupon.has_remaining_redemptions:
            raise CouponExhaustedException(coupon.id, code=coupon.code)
        return coupon

    async def increment(self, uow: AbstractUnitOfWork, coupon_id: int) -> None:
        if not await uow.coupons.try_increment_redemption(coupon_id):
            logger.warning("coupon_exhausted", coupon_id=coupon_id)
            raise CouponExhaustedException(coupon_id)
        logger.info("coupon_redeemed", coupon_id=coupon_id)

    async def decrement(self, uow: AbstractUnitOfWork, coupon_id: int) -> None:
        if await uow.coupons.decrement_redemption(coupon_id):
            logger.info("coupon_released", coupon_id=coupon_id)
        else:
            logger.warning("coupon_release_noop", coupon_id=coupon_id)
