import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from application.services.coupon_ledger import CouponLedger
from domain.commerce.entity import CouponStatus
from domain.common.exceptions import CouponExhaustedException, CouponNotApplicableException


NOW = datetime.now(timezone.utc)


@pytest.mark.asyncio
async def test_validate_accepts_active_coupon_case_insensitively(uow_factory, seed_coupon):
    await seed_coupon("SAVE25")
    async with uow_factory(readonly=True) as uow:
        coupon = await CouponLedger().validate(uow, "save25", "USD", NOW)
    assert coupon.code == "SAVE25"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"status": CouponStatus.ARCHIVED},
        {"valid_until": NOW - timedelta(days=1)},
        {"valid_from": NOW + timedelta(days=1)},
    ],
)
async def test_validate_rejects_inapplicable_coupon(uow_factory, seed_coupon, kwargs):
    await seed_coupon("NOPE", **kwargs)
    async with uow_factory(readonly=True) as uow:
        with pytest.raises(CouponNotApplicableException):
            await CouponLedger().validate(uow, "NOPE", "USD", NOW)


@pytest.mark.asyncio
async def test_validate_rejects_unknown_and_exhausted(uow_factory, seed_coupon):
    await seed_coupon("ONCE", max_redemptions=1, redemption_count=1)
    async with uow_factory(readonly=True) as uow:
        with pytest.raises(CouponNotApplicableException):
            await CouponLedger().validate(uow, "MISSING", "USD", NOW)
        with pytest.raises(CouponExhaustedException):
            await CouponLedger().validate(uow, "ONCE", "USD", NOW)


@pytest.mark.asyncio
async def test_concurrent_increments_never_exceed_limit(uow_factory, seed_coupon):
    coupon = await seed_coupon("LIMITED", max_redemptions=1)
    ledger = CouponLedger()

    async def _redeem() -> bool:
        try:
            async with uow_factory() as uow:
                await ledger.increment(uow, coupon.id)
            return True
        except CouponExhaustedException:
            return False

    results = await asyncio.gather(*[_redeem() for _ in range(5)])

    assert results.count(True) == 1
    async with uow_factory(readonly=True) as uow:
        stored = await uow.coupons.get_by_id(coupon.id)
    assert stored.redemption_count == 1


@pytest.mark.asyncio
async def test_decrement_floors_at_zero(uow_factory, seed_coupon):
    coupon = await seed_coupon("FLOOR")
    ledger = CouponLedger()
    async with uow_factory() as uow:
        await ledger.increment(uow, coupon.id)
        await ledger.decrement(uow, coupon.id)
        await ledger.decrement(uow, coupon.id)
    async with uow_factory(readonly=True) as uow:
        stored = await uow.coupons.get_by_id(coupon.id)
    assert stored.redemption_count == 0
