"""
优惠券/税率仓储实现
"""
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.commerce.entity import Coupon, CouponStatus, DiscountType, TaxRate
from domain.commerce.repository import CouponRepository, TaxRateRepository
from infrastructure.models.commerce import CouponModel, TaxRateModel


logger = get_logger(__name__)


class SQLAlchemyCouponRepository(CouponRepository):
    """优惠券仓储；核销计数只通过条件 UPDATE 修改，从不读-改-写"""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _to_entity(model: CouponModel) -> Coupon:
        return Coupon(
            id=model.id,
            code=model.code,
            description=model.description,
            discount_type=DiscountType(model.discount_type),
            discount_value=Decimal(str(model.discount_value)),
            currency=model.currency,
            redemption_count=model.redemption_count,
            max_redemptions=model.max_redemptions,
            stackable=bool(model.stackable),
            status=CouponStatus(model.status),
            valid_from=model.valid_from,
            valid_until=model.valid_until,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def create(self, coupon: Coupon) -> Coupon:
        model = CouponModel(
            code=coupon.code,
            description=coupon.description,
            discount_type=coupon.discount_type.value,
            discount_value=coupon.discount_value,
            currency=coupon.currency,
            redemption_count=coupon.redemption_count,
            max_redemptions=coupon.max_redemptions,
            stackable=coupon.stackable,
            status=coupon.status.value,
            valid_from=coupon.valid_from,
            valid_until=coupon.valid_until,
        )
        self.session.add(model)
        await self.session.flush()
        await self.session.refresh(model)
        logger.info("coupon_created", coupon_id=model.id, code=model.code)
        return self._to_entity(model)

    async def get_by_id(self, coupon_id: int) -> Optional[Coupon]:
        result = await self.session.execute(
            select(CouponModel)
            .where(CouponModel.id == coupon_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def get_by_code(self, code: str) -> Optional[Coupon]:
        result = await self.session.execute(
            select(CouponModel)
            .where(CouponModel.code == code.strip().upper())
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def try_increment_redemption(self, coupon_id: int) -> bool:
        result = await self.session.execute(
            update(CouponModel)
            .where(
                CouponModel.id == coupon_id,
                or_(
                    CouponModel.max_redemptions.is_(None),
                    CouponModel.redemption_count < CouponModel.max_redemptions,
                ),
            )
            .values(redemption_count=CouponModel.redemption_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def decrement_redemption(self, coupon_id: int) -> bool:
        result = await self.session.execute(
            update(CouponModel)
            .where(CouponModel.id == coupon_id, CouponModel.redemption_count > 0)
            .values(redemption_count=CouponModel.redemption_count - 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class SQLAlchemyTaxRateRepository(TaxRateRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _to_entity(model: TaxRateModel) -> TaxRate:
        return TaxRate(
            id=model.id,
            country_code=model.country_code,
            region_code=model.region_code,
            rate_percentage=Decimal(str(model.rate_percentage)),
            label=model.label,
            is_default=bool(model.is_default),
            effective_from=model.effective_from,
            effective_until=model.effective_until,
        )

    async def create(self, rate: TaxRate) -> TaxRate:
        model = TaxRateModel(
            country_code=rate.country_code,
            region_code=rate.region_code,
            rate_percentage=rate.rate_percentage,
            label=rate.label,
            is_default=rate.is_default,
            effective_from=rate.effective_from,
            effective_until=rate.effective_until,
        )
        self.session.add(model)
        await self.session.flush()
        await self.session.refresh(model)
        return self._to_entity(model)

    async def list_by_country(self, country_code: str) -> List[TaxRate]:
        result = await self.session.execute(
            select(TaxRateModel)
            .where(TaxRateModel.country_code == country_code.upper())
            .order_by(TaxRateModel.effective_from.desc(), TaxRateModel.id.desc())
        )
        return [self._to_entity(m) for m in result.scalars().all()]
