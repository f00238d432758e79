"""
优惠券/税率仓储接口
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from .entity import Coupon, TaxRate


class CouponRepository(ABC):

    @abstractmethod
    async def create(self, coupon: Coupon) -> Coupon:
        pass

    @abstractmethod
    async def get_by_id(self, coupon_id: int) -> Optional[Coupon]:
        pass

    @abstractmethod
    async def get_by_code(self, code: str) -> Optional[Coupon]:
        pass

    @abstractmethod
    async def try_increment_redemption(self, coupon_id: int) -> bool:
        """单条条件 UPDATE：count < max（或 max 为空）时 +1，返回是否命中"""
        pass

    @abstractmethod
    async def decrement_redemption(self, coupon_id: int) -> bool:
        """count > 0 时 -1，返回是否命中"""
        pass


class TaxRateRepository(ABC):

    @abstractmethod
    async def create(self, rate: TaxRate) -> TaxRate:
        pass

    @abstractmethod
    async def list_by_country(self, country_code: str) -> List[TaxRate]:
        """列出某国家全部税率（含未生效/已失效，由调用方筛选）"""
        pass
