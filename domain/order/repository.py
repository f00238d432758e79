"""
订单仓储接口 - 定义订单、交易、退款、审计与回调去重的数据访问抽象
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, List, Optional

from .entity import AuditLog, Order, OrderStatus, Refund, Transaction


class OrderRepository(ABC):
    """订单仓储抽象接口"""

    @abstractmethod
    async def create(self, order: Order) -> Order:
        """创建订单及其订单行"""
        pass

    @abstractmethod
    async def get_by_id(self, order_id: int, *, for_update: bool = False) -> Optional[Order]:
        """根据ID获取订单；for_update=True 时加行锁"""
        pass

    @abstractmethod
    async def get_by_order_number(self, order_number: str, *, for_update: bool = False) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_provider_intent_id(
        self, provider: str, intent_id: str, *, for_update: bool = False
    ) -> Optional[Order]:
        """根据渠道意图ID获取订单（回调只能用它定位订单）"""
        pass

    @abstractmethod
    async def exists_order_number(self, order_number: str) -> bool:
        pass

    @abstractmethod
    async def update_by_id(self, order_id: int, **values: Any) -> None:
        """无条件更新非状态字段"""
        pass

    @abstractmethod
    async def transition(
        self,
        order_id: int,
        *,
        allowed_from: Iterable[OrderStatus],
        to: OrderStatus,
        **values: Any,
    ) -> bool:
        """条件更新：仅当当前状态在 allowed_from 中时才切换到 to。

        返回是否命中（False 表示并发方已先行转换）。
        """
        pass

    @abstractmethod
    async def list_expired(self, now: datetime, limit: int = 100) -> List[Order]:
        """列出已过期且仍待支付的订单"""
        pass


class TransactionRepository(ABC):

    @abstractmethod
    async def create(self, transaction: Transaction) -> Transaction:
        pass

    @abstractmethod
    async def get_by_id(self, transaction_id: int) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def get_by_provider_transaction_id(self, provider: str, reference: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def list_by_order(self, order_id: int) -> List[Transaction]:
        pass

    @abstractmethod
    async def update(self, transaction: Transaction) -> Transaction:
        pass


class RefundRepository(ABC):

    @abstractmethod
    async def create(self, refund: Refund) -> Refund:
        pass

    @abstractmethod
    async def get_by_provider_refund_id(self, provider_refund_id: str) -> Optional[Refund]:
        pass

    @abstractmethod
    async def list_by_order(self, order_id: int) -> List[Refund]:
        """列出订单下所有交易的退款"""
        pass

    @abstractmethod
    async def update(self, refund: Refund) -> Refund:
        pass


class AuditLogRepository(ABC):
    """审计日志仓储：只追加"""

    @abstractmethod
    async def append(self, entry: AuditLog) -> AuditLog:
        pass

    @abstractmethod
    async def list_by_order(self, order_id: int) -> List[AuditLog]:
        pass


class WebhookEventRepository(ABC):
    """回调去重表 (provider, event_id) 唯一"""

    @abstractmethod
    async def exists(self, provider: str, event_id: str) -> bool:
        pass

    @abstractmethod
    async def record(
        self,
        provider: str,
        event_id: str,
        event_type: str,
        order_id: Optional[int] = None,
    ) -> None:
        """记录已处理事件；唯一约束冲突时抛出 IdempotencyConflictException"""
        pass
