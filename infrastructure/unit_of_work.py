"""SQLAlchemy Unit of Work 实现"""
from __future__ import annotations

from typing import Optional, Callable
import inspect

from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.database import AsyncSessionLocal
from infrastructure.repositories.commerce_repository import (
    SQLAlchemyCouponRepository,
    SQLAlchemyTaxRateRepository,
)
from infrastructure.repositories.order_repository import (
    SQLAlchemyAuditLogRepository,
    SQLAlchemyOrderRepository,
    SQLAlchemyRefundRepository,
    SQLAlchemyTransactionRepository,
    SQLAlchemyWebhookEventRepository,
)


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """基于SQLAlchemy的Unit of Work"""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self._external_session = session
        self.session: Optional[AsyncSession] = session

    def _bind_repositories(self, session: Optional[AsyncSession]) -> None:
        if session is None:
            self.orders = self.transactions = self.refunds = None  # type: ignore[assignment]
            self.coupons = self.tax_rates = None  # type: ignore[assignment]
            self.audit_logs = self.webhook_events = None  # type: ignore[assignment]
            return
        self.orders = SQLAlchemyOrderRepository(session)
        self.transactions = SQLAlchemyTransactionRepository(session)
        self.refunds = SQLAlchemyRefundRepository(session)
        self.coupons = SQLAlchemyCouponRepository(session)
        self.tax_rates = SQLAlchemyTaxRateRepository(session)
        self.audit_logs = SQLAlchemyAuditLogRepository(session)
        self.webhook_events = SQLAlchemyWebhookEventRepository(session)

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        self._bind_repositories(self.session)
        # 仅在非只读模式下显式开启事务
        if not self._readonly:
            self._transaction = await self.session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            # 事务在 commit/rollback 后通常会结束，这里仅在仍然活动时做安全关闭
            tx = getattr(self, "_transaction", None)
            if tx is not None and getattr(tx, "is_active", False):
                close = getattr(tx, "close", None)
                if callable(close):
                    res = close()
                    if inspect.isawaitable(res):
                        await res
            if self._external_session is None and self.session is not None:
                await self.session.close()
                self.session = None
            self._bind_repositories(None)

    async def commit(self) -> None:
        if self._readonly:
            self._committed = True
            return
        if self.session and self.session.in_transaction():
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False


def sqlalchemy_uow_factory(session_factory: Callable[[], AsyncSession] = AsyncSessionLocal):
    """返回 `uow_factory(readonly=False)` 可调用对象，供应用服务注入"""

    def _factory(*, readonly: bool = False) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory=session_factory, readonly=readonly)

    return _factory
