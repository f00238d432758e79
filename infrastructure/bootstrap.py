"""
组合根 - 为 API 与异步任务装配应用服务
"""
from __future__ import annotations

from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from application.ports.payment_gateway import GatewayFactory
from application.services.payment_orchestrator import PaymentOrchestrator
from application.services.webhook_reconciler import WebhookReconciler
from infrastructure.database import AsyncSessionLocal
from infrastructure.external.payments import get_payment_gateway
from infrastructure.unit_of_work import sqlalchemy_uow_factory


def build_payment_orchestrator(
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
    gateway_factory: GatewayFactory = get_payment_gateway,
) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        uow_factory=sqlalchemy_uow_factory(session_factory),
        gateway_factory=gateway_factory,
    )


def build_webhook_reconciler(
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
    gateway_factory: GatewayFactory = get_payment_gateway,
    orchestrator: Optional[PaymentOrchestrator] = None,
) -> WebhookReconciler:
    return WebhookReconciler(
        uow_factory=sqlalchemy_uow_factory(session_factory),
        gateway_factory=gateway_factory,
        orchestrator=orchestrator or build_payment_orchestrator(session_factory, gateway_factory),
    )
