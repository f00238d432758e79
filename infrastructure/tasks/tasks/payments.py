"""Payment housekeeping tasks: order expiry and provider reconciliation."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from celery import shared_task

from application.services.payment_orchestrator import PaymentOrchestrator
from core.config import settings
from core.logging_config import get_logger
from domain.common.exceptions import PaymentGatewayException
from infrastructure.bootstrap import build_payment_orchestrator
from infrastructure.database import build_engine, build_session_factory
from ..utils.base_task import BaseTask

logger = get_logger(__name__)

T = TypeVar("T")


def _run(work: Callable[[PaymentOrchestrator], Awaitable[T]]) -> T:
    """Run one unit of async work with an engine bound to this event loop."""

    async def _main() -> T:
        engine = build_engine(settings.database.url, echo=settings.database.echo)
        try:
            orchestrator = build_payment_orchestrator(build_session_factory(engine))
            return await work(orchestrator)
        finally:
            await engine.dispose()

    return asyncio.run(_main())


@shared_task(name="payments.expire_stale_orders", bind=True, base=BaseTask)
def expire_stale_orders(self, limit: int = 100) -> dict:
    expired = _run(lambda orchestrator: orchestrator.expire_stale_orders(limit=limit))
    logger.info("expire_stale_orders_finished", expired=expired)
    return {"expired": expired}


@shared_task(
    name="payments.reconcile_order",
    bind=True,
    base=BaseTask,
    autoretry_for=(PaymentGatewayException,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)
def reconcile_order(self, order_number: str) -> dict:
    view = _run(lambda orchestrator: orchestrator.reconcile_order(order_number))
    logger.info("order_reconciled", order_number=order_number, status=view.status)
    return {"order_number": order_number, "status": view.status}
