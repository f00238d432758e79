"""
API依赖项 - 应用服务装配与调用方身份
"""
from typing import Optional

from fastapi import Header

from application.services.payment_orchestrator import PaymentOrchestrator
from application.services.webhook_reconciler import WebhookReconciler
from infrastructure.bootstrap import build_payment_orchestrator, build_webhook_reconciler
from infrastructure.tasks.utils.dispatcher import TaskDispatcher


async def get_payment_orchestrator() -> PaymentOrchestrator:
    return build_payment_orchestrator()


async def get_webhook_reconciler() -> WebhookReconciler:
    return build_webhook_reconciler()


async def get_task_dispatcher() -> TaskDispatcher:
    return TaskDispatcher()


async def get_actor_id(x_actor_id: Optional[int] = Header(default=None)) -> Optional[int]:
    """操作者ID，写入审计日志 performed_by；认证由上游网关负责"""
    return x_actor_id
