"""
Payments API routes.

Thin HTTP layer over the orchestrator and the webhook reconciler; no SDK
details here.
"""
from __future__ import annotations

import ipaddress
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from api.dependencies import (
    get_actor_id,
    get_payment_orchestrator,
    get_task_dispatcher,
    get_webhook_reconciler,
)
from api.middleware import client_ip_of
from application.dtos.payments import CreateOrder, RefundOrder
from application.services.payment_orchestrator import PaymentOrchestrator
from application.services.webhook_reconciler import WebhookReconciler
from core.logging_config import get_logger
from core.response import success_response
from core.settings import payment_settings
from domain.order.entity import OrderStatus
from infrastructure.tasks.utils.dispatcher import TaskDispatcher


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


def _ip_allowed(remote_ip: str, allowlist: list[str]) -> bool:
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_entry_invalid", entry=entry)
    return False


@router.post("/orders", summary="Create order and payment intent", status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: CreateOrder,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
    actor: Optional[int] = Depends(get_actor_id),
):
    view = await orchestrator.create_order(payload, actor=actor)
    return success_response(data=view.model_dump(mode="json"), message="Order created")


@router.get("/orders/{order_number}", summary="Get order")
async def get_order(
    order_number: str,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    view = await orchestrator.get_order(order_number)
    return success_response(data=view.model_dump(mode="json"))


@router.post("/orders/{order_number}/capture", summary="Capture order payment")
async def capture_order(
    order_number: str,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
    dispatcher: TaskDispatcher = Depends(get_task_dispatcher),
    actor: Optional[int] = Depends(get_actor_id),
):
    view = await orchestrator.capture_order(order_number, actor=actor)
    if view.status == OrderStatus.PROCESSING.value:
        dispatcher.schedule_order_reconcile(
            order_number, countdown=payment_settings.reconcile_delay_seconds
        )
    return success_response(data=view.model_dump(mode="json"), message="Capture processed")


@router.post("/orders/{order_number}/reconcile", summary="Reconcile order with provider")
async def reconcile_order(
    order_number: str,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
    actor: Optional[int] = Depends(get_actor_id),
):
    view = await orchestrator.reconcile_order(order_number, actor=actor)
    return success_response(data=view.model_dump(mode="json"))


@router.post("/refunds", summary="Refund a captured transaction", status_code=status.HTTP_201_CREATED)
async def create_refund(
    payload: RefundOrder,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
    actor: Optional[int] = Depends(get_actor_id),
):
    refund = await orchestrator.refund(payload, actor=actor)
    return success_response(data=refund.model_dump(mode="json"), message="Refund submitted")


@router.post("/webhooks/{provider}", summary="Provider webhook")
async def payments_webhook(
    provider: str,
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    allowlist = payment_settings.webhook.ip_allowlist or []
    if allowlist:
        remote_ip = client_ip_of(request)
        if not _ip_allowed(remote_ip, allowlist):
            logger.warning("webhook_ip_rejected", provider=provider, remote_ip=remote_ip, security_event=True)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Source IP not allowed")

    content_type = (request.headers.get("content-type") or "").lower()
    if "application/json" not in content_type:
        raise HTTPException(status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail="Expected application/json")

    # Signature verification needs the exact raw bytes
    raw_body = await request.body()
    outcome = await reconciler.handle(provider, raw_body, dict(request.headers))
    message = "Duplicate event ignored" if outcome.duplicate else "Event received"
    return success_response(data=outcome.model_dump(mode="json"), message=message)
