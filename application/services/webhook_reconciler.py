"""
Provider webhook ingestion.

Verifies the signature, deduplicates on (provider, event id) and applies the
event through the orchestrator's guarded transitions, so a webhook racing the
client-driven capture never double-applies side effects.
"""
from __future__ import annotations

from typing import Callable, Mapping, Optional

from application.dtos.payments import WebhookEvent, WebhookEventKind, WebhookOutcome
from application.ports.payment_gateway import GatewayFactory
from application.services.payment_orchestrator import PaymentOrchestrator
from core.logging_config import get_logger
from core.metrics import webhooks_total
from domain.common.exceptions import (
    IdempotencyConflictException,
    IllegalOrderTransitionException,
    PaymentSignatureException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import (
    Order,
    OrderStatus,
    Refund,
    RefundStatus,
    Transaction,
    utcnow,
)


logger = get_logger(__name__)


class WebhookReconciler:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway_factory: GatewayFactory,
        orchestrator: PaymentOrchestrator,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateway_factory = gateway_factory
        self._orchestrator = orchestrator

    async def handle(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        provider = provider.lower()
        gateway = self._gateway_factory(provider)
        try:
            try:
                event = await gateway.verify_webhook_signature(raw_body, headers)
            except PaymentSignatureException as exc:
                logger.warning(
                    "webhook_signature_invalid",
                    provider=provider,
                    reason=exc.message,
                    security_event=True,
                )
                webhooks_total.labels(provider=provider, outcome="invalid_signature").inc()
                raise
        finally:
            await gateway.aclose()

        log = logger.bind(provider=provider, event_id=event.id, event_type=event.type)
        try:
            if event.kind == WebhookEventKind.PAYMENT_APPROVED:
                outcome = await self._handle_approval(provider, event)
            else:
                outcome = await self._apply(provider, event)
        except IdempotencyConflictException:
            outcome = WebhookOutcome(
                provider=provider, event_id=event.id, event_type=event.type, duplicate=True
            )
        except Exception as exc:
            log.error("webhook_processing_failed", error=str(exc), exc_info=True)
            webhooks_total.labels(provider=provider, outcome="error").inc()
            raise

        if outcome.duplicate:
            log.info("webhook_duplicate_ignored")
            webhooks_total.labels(provider=provider, outcome="duplicate").inc()
        else:
            log.info(
                "webhook_processed",
                handled=outcome.handled,
                order_number=outcome.order_number,
                order_status=outcome.order_status,
            )
            webhooks_total.labels(provider=provider, outcome="handled" if outcome.handled else "ignored").inc()
        return outcome

    async def _apply(self, provider: str, event: WebhookEvent) -> WebhookOutcome:
        async with self._uow_factory() as uow:
            if await uow.webhook_events.exists(provider, event.id):
                return WebhookOutcome(provider=provider, event_id=event.id, event_type=event.type, duplicate=True)

            order = await self._find_order(uow, provider, event)
            await uow.webhook_events.record(provider, event.id, event.type, order.id if order else None)
            if order is None:
                if event.kind != WebhookEventKind.IGNORED:
                    logger.warning(
                        "webhook_order_not_found",
                        provider=provider,
                        event_id=event.id,
                        intent_id=event.intent_id,
                    )
                return WebhookOutcome(provider=provider, event_id=event.id, event_type=event.type)

            handled = await self._dispatch(uow, order, event)
            current = await uow.orders.get_by_id(order.id)
            return WebhookOutcome(
                provider=provider,
                event_id=event.id,
                event_type=event.type,
                handled=handled,
                order_number=order.order_number,
                order_status=current.status.value if current else None,
            )

    async def _handle_approval(self, provider: str, event: WebhookEvent) -> WebhookOutcome:
        """Buyer approved a wallet order: capture it, then record the event."""
        async with self._uow_factory(readonly=True) as uow:
            if await uow.webhook_events.exists(provider, event.id):
                return WebhookOutcome(provider=provider, event_id=event.id, event_type=event.type, duplicate=True)
            order = await self._find_order(uow, provider, event, for_update=False)

        handled = False
        order_status: Optional[str] = None
        if order is not None:
            try:
                view = await self._orchestrator.capture_order(order.order_number)
                handled = True
                order_status = view.status
            except IllegalOrderTransitionException as exc:
                logger.warning(
                    "webhook_approval_not_applicable",
                    order_number=order.order_number,
                    current=exc.details.get("current") if exc.details else None,
                )
                order_status = order.status.value

        # Recorded after capture so a failed capture is retried on redelivery
        async with self._uow_factory() as uow:
            await uow.webhook_events.record(provider, event.id, event.type, order.id if order else None)
        return WebhookOutcome(
            provider=provider,
            event_id=event.id,
            event_type=event.type,
            handled=handled,
            order_number=order.order_number if order else None,
            order_status=order_status,
        )

    async def _find_order(
        self,
        uow: AbstractUnitOfWork,
        provider: str,
        event: WebhookEvent,
        *,
        for_update: bool = True,
    ) -> Optional[Order]:
        if event.intent_id:
            order = await uow.orders.get_by_provider_intent_id(provider, event.intent_id, for_update=for_update)
            if order is not None:
                return order
        if event.provider_reference:
            tx = await uow.transactions.get_by_provider_transaction_id(provider, event.provider_reference)
            if tx is not None:
                return await uow.orders.get_by_id(tx.order_id, for_update=for_update)
        return None

    async def _dispatch(self, uow: AbstractUnitOfWork, order: Order, event: WebhookEvent) -> bool:
        try:
            if event.kind == WebhookEventKind.PAYMENT_SUCCEEDED:
                return await self._orchestrator.apply_payment_succeeded(
                    uow,
                    order,
                    provider_reference=event.provider_reference,
                    snapshot=event.data,
                    source="webhook",
                )
            if event.kind == WebhookEventKind.PAYMENT_FAILED:
                return await self._orchestrator.apply_payment_failed(
                    uow, order, snapshot=event.data, source="webhook"
                )
            if event.kind == WebhookEventKind.PAYMENT_REQUIRES_ACTION:
                return await self._orchestrator.apply_requires_action(
                    uow, order, snapshot=event.data, source="webhook"
                )
            if event.kind == WebhookEventKind.REFUND_SUCCEEDED:
                return await self._apply_refund(uow, order, event)
            if event.kind == WebhookEventKind.REFUND_FAILED:
                return await self._fail_refund(uow, order, event)
        except IllegalOrderTransitionException as exc:
            # e.g. a success notification for an order that already expired
            logger.warning(
                "webhook_transition_rejected",
                order_number=order.order_number,
                event_type=event.type,
                details=exc.details,
            )
            return False
        return False

    async def _apply_refund(self, uow: AbstractUnitOfWork, order: Order, event: WebhookEvent) -> bool:
        if order.status not in (OrderStatus.COMPLETED, OrderStatus.REFUNDED):
            logger.warning(
                "webhook_refund_for_unpaid_order",
                order_number=order.order_number,
                status=order.status.value,
            )
            return False

        now = utcnow()
        refund: Optional[Refund] = None
        if event.refund_id:
            refund = await uow.refunds.get_by_provider_refund_id(event.refund_id)
        if refund is not None:
            if refund.status == RefundStatus.SUCCEEDED:
                # already settled through the API response
                return False
            refund.status = RefundStatus.SUCCEEDED
            refund.processed_at = now
            refund = await uow.refunds.update(refund)
        else:
            known = await uow.refunds.list_by_order(order.id)
            known_total = sum(r.amount for r in known if r.counts_against_balance)
            amount = event.refund_amount
            if amount is None and event.refunded_total is not None:
                amount = event.refunded_total - known_total
            if amount and amount > 0:
                # Refund issued outside this service (e.g. provider dashboard)
                payment_tx = await self._settled_payment(uow, order, event.provider_reference)
                if payment_tx is None:
                    logger.warning("webhook_refund_without_payment", order_number=order.order_number)
                    return False
                refund = await uow.refunds.create(
                    Refund(
                        transaction_id=payment_tx.id,
                        amount=amount,
                        currency=order.currency,
                        status=RefundStatus.SUCCEEDED,
                        reason="provider_initiated",
                        provider_refund_id=event.refund_id,
                        processed_at=now,
                    )
                )
            else:
                # Provider totals already cover what we know; confirm in-flight refunds
                for pending in known:
                    if pending.status in (RefundStatus.PENDING, RefundStatus.PROCESSING):
                        pending.status = RefundStatus.SUCCEEDED
                        pending.processed_at = now
                        refund = await uow.refunds.update(pending)

        if refund is None:
            return False
        if order.status == OrderStatus.REFUNDED:
            return True
        transaction = await uow.transactions.get_by_id(refund.transaction_id)
        await self._orchestrator.settle_refunds(
            uow, order, transaction=transaction, refund=refund, source="webhook"
        )
        return True

    async def _fail_refund(self, uow: AbstractUnitOfWork, order: Order, event: WebhookEvent) -> bool:
        refund = await uow.refunds.get_by_provider_refund_id(event.refund_id) if event.refund_id else None
        if refund is None:
            logger.warning(
                "webhook_refund_failure_unmatched",
                order_number=order.order_number,
                refund_id=event.refund_id,
            )
            return False
        return await self._orchestrator.apply_refund_failed(uow, order, refund, source="webhook")

    async def _settled_payment(
        self,
        uow: AbstractUnitOfWork,
        order: Order,
        reference: Optional[str],
    ) -> Optional[Transaction]:
        transactions = [t for t in await uow.transactions.list_by_order(order.id) if t.is_settled_payment]
        if reference:
            for tx in transactions:
                if tx.provider_transaction_id == reference:
                    return tx
        return transactions[-1] if transactions else None
