"""
Application service orchestrating the order/payment lifecycle.

This class depends only on the application PaymentGateway port, the unit of
work abstraction and domain objects. Gateway implementations are provided by
infrastructure and injected from the composition root (API/tasks).

Every status change goes through a guarded transition (conditional UPDATE on
the current status), so the client-driven capture path and the
provider-driven webhook path can race without double-applying side effects.
"""
from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from application.dtos.payments import (
    CreateIntent,
    CreateOrder,
    IntentStatus,
    OrderItemView,
    OrderView,
    ProviderIntent,
    RefundOrder,
    RefundRequest,
    RefundView,
    TransactionView,
)
from application.ports.payment_gateway import GatewayFactory, PaymentGateway
from application.services.coupon_ledger import CouponLedger
from application.services.tax_resolver import TaxResolver
from core.logging_config import get_logger
from core.metrics import order_value, orders_total, refunds_total
from core.settings import PaymentSettings, payment_settings
from domain.common.exceptions import (
    BusinessException,
    CouponExhaustedException,
    DomainValidationException,
    IllegalOrderTransitionException,
    OrderNotFoundException,
    PaymentGatewayException,
    PaymentNotCapturableException,
    RefundExceedsCapturedException,
    TransactionNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import (
    AuditEvent,
    AuditLog,
    Order,
    OrderEvent,
    OrderItem,
    OrderStatus,
    PAYABLE_STATUSES,
    Refund,
    RefundStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    next_status,
    sources_for,
    utcnow,
)
from domain.order.pricing import OrderPricer
from shared.codes import BusinessCode


logger = get_logger(__name__)

_OPEN_TRANSACTION_STATUSES = (TransactionStatus.PENDING, TransactionStatus.REQUIRES_ACTION)
_ORDER_NUMBER_ATTEMPTS = 5


def _idempotency_key(*parts: Any) -> str:
    # Stable, reproducible key derived from business identifiers (no timestamp)
    base = "|".join(str(p) for p in parts)
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


def _error_snapshot(exc: BusinessException) -> dict[str, Any]:
    return {"error": exc.message, "code": int(exc.code), "details": exc.details or {}}


class PaymentOrchestrator:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway_factory: GatewayFactory,
        *,
        pricer: Optional[OrderPricer] = None,
        coupon_ledger: Optional[CouponLedger] = None,
        tax_resolver: Optional[TaxResolver] = None,
        settings: Optional[PaymentSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateway_factory = gateway_factory
        self._pricer = pricer or OrderPricer()
        self._coupons = coupon_ledger or CouponLedger()
        self._tax = tax_resolver or TaxResolver()
        self._settings = settings or payment_settings
        self._now = clock

    # ------------------------------------------------------------------
    # Use cases
    # ------------------------------------------------------------------
    async def create_order(self, cmd: CreateOrder, *, actor: Optional[int] = None) -> OrderView:
        provider = (cmd.provider or self._settings.default_provider).lower()
        currency = cmd.currency
        if currency not in self._settings.allowed_currencies:
            raise DomainValidationException(f"Currency {currency} is not accepted", field="currency")
        if len(cmd.coupon_codes) > 1:
            raise DomainValidationException("Coupons cannot be stacked", field="coupon_codes")

        gateway = self._gateway_factory(provider)
        now = self._now()
        order_number: Optional[str] = None
        try:
            async with self._uow_factory() as uow:
                coupon = None
                if cmd.coupon_codes:
                    coupon = await self._coupons.validate(uow, cmd.coupon_codes[0], currency, now)
                tax_rate = await self._tax.resolve(uow, cmd.billing.country, cmd.billing.region, now)
                breakdown = self._pricer.price(cmd.items, currency, coupon=coupon, tax_rate=tax_rate)
                if breakdown.total <= 0:
                    raise DomainValidationException("Order total must be greater than zero", field="items")

                order_number = await self._generate_order_number(uow, now)
                order = Order(
                    order_number=order_number,
                    currency=currency,
                    subtotal_amount=breakdown.subtotal,
                    discount_amount=breakdown.discount,
                    tax_amount=breakdown.tax,
                    total_amount=breakdown.total,
                    payment_provider=provider,
                    user_id=cmd.user_id,
                    applied_coupon_id=coupon.id if coupon else None,
                    applied_tax_rate_id=tax_rate.id if tax_rate else None,
                    billing_email=cmd.billing.email,
                    billing_country=cmd.billing.country,
                    billing_region=cmd.billing.region,
                    metadata=dict(cmd.metadata),
                    expires_at=now + timedelta(minutes=self._settings.order_expiry_minutes),
                    items=[
                        OrderItem(
                            name=item.name,
                            unit_amount=item.unit_amount,
                            quantity=item.quantity,
                            item_type=item.item_type,
                            item_id=item.item_id,
                            total_amount=line.total,
                            discount_amount=line.discount,
                            tax_amount=line.tax,
                            metadata=dict(item.metadata),
                        )
                        for item, line in zip(cmd.items, breakdown.lines)
                    ],
                )
                order.apply(OrderEvent.SUBMIT)
                order = await uow.orders.create(order)
                tx = await uow.transactions.create(
                    Transaction(
                        order_id=order.id,
                        type=TransactionType.AUTHORIZATION,
                        status=TransactionStatus.PENDING,
                        payment_provider=provider,
                        amount=order.total_amount,
                        currency=currency,
                    )
                )
                await self._audit(
                    uow,
                    AuditEvent.ORDER_CREATED,
                    order,
                    tx,
                    actor,
                    subtotal=breakdown.subtotal,
                    discount=breakdown.discount,
                    tax=breakdown.tax,
                    total=breakdown.total,
                    coupon_code=coupon.code if coupon else None,
                    tax_rate_id=tax_rate.id if tax_rate else None,
                )

                intent = await gateway.create_intent(
                    CreateIntent(
                        order_number=order.order_number,
                        amount=order.total_amount,
                        currency=currency,
                        customer_email=order.billing_email,
                        idempotency_key=_idempotency_key(
                            "create", order.order_number, order.total_amount, currency, provider
                        ),
                        metadata={"order_id": order.id, "order_number": order.order_number},
                    )
                )

                await uow.orders.update_by_id(
                    order.id,
                    provider_intent_id=intent.intent_id,
                    provider_client_secret=intent.client_secret,
                    provider_approval_url=intent.approval_url,
                )
                tx.provider_transaction_id = intent.intent_id
                tx.payment_method_type = intent.payment_method_type
                tx.response_snapshot = intent.raw
                if intent.status == IntentStatus.REQUIRES_ACTION:
                    await uow.orders.transition(
                        order.id,
                        allowed_from=sources_for(OrderEvent.REQUIRE_ACTION),
                        to=OrderStatus.REQUIRES_ACTION,
                    )
                    tx.status = TransactionStatus.REQUIRES_ACTION
                tx = await uow.transactions.update(tx)
                await self._audit(
                    uow,
                    AuditEvent.INTENT_CREATED,
                    order,
                    tx,
                    actor,
                    intent_id=intent.intent_id,
                    intent_status=intent.status.value,
                )
                order = await self._require_order(uow, order.id)
                view = await self._view(uow, order)
        except PaymentGatewayException as exc:
            logger.warning(
                "order_create_gateway_failed",
                order_number=order_number,
                provider=provider,
                error=exc.message,
            )
            async with self._uow_factory() as uow:
                await self._audit(
                    uow,
                    AuditEvent.ORDER_CREATE_FAILED,
                    None,
                    None,
                    actor,
                    order_number=order_number,
                    provider=provider,
                    **_error_snapshot(exc),
                )
            orders_total.labels(provider=provider, status="create_failed").inc()
            raise
        finally:
            await gateway.aclose()

        orders_total.labels(provider=provider, status=view.status).inc()
        order_value.labels(currency=currency).observe(view.total_amount)
        logger.info(
            "order_submitted",
            order_number=view.order_number,
            provider=provider,
            status=view.status,
            total_amount=view.total_amount,
        )
        return view

    async def get_order(self, order_number: str) -> OrderView:
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.orders.get_by_order_number(order_number)
            if order is None:
                raise OrderNotFoundException(order_number)
            return await self._view(uow, order)

    async def capture_order(self, order_number: str, *, actor: Optional[int] = None) -> OrderView:
        """Confirm/capture a payable order. Capturing a completed order is a no-op."""
        async with self._uow_factory() as uow:
            order = await uow.orders.get_by_order_number(order_number, for_update=True)
            if order is None:
                raise OrderNotFoundException(order_number)
            if order.status == OrderStatus.COMPLETED:
                logger.info("capture_noop_already_completed", order_number=order_number)
                return await self._view(uow, order)
            if order.status not in (OrderStatus.AWAITING_PAYMENT, OrderStatus.REQUIRES_ACTION):
                raise IllegalOrderTransitionException(
                    order.status.value, OrderEvent.SUCCEED.value, order_number=order_number
                )
            capture_tx = await uow.transactions.create(
                Transaction(
                    order_id=order.id,
                    type=TransactionType.CAPTURE,
                    status=TransactionStatus.PENDING,
                    payment_provider=order.payment_provider,
                    amount=order.total_amount,
                    currency=order.currency,
                )
            )
            await self._audit(uow, AuditEvent.CAPTURE_REQUESTED, order, capture_tx, actor)

        gateway = self._gateway_factory(order.payment_provider)
        try:
            intent = await gateway.capture(order.provider_intent_id)
        except PaymentGatewayException as exc:
            await self._fail_capture_transaction(order, capture_tx, actor, exc)
            raise
        finally:
            await gateway.aclose()

        not_capturable = intent.status in (IntentStatus.REQUIRES_PAYMENT, IntentStatus.AUTHORIZED)
        async with self._uow_factory() as uow:
            order = await self._require_order(uow, order.id, for_update=True)
            if not_capturable:
                capture_tx.status = TransactionStatus.FAILED
                capture_tx.processed_at = self._now()
                capture_tx.response_snapshot = intent.raw
                await uow.transactions.update(capture_tx)
                await self._audit(
                    uow, AuditEvent.CAPTURE_FAILED, order, capture_tx, actor, intent_status=intent.status.value
                )
            else:
                await self._apply_intent(uow, order, intent, transaction=capture_tx, actor=actor, source="capture")
                order = await self._require_order(uow, order.id)
            view = await self._view(uow, order)

        if not_capturable:
            raise PaymentNotCapturableException(intent.status.value, provider=order.payment_provider)
        return view

    async def refund(self, cmd: RefundOrder, *, actor: Optional[int] = None) -> RefundView:
        async with self._uow_factory() as uow:
            tx = await uow.transactions.get_by_id(cmd.transaction_id)
            if tx is None:
                raise TransactionNotFoundException(cmd.transaction_id)
            order = await self._require_order(uow, tx.order_id, for_update=True)
            if not tx.is_settled_payment:
                raise DomainValidationException(
                    "Only succeeded payment transactions can be refunded", field="transaction_id"
                )
            if order.status != OrderStatus.COMPLETED:
                raise IllegalOrderTransitionException(
                    order.status.value, OrderEvent.REFUND_PARTIAL.value, order_number=order.order_number
                )
            refundable = order.total_amount - await self._refunded_total(uow, order.id)
            amount = cmd.amount if cmd.amount is not None else refundable
            if amount <= 0 or amount > refundable:
                raise RefundExceedsCapturedException(amount, refundable)
            refund = await uow.refunds.create(
                Refund(
                    transaction_id=tx.id,
                    amount=amount,
                    currency=order.currency,
                    status=RefundStatus.PENDING,
                    reason=cmd.reason,
                    requested_by=actor,
                )
            )
            await self._audit(
                uow,
                AuditEvent.REFUND_REQUESTED,
                order,
                tx,
                actor,
                refund_id=refund.id,
                amount=amount,
                reason=cmd.reason,
            )

        provider_reference = (
            tx.provider_transaction_id if tx.provider_transaction_id != order.provider_intent_id else None
        )
        gateway = self._gateway_factory(order.payment_provider)
        try:
            result = await gateway.refund(
                RefundRequest(
                    intent_id=order.provider_intent_id,
                    amount=amount,
                    currency=order.currency,
                    provider_reference=provider_reference,
                    reason=cmd.reason,
                    idempotency_key=_idempotency_key("refund", order.order_number, refund.id, amount),
                )
            )
        except PaymentGatewayException as exc:
            async with self._uow_factory() as uow:
                refund.status = RefundStatus.FAILED
                refund.processed_at = self._now()
                refund.metadata = {**refund.metadata, **_error_snapshot(exc)}
                await uow.refunds.update(refund)
                await self._audit(
                    uow, AuditEvent.REFUND_FAILED, order, tx, actor, refund_id=refund.id, **_error_snapshot(exc)
                )
            refunds_total.labels(provider=order.payment_provider, status="failed").inc()
            raise
        finally:
            await gateway.aclose()

        async with self._uow_factory() as uow:
            order = await self._require_order(uow, order.id, for_update=True)
            refund.provider_refund_id = result.refund_id
            refund.status = RefundStatus(result.status)
            if refund.status in (RefundStatus.SUCCEEDED, RefundStatus.FAILED):
                refund.processed_at = self._now()
            refund = await uow.refunds.update(refund)
            if refund.status == RefundStatus.FAILED:
                await self._audit(
                    uow, AuditEvent.REFUND_FAILED, order, tx, actor, refund_id=refund.id, provider_status="failed"
                )
                refunds_total.labels(provider=order.payment_provider, status="failed").inc()
            elif refund.status == RefundStatus.SUCCEEDED:
                await self.settle_refunds(uow, order, transaction=tx, refund=refund, actor=actor, source="api")
            else:
                # settled later by the refund webhook; the amount stays reserved meanwhile
                await self._audit(
                    uow,
                    AuditEvent.REFUND_PENDING,
                    order,
                    tx,
                    actor,
                    refund_id=refund.id,
                    provider_status=refund.status.value,
                )
                refunds_total.labels(provider=order.payment_provider, status=refund.status.value).inc()
        return RefundView.model_validate(refund)

    async def reconcile_order(self, order_number: str, *, actor: Optional[int] = None) -> OrderView:
        """Pull the intent from the provider and apply the same guarded transitions."""
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.orders.get_by_order_number(order_number)
            if order is None:
                raise OrderNotFoundException(order_number)
            if order.status not in PAYABLE_STATUSES or not order.provider_intent_id:
                return await self._view(uow, order)

        gateway = self._gateway_factory(order.payment_provider)
        try:
            intent = await gateway.retrieve(order.provider_intent_id)
        finally:
            await gateway.aclose()

        async with self._uow_factory() as uow:
            order = await self._require_order(uow, order.id, for_update=True)
            if order.status in PAYABLE_STATUSES:
                await self._apply_intent(uow, order, intent, transaction=None, actor=actor, source="reconcile")
                order = await self._require_order(uow, order.id)
            return await self._view(uow, order)

    async def expire_stale_orders(self, now: Optional[datetime] = None, *, limit: int = 100) -> int:
        """Cancel unpaid orders past ``expires_at``; returns how many were cancelled."""
        now = now or self._now()
        async with self._uow_factory(readonly=True) as uow:
            candidates = await uow.orders.list_expired(now, limit=limit)

        gateways: dict[str, PaymentGateway] = {}
        expired = 0
        try:
            for order in candidates:
                if order.provider_intent_id:
                    gateway = gateways.get(order.payment_provider)
                    if gateway is None:
                        gateway = gateways[order.payment_provider] = self._gateway_factory(order.payment_provider)
                    try:
                        intent = await gateway.cancel(order.provider_intent_id)
                    except PaymentGatewayException as exc:
                        logger.warning(
                            "order_expire_cancel_failed",
                            order_number=order.order_number,
                            error=exc.message,
                        )
                        continue
                    if intent.status == IntentStatus.SUCCEEDED:
                        # paid just before expiry
                        async with self._uow_factory() as uow:
                            locked = await self._require_order(uow, order.id, for_update=True)
                            await self._apply_intent(uow, locked, intent, transaction=None, actor=None, source="expiry")
                        continue

                async with self._uow_factory() as uow:
                    applied = await uow.orders.transition(
                        order.id,
                        allowed_from=(OrderStatus.AWAITING_PAYMENT, OrderStatus.REQUIRES_ACTION),
                        to=OrderStatus.CANCELLED,
                        cancelled_at=now,
                    )
                    if not applied:
                        continue
                    await self._close_transactions(uow, order.id, TransactionStatus.CANCELLED, now=now)
                    await self._audit(
                        uow, AuditEvent.ORDER_EXPIRED, order, None, None, expires_at=order.expires_at.isoformat()
                    )
                expired += 1
                orders_total.labels(provider=order.payment_provider, status="expired").inc()
        finally:
            for gateway in gateways.values():
                await gateway.aclose()

        if expired:
            logger.info("orders_expired", count=expired)
        return expired

    # ------------------------------------------------------------------
    # Guarded transitions (shared by capture, reconcile and webhooks)
    # ------------------------------------------------------------------
    async def apply_payment_succeeded(
        self,
        uow: AbstractUnitOfWork,
        order: Order,
        *,
        transaction: Optional[Transaction] = None,
        provider_reference: Optional[str] = None,
        snapshot: Optional[dict] = None,
        actor: Optional[int] = None,
        source: str,
    ) -> bool:
        """Flip a payable order to completed exactly once.

        Returns False when a concurrent path already completed it. Raises
        IllegalOrderTransitionException when the order is no longer payable.
        """
        now = self._now()
        record_coupon = order.applied_coupon_id is not None
        applied = await uow.orders.transition(
            order.id,
            allowed_from=sources_for(OrderEvent.SUCCEED),
            to=OrderStatus.COMPLETED,
            paid_at=now,
            coupon_redemption_recorded=record_coupon,
        )
        if not applied:
            current = await self._require_order(uow, order.id)
            if current.status in (OrderStatus.COMPLETED, OrderStatus.REFUNDED):
                logger.info(
                    "payment_success_already_applied",
                    order_number=order.order_number,
                    source=source,
                )
                return False
            raise IllegalOrderTransitionException(
                current.status.value, OrderEvent.SUCCEED.value, order_number=order.order_number
            )

        tx = await self._close_transactions(
            uow,
            order.id,
            TransactionStatus.SUCCEEDED,
            now=now,
            target=transaction,
            provider_reference=provider_reference,
            snapshot=snapshot,
        )

        if record_coupon:
            try:
                await self._coupons.increment(uow, order.applied_coupon_id)
            except CouponExhaustedException:
                # Money is already captured; keep the order, drop the redemption
                await uow.orders.update_by_id(order.id, coupon_redemption_recorded=False)
                await self._audit(
                    uow, AuditEvent.COUPON_REDEMPTION_REJECTED, order, tx, actor, coupon_id=order.applied_coupon_id
                )
            else:
                await self._audit(uow, AuditEvent.COUPON_REDEEMED, order, tx, actor, coupon_id=order.applied_coupon_id)

        await self._audit(
            uow,
            AuditEvent.CAPTURED,
            order,
            tx,
            actor,
            source=source,
            provider_reference=provider_reference,
            amount=order.total_amount,
        )
        orders_total.labels(provider=order.payment_provider, status=OrderStatus.COMPLETED.value).inc()
        logger.info("order_completed", order_number=order.order_number, source=source)
        return True

    async def apply_payment_failed(
        self,
        uow: AbstractUnitOfWork,
        order: Order,
        *,
        transaction: Optional[Transaction] = None,
        snapshot: Optional[dict] = None,
        actor: Optional[int] = None,
        source: str,
    ) -> bool:
        """Cancel a payable order after the provider rejected the payment. The coupon is untouched."""
        now = self._now()
        applied = await uow.orders.transition(
            order.id,
            allowed_from=sources_for(OrderEvent.CANCEL),
            to=OrderStatus.CANCELLED,
            cancelled_at=now,
        )
        if not applied:
            current = await self._require_order(uow, order.id)
            logger.info(
                "payment_failure_ignored",
                order_number=order.order_number,
                status=current.status.value,
                source=source,
            )
            return False
        tx = await self._close_transactions(
            uow, order.id, TransactionStatus.FAILED, now=now, target=transaction, snapshot=snapshot
        )
        await self._audit(uow, AuditEvent.FAILED, order, tx, actor, source=source)
        orders_total.labels(provider=order.payment_provider, status=OrderStatus.CANCELLED.value).inc()
        logger.info("order_payment_failed", order_number=order.order_number, source=source)
        return True

    async def apply_requires_action(
        self,
        uow: AbstractUnitOfWork,
        order: Order,
        *,
        transaction: Optional[Transaction] = None,
        snapshot: Optional[dict] = None,
        actor: Optional[int] = None,
        source: str,
    ) -> bool:
        applied = await uow.orders.transition(
            order.id,
            allowed_from=sources_for(OrderEvent.REQUIRE_ACTION),
            to=OrderStatus.REQUIRES_ACTION,
        )
        if not applied:
            return False
        tx = await self._close_transactions(
            uow,
            order.id,
            TransactionStatus.REQUIRES_ACTION,
            now=self._now(),
            target=transaction,
            snapshot=snapshot,
            only_target=True,
        )
        await self._audit(uow, AuditEvent.REQUIRES_ACTION, order, tx, actor, source=source)
        return True

    async def apply_processing(
        self,
        uow: AbstractUnitOfWork,
        order: Order,
        *,
        actor: Optional[int] = None,
        source: str,
    ) -> bool:
        applied = await uow.orders.transition(
            order.id,
            allowed_from=sources_for(OrderEvent.START_PROCESSING),
            to=OrderStatus.PROCESSING,
        )
        if applied:
            await self._audit(uow, AuditEvent.PROCESSING, order, None, actor, source=source)
        return applied

    async def apply_refund_failed(
        self,
        uow: AbstractUnitOfWork,
        order: Order,
        refund: Refund,
        *,
        actor: Optional[int] = None,
        source: str,
    ) -> bool:
        """An in-flight refund was rejected by the provider: release its reserved amount."""
        if refund.status not in (RefundStatus.PENDING, RefundStatus.PROCESSING):
            return False
        refund.status = RefundStatus.FAILED
        refund.processed_at = self._now()
        refund.metadata = {**refund.metadata, "provider_status": "failed"}
        await uow.refunds.update(refund)
        tx = await uow.transactions.get_by_id(refund.transaction_id)
        await self._audit(uow, AuditEvent.REFUND_FAILED, order, tx, actor, refund_id=refund.id, source=source)
        refunds_total.labels(provider=order.payment_provider, status="failed").inc()
        logger.warning("order_refund_failed", order_number=order.order_number, refund_id=refund.id, source=source)
        return True

    async def settle_refunds(
        self,
        uow: AbstractUnitOfWork,
        order: Order,
        *,
        transaction: Optional[Transaction],
        refund: Optional[Refund],
        actor: Optional[int] = None,
        source: str,
    ) -> OrderStatus:
        """Apply partial/full refund bookkeeping. ``order`` must be locked by the caller."""
        refunded = await self._refunded_total(uow, order.id, settled_only=True)
        full = refunded >= order.total_amount
        status = order.status
        if full:
            applied = await uow.orders.transition(
                order.id,
                allowed_from=sources_for(OrderEvent.REFUND_FULL),
                to=OrderStatus.REFUNDED,
                coupon_redemption_recorded=False,
            )
            if applied:
                status = OrderStatus.REFUNDED
                if order.coupon_redemption_recorded and order.applied_coupon_id:
                    await self._coupons.decrement(uow, order.applied_coupon_id)
                    await self._audit(
                        uow, AuditEvent.COUPON_RELEASED, order, transaction, actor, coupon_id=order.applied_coupon_id
                    )
        else:
            status = next_status(order.status, OrderEvent.REFUND_PARTIAL, order_number=order.order_number)

        await self._audit(
            uow,
            AuditEvent.REFUND_COMPLETED,
            order,
            transaction,
            actor,
            refund_id=refund.id if refund else None,
            amount=refund.amount if refund else None,
            refunded_total=refunded,
            full=full,
            source=source,
        )
        refunds_total.labels(
            provider=order.payment_provider,
            status=refund.status.value if refund else RefundStatus.SUCCEEDED.value,
        ).inc()
        logger.info(
            "order_refund_settled",
            order_number=order.order_number,
            refunded_total=refunded,
            full=full,
            source=source,
        )
        return status

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _apply_intent(
        self,
        uow: AbstractUnitOfWork,
        order: Order,
        intent: ProviderIntent,
        *,
        transaction: Optional[Transaction],
        actor: Optional[int],
        source: str,
    ) -> None:
        if intent.status == IntentStatus.SUCCEEDED:
            await self.apply_payment_succeeded(
                uow,
                order,
                transaction=transaction,
                provider_reference=intent.provider_reference,
                snapshot=intent.raw,
                actor=actor,
                source=source,
            )
        elif intent.status in (IntentStatus.CANCELED, IntentStatus.FAILED):
            await self.apply_payment_failed(
                uow, order, transaction=transaction, snapshot=intent.raw, actor=actor, source=source
            )
        elif intent.status == IntentStatus.REQUIRES_ACTION:
            await self.apply_requires_action(
                uow, order, transaction=transaction, snapshot=intent.raw, actor=actor, source=source
            )
        elif intent.status == IntentStatus.PROCESSING:
            await self.apply_processing(uow, order, actor=actor, source=source)
        else:
            logger.info(
                "intent_status_no_transition",
                order_number=order.order_number,
                intent_status=intent.status.value,
                source=source,
            )

    async def _close_transactions(
        self,
        uow: AbstractUnitOfWork,
        order_id: int,
        status: TransactionStatus,
        *,
        now: datetime,
        target: Optional[Transaction] = None,
        provider_reference: Optional[str] = None,
        snapshot: Optional[dict] = None,
        only_target: bool = False,
    ) -> Optional[Transaction]:
        """Move open payment transactions to ``status``; the target also gets reference/snapshot."""
        transactions = [
            t for t in await uow.transactions.list_by_order(order_id)
            if t.type != TransactionType.REFUND and t.status in _OPEN_TRANSACTION_STATUSES
        ]
        target_id = target.id if target else (transactions[-1].id if transactions else None)
        result: Optional[Transaction] = None
        for t in transactions:
            is_target = t.id == target_id
            if only_target and not is_target:
                continue
            t.status = status
            if status in (TransactionStatus.SUCCEEDED, TransactionStatus.FAILED, TransactionStatus.CANCELLED):
                t.processed_at = now
            if is_target:
                if provider_reference:
                    t.provider_transaction_id = provider_reference
                if snapshot:
                    t.response_snapshot = snapshot
            updated = await uow.transactions.update(t)
            if is_target:
                result = updated
        return result

    async def _fail_capture_transaction(
        self,
        order: Order,
        tx: Transaction,
        actor: Optional[int],
        exc: PaymentGatewayException,
    ) -> None:
        logger.warning(
            "capture_gateway_failed",
            order_number=order.order_number,
            provider=order.payment_provider,
            error=exc.message,
        )
        async with self._uow_factory() as uow:
            tx.status = TransactionStatus.FAILED
            tx.processed_at = self._now()
            tx.response_snapshot = _error_snapshot(exc)
            await uow.transactions.update(tx)
            await self._audit(uow, AuditEvent.CAPTURE_FAILED, order, tx, actor, **_error_snapshot(exc))

    async def _refunded_total(self, uow: AbstractUnitOfWork, order_id: int, *, settled_only: bool = False) -> int:
        """In-flight refunds reserve balance; only settled ones move the order to refunded."""
        refunds = await uow.refunds.list_by_order(order_id)
        if settled_only:
            return sum(r.amount for r in refunds if r.status == RefundStatus.SUCCEEDED)
        return sum(r.amount for r in refunds if r.counts_against_balance)

    async def _generate_order_number(self, uow: AbstractUnitOfWork, now: datetime) -> str:
        prefix = self._settings.order_number_prefix
        for _ in range(_ORDER_NUMBER_ATTEMPTS):
            candidate = f"{prefix}-{now.year}-{100000 + secrets.randbelow(900000)}"
            if not await uow.orders.exists_order_number(candidate):
                return candidate
        raise BusinessException(
            code=BusinessCode.SYSTEM_ERROR,
            message="Could not allocate a unique order number",
            error_type="OrderNumberExhausted",
        )

    async def _require_order(self, uow: AbstractUnitOfWork, order_id: int, *, for_update: bool = False) -> Order:
        order = await uow.orders.get_by_id(order_id, for_update=for_update)
        if order is None:
            raise OrderNotFoundException(order_id=order_id)
        return order

    async def _audit(
        self,
        uow: AbstractUnitOfWork,
        event_type: str,
        order: Optional[Order],
        transaction: Optional[Transaction],
        actor: Optional[int],
        **payload: Any,
    ) -> None:
        await uow.audit_logs.append(
            AuditLog(
                event_type=event_type,
                order_id=order.id if order else None,
                transaction_id=transaction.id if transaction else None,
                performed_by=actor,
                payload={k: v for k, v in payload.items() if v is not None},
            )
        )

    async def _view(self, uow: AbstractUnitOfWork, order: Order) -> OrderView:
        transactions = await uow.transactions.list_by_order(order.id)
        refunds = await uow.refunds.list_by_order(order.id)
        return OrderView(
            id=order.id,
            order_number=order.order_number,
            status=order.status.value,
            currency=order.currency,
            subtotal_amount=order.subtotal_amount,
            discount_amount=order.discount_amount,
            tax_amount=order.tax_amount,
            total_amount=order.total_amount,
            payment_provider=order.payment_provider,
            provider_intent_id=order.provider_intent_id,
            client_secret=order.provider_client_secret,
            approval_url=order.provider_approval_url,
            expires_at=order.expires_at,
            paid_at=order.paid_at,
            items=[OrderItemView.model_validate(i) for i in order.items],
            transactions=[TransactionView.model_validate(t) for t in transactions],
            refunds=[RefundView.model_validate(r) for r in refunds],
        )
