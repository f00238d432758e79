from datetime import timedelta

import pytest

from application.dtos.payments import (
    CreateOrder,
    IntentStatus,
    OrderItemInput,
    RefundOrder,
    WebhookEvent,
    WebhookEventKind,
)
from domain.common.exceptions import PaymentSignatureException
from domain.order.entity import utcnow


HEADERS = {"stripe-signature": "t=1,v1=deadbeef"}


def _event(event_id, kind, intent_id="pi_1", **kwargs) -> WebhookEvent:
    return WebhookEvent(
        id=event_id,
        type=kwargs.pop("type", kind.value),
        provider="stripe",
        kind=kind,
        intent_id=intent_id,
        **kwargs,
    )


async def _create(orchestrator, coupon=None, provider=None):
    return await orchestrator.create_order(
        CreateOrder(
            items=[OrderItemInput(name="Plan", unit_amount=300, quantity=1)],
            currency="USD",
            coupon_codes=[coupon] if coupon else [],
            provider=provider,
        )
    )


async def _coupon_count(uow_factory, coupon_id):
    async with uow_factory(readonly=True) as uow:
        return (await uow.coupons.get_by_id(coupon_id)).redemption_count


@pytest.mark.asyncio
async def test_success_event_completes_order_once(reconciler, orchestrator, gateway, uow_factory, seed_coupon):
    coupon = await seed_coupon("SAVE25")
    created = await _create(orchestrator, "SAVE25")
    gateway.event = _event("evt_1", WebhookEventKind.PAYMENT_SUCCEEDED, provider_reference="ch_1")

    first = await reconciler.handle("stripe", b"{}", HEADERS)
    second = await reconciler.handle("stripe", b"{}", HEADERS)

    assert first.handled is True
    assert first.order_number == created.order_number
    assert first.order_status == "completed"
    assert second.duplicate is True
    assert await _coupon_count(uow_factory, coupon.id) == 1


@pytest.mark.asyncio
async def test_distinct_success_events_apply_side_effects_once(reconciler, orchestrator, gateway, uow_factory, seed_coupon):
    coupon = await seed_coupon("SAVE25")
    await _create(orchestrator, "SAVE25")

    gateway.event = _event("evt_1", WebhookEventKind.PAYMENT_SUCCEEDED, type="payment_intent.succeeded")
    await reconciler.handle("stripe", b"{}", HEADERS)
    gateway.event = _event("evt_2", WebhookEventKind.PAYMENT_SUCCEEDED, type="charge.succeeded")
    outcome = await reconciler.handle("stripe", b"{}", HEADERS)

    assert outcome.duplicate is False
    assert outcome.handled is False
    assert outcome.order_status == "completed"
    assert await _coupon_count(uow_factory, coupon.id) == 1


@pytest.mark.asyncio
async def test_bad_signature_changes_nothing(reconciler, orchestrator, gateway, uow_factory):
    created = await _create(orchestrator)
    gateway.event = _event("evt_1", WebhookEventKind.PAYMENT_SUCCEEDED)
    gateway.signature_valid = False

    with pytest.raises(PaymentSignatureException):
        await reconciler.handle("stripe", b"{}", HEADERS)

    view = await orchestrator.get_order(created.order_number)
    assert view.status == "awaiting_payment"
    async with uow_factory(readonly=True) as uow:
        assert await uow.webhook_events.exists("stripe", "evt_1") is False


@pytest.mark.asyncio
async def test_capture_after_webhook_is_noop(reconciler, orchestrator, gateway):
    created = await _create(orchestrator)
    gateway.event = _event("evt_1", WebhookEventKind.PAYMENT_SUCCEEDED, provider_reference="ch_1")
    await reconciler.handle("stripe", b"{}", HEADERS)

    view = await orchestrator.capture_order(created.order_number)

    assert view.status == "completed"
    assert "capture" not in gateway.calls


@pytest.mark.asyncio
async def test_failure_event_cancels_order(reconciler, orchestrator, gateway, uow_factory, seed_coupon):
    coupon = await seed_coupon("SAVE25")
    created = await _create(orchestrator, "SAVE25")
    gateway.event = _event("evt_fail", WebhookEventKind.PAYMENT_FAILED)

    outcome = await reconciler.handle("stripe", b"{}", HEADERS)

    assert outcome.handled is True
    view = await orchestrator.get_order(created.order_number)
    assert view.status == "cancelled"
    assert view.transactions[0].status == "failed"
    assert await _coupon_count(uow_factory, coupon.id) == 0


@pytest.mark.asyncio
async def test_requires_action_event(reconciler, orchestrator, gateway):
    created = await _create(orchestrator)
    gateway.event = _event("evt_3ds", WebhookEventKind.PAYMENT_REQUIRES_ACTION)

    outcome = await reconciler.handle("stripe", b"{}", HEADERS)

    assert outcome.order_status == "requires_action"
    view = await orchestrator.get_order(created.order_number)
    assert view.transactions[0].status == "requires_action"


@pytest.mark.asyncio
async def test_unknown_intent_is_acknowledged(reconciler, orchestrator, gateway, uow_factory):
    await _create(orchestrator)
    gateway.event = _event("evt_x", WebhookEventKind.PAYMENT_SUCCEEDED, intent_id="pi_unknown")

    outcome = await reconciler.handle("stripe", b"{}", HEADERS)

    assert outcome.handled is False
    assert outcome.duplicate is False
    assert outcome.order_number is None
    async with uow_factory(readonly=True) as uow:
        assert await uow.webhook_events.exists("stripe", "evt_x") is True


@pytest.mark.asyncio
async def test_success_after_expiry_is_rejected(reconciler, orchestrator, gateway):
    created = await _create(orchestrator)
    await orchestrator.expire_stale_orders(now=utcnow() + timedelta(hours=2))
    gateway.event = _event("evt_late", WebhookEventKind.PAYMENT_SUCCEEDED)

    outcome = await reconciler.handle("stripe", b"{}", HEADERS)

    assert outcome.handled is False
    assert outcome.order_status == "cancelled"
    view = await orchestrator.get_order(created.order_number)
    assert view.status == "cancelled"


@pytest.mark.asyncio
async def test_refund_event_confirms_pending_refund(reconciler, orchestrator, gateway):
    created = await _create(orchestrator)
    captured = await orchestrator.capture_order(created.order_number)
    tx_id = next(t.id for t in captured.transactions if t.type == "capture")
    gateway.refund_status = "processing"
    refund = await orchestrator.refund(RefundOrder(transaction_id=tx_id, amount=100))
    assert refund.status == "processing"

    gateway.event = _event("evt_refund", WebhookEventKind.REFUND_SUCCEEDED, refund_id=refund.provider_refund_id)
    outcome = await reconciler.handle("stripe", b"{}", HEADERS)

    assert outcome.handled is True
    view = await orchestrator.get_order(created.order_number)
    assert view.status == "completed"
    assert [r.status for r in view.refunds] == ["succeeded"]


@pytest.mark.asyncio
async def test_provider_initiated_full_refund(reconciler, orchestrator, gateway, uow_factory, seed_coupon):
    coupon = await seed_coupon("SAVE25")
    created = await _create(orchestrator, "SAVE25")
    await orchestrator.capture_order(created.order_number)
    gateway.event = _event(
        "evt_dash",
        WebhookEventKind.REFUND_SUCCEEDED,
        provider_reference="ch_1",
        refund_id="re_dashboard",
        refunded_total=created.total_amount,
    )

    outcome = await reconciler.handle("stripe", b"{}", HEADERS)

    assert outcome.order_status == "refunded"
    view = await orchestrator.get_order(created.order_number)
    assert [(r.amount, r.reason) for r in view.refunds] == [(created.total_amount, "provider_initiated")]
    assert await _coupon_count(uow_factory, coupon.id) == 0


@pytest.mark.asyncio
async def test_approval_event_captures_and_records(reconciler, orchestrator, gateway):
    created = await _create(orchestrator, provider="paypal")
    gateway.capture_status = IntentStatus.SUCCEEDED
    gateway.event = _event("evt_approved", WebhookEventKind.PAYMENT_APPROVED, type="CHECKOUT.ORDER.APPROVED")

    outcome = await reconciler.handle("paypal", b"{}", HEADERS)
    again = await reconciler.handle("paypal", b"{}", HEADERS)

    assert outcome.handled is True
    assert outcome.order_status == "completed"
    assert again.duplicate is True
    assert gateway.calls.count("capture") == 1
    view = await orchestrator.get_order(created.order_number)
    assert view.status == "completed"


async def _captured_tx(orchestrator, created):
    captured = await orchestrator.capture_order(created.order_number)
    return next(t.id for t in captured.transactions if t.type == "capture")


@pytest.mark.asyncio
async def test_confirmed_full_refund_completes_refund(reconciler, orchestrator, gateway, uow_factory, seed_coupon):
    coupon = await seed_coupon("SAVE25")
    created = await _create(orchestrator, "SAVE25")
    tx_id = await _captured_tx(orchestrator, created)
    gateway.refund_status = "pending"
    refund = await orchestrator.refund(RefundOrder(transaction_id=tx_id))
    assert (await orchestrator.get_order(created.order_number)).status == "completed"

    gateway.event = _event("evt_refund_ok", WebhookEventKind.REFUND_SUCCEEDED, refund_id=refund.provider_refund_id)
    outcome = await reconciler.handle("stripe", b"{}", HEADERS)

    assert outcome.handled is True
    assert outcome.order_status == "refunded"
    assert await _coupon_count(uow_factory, coupon.id) == 0


@pytest.mark.asyncio
async def test_failed_refund_event_releases_reserved_amount(reconciler, orchestrator, gateway, uow_factory, seed_coupon):
    coupon = await seed_coupon("SAVE25")
    created = await _create(orchestrator, "SAVE25")
    tx_id = await _captured_tx(orchestrator, created)
    gateway.refund_status = "pending"
    refund = await orchestrator.refund(RefundOrder(transaction_id=tx_id))

    gateway.event = _event("evt_refund_failed", WebhookEventKind.REFUND_FAILED, refund_id=refund.provider_refund_id)
    outcome = await reconciler.handle("stripe", b"{}", HEADERS)

    assert outcome.handled is True
    assert outcome.order_status == "completed"
    assert await _coupon_count(uow_factory, coupon.id) == 1
    view = await orchestrator.get_order(created.order_number)
    assert [r.status for r in view.refunds] == ["failed"]

    gateway.refund_status = "succeeded"
    retry = await orchestrator.refund(RefundOrder(transaction_id=tx_id))
    assert retry.amount == created.total_amount
    assert (await orchestrator.get_order(created.order_number)).status == "refunded"


@pytest.mark.asyncio
async def test_refund_event_for_settled_refund_is_not_reapplied(reconciler, orchestrator, gateway, uow_factory):
    created = await _create(orchestrator)
    tx_id = await _captured_tx(orchestrator, created)
    refund = await orchestrator.refund(RefundOrder(transaction_id=tx_id, amount=100))
    assert refund.status == "succeeded"

    gateway.event = _event(
        "evt_charge_refunded",
        WebhookEventKind.REFUND_SUCCEEDED,
        refund_id=refund.provider_refund_id,
        refund_amount=100,
        refunded_total=100,
    )
    outcome = await reconciler.handle("stripe", b"{}", HEADERS)

    assert outcome.handled is False
    assert outcome.order_status == "completed"
    async with uow_factory(readonly=True) as uow:
        events = [entry.event_type for entry in await uow.audit_logs.list_by_order(created.id)]
    assert events.count("payment.refund.completed") == 1
