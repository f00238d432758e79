import httpx
import pytest

from api.dependencies import (
    get_payment_orchestrator,
    get_task_dispatcher,
    get_webhook_reconciler,
)
from application.dtos.payments import IntentStatus, WebhookEvent, WebhookEventKind
from main import app
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


ORDER = {
    "items": [{"name": "Widget", "unit_amount": 150, "quantity": 2}],
    "currency": "USD",
    "billing": {"email": "buyer@shop.io", "country": "us"},
}


class RecordingDispatcher:
    def __init__(self):
        self.scheduled = []

    def schedule_order_reconcile(self, order_number, *, countdown=60):
        self.scheduled.append((order_number, countdown))


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
async def api(orchestrator, reconciler, dispatcher):
    app.dependency_overrides[get_payment_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_webhook_reconciler] = lambda: reconciler
    app.dependency_overrides[get_task_dispatcher] = lambda: dispatcher
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        app.dependency_overrides.clear()


def test_payment_routes_registered():
    # included routers are not always flattened into app.routes
    paths = set(app.openapi()["paths"])
    assert "/api/v1/payments/orders" in paths
    assert "/api/v1/payments/orders/{order_number}" in paths
    assert "/api/v1/payments/orders/{order_number}/capture" in paths
    assert "/api/v1/payments/orders/{order_number}/reconcile" in paths
    assert "/api/v1/payments/refunds" in paths
    assert "/api/v1/payments/webhooks/{provider}" in paths


@pytest.mark.asyncio
async def test_create_capture_refund_over_http(api, uow_factory):
    created = await api.post("/api/v1/payments/orders", json=ORDER, headers={"X-Actor-Id": "42"})
    assert created.status_code == 201
    order = created.json()["data"]
    assert order["status"] == "awaiting_payment"
    assert order["total_amount"] == 300
    assert created.headers["X-Request-ID"]

    captured = await api.post(f"/api/v1/payments/orders/{order['order_number']}/capture")
    assert captured.status_code == 200
    assert captured.json()["data"]["status"] == "completed"

    tx_id = next(t["id"] for t in captured.json()["data"]["transactions"] if t["type"] == "capture")
    refund = await api.post("/api/v1/payments/refunds", json={"transaction_id": tx_id, "amount": 100})
    assert refund.status_code == 201
    assert refund.json()["data"]["status"] == "succeeded"

    over = await api.post("/api/v1/payments/refunds", json={"transaction_id": tx_id, "amount": 500})
    assert over.status_code == 422
    assert over.json()["code"] == BusinessCode.REFUND_EXCEEDS_CAPTURED
    assert over.json()["error"]["details"] == {"requested": 500, "refundable": 200}

    async with uow_factory(readonly=True) as uow:
        logs = await uow.audit_logs.list_by_order(order["id"])
    assert logs[0].performed_by == 42


@pytest.mark.asyncio
async def test_processing_capture_schedules_reconcile(api, gateway, dispatcher):
    created = (await api.post("/api/v1/payments/orders", json=ORDER)).json()["data"]
    gateway.capture_status = IntentStatus.PROCESSING

    resp = await api.post(f"/api/v1/payments/orders/{created['order_number']}/capture")

    assert resp.json()["data"]["status"] == "processing"
    assert dispatcher.scheduled == [(created["order_number"], 60)]

    # a processing order waits for the provider
    again = await api.post(f"/api/v1/payments/orders/{created['order_number']}/capture")
    assert again.status_code == 409
    assert again.json()["code"] == BusinessCode.ORDER_STATE_CONFLICT


@pytest.mark.asyncio
async def test_unknown_order_is_404(api):
    resp = await api.get("/api/v1/payments/orders/ORD-2026-000000")
    assert resp.status_code == 404
    assert resp.json()["code"] == BusinessCode.ORDER_NOT_FOUND


@pytest.mark.asyncio
async def test_invalid_order_payload_is_422(api):
    resp = await api.post("/api/v1/payments/orders", json={"items": [], "currency": "USD"})
    assert resp.status_code == 422
    assert resp.json()["code"] == BusinessCode.PARAM_VALIDATION_ERROR


@pytest.mark.asyncio
async def test_gateway_failure_is_502(api, gateway):
    gateway.fail_on.add("create_intent")
    resp = await api.post("/api/v1/payments/orders", json=ORDER)
    assert resp.status_code == 502
    assert resp.json()["code"] == PaymentCode.PROVIDER_ERROR


@pytest.mark.asyncio
async def test_webhook_with_bad_signature_is_400(api, gateway):
    gateway.signature_valid = False
    resp = await api.post(
        "/api/v1/payments/webhooks/stripe",
        content=b'{"id": "evt_1"}',
        headers={"Content-Type": "application/json", "Stripe-Signature": "t=1,v1=bad"},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == PaymentCode.SIGNATURE_ERROR


@pytest.mark.asyncio
async def test_webhook_requires_json(api, gateway):
    resp = await api.post(
        "/api/v1/payments/webhooks/stripe", content=b"a=b", headers={"Content-Type": "text/plain"}
    )
    assert resp.status_code == 415
    assert "verify_webhook_signature" not in gateway.calls


@pytest.mark.asyncio
async def test_webhook_delivery_and_redelivery(api, gateway):
    created = (await api.post("/api/v1/payments/orders", json=ORDER)).json()["data"]
    gateway.event = WebhookEvent(
        id="evt_1",
        type="payment_intent.succeeded",
        provider="stripe",
        kind=WebhookEventKind.PAYMENT_SUCCEEDED,
        intent_id=created["provider_intent_id"],
    )
    headers = {"Content-Type": "application/json", "Stripe-Signature": "t=1,v1=ok"}

    first = await api.post("/api/v1/payments/webhooks/stripe", content=b"{}", headers=headers)
    second = await api.post("/api/v1/payments/webhooks/stripe", content=b"{}", headers=headers)

    assert first.status_code == 200
    assert first.json()["data"]["order_status"] == "completed"
    assert second.status_code == 200
    assert second.json()["data"]["duplicate"] is True
    assert second.json()["message"] == "Duplicate event ignored"


@pytest.mark.asyncio
async def test_health(api):
    resp = await api.get("/health")
    assert resp.status_code == 200
    assert resp.json()["data"] == {"status": "healthy"}
