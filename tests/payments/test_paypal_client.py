import json

import httpx
import pytest

from application.dtos.payments import CreateIntent, IntentStatus, WebhookEventKind
from infrastructure.external.payments.exceptions import PaymentProviderError, PaymentSignatureError
from infrastructure.external.payments.paypal_client import PaypalClient


WEBHOOK_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-1",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-TRANSMISSION-TIME": "2026-01-01T00:00:00Z",
}


class PaypalStub:
    """Routes MockTransport requests to canned PayPal responses."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.order_status = "APPROVED"
        self.capture_status = "COMPLETED"
        self.verification_status = "SUCCESS"
        self.failures: list[int] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        if self.failures:
            return httpx.Response(self.failures.pop(0), json={"name": "UNPROCESSABLE_ENTITY", "message": "nope"})
        if path == "/v2/checkout/orders":
            return httpx.Response(
                201,
                json={
                    "id": "5O190127TN364715T",
                    "status": "CREATED",
                    "links": [{"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=5O1"}],
                },
            )
        if path.endswith("/capture"):
            return httpx.Response(
                201,
                json={
                    "id": "5O190127TN364715T",
                    "status": "COMPLETED",
                    "purchase_units": [
                        {"payments": {"captures": [{"id": "CAP-1", "status": self.capture_status}]}}
                    ],
                },
            )
        if path.startswith("/v2/checkout/orders/"):
            return httpx.Response(200, json={"id": path.rsplit("/", 1)[-1], "status": self.order_status})
        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": self.verification_status})
        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})


@pytest.fixture
def stub():
    return PaypalStub()


@pytest.fixture
async def client(stub):
    c = PaypalClient(transport=httpx.MockTransport(stub))
    try:
        yield c
    finally:
        await c.aclose()


@pytest.mark.asyncio
async def test_create_order_sends_decimal_amount_and_request_id(client, stub):
    intent = await client.create_intent(
        CreateIntent(order_number="ORD-2026-123456", amount=244, currency="USD", idempotency_key="k" * 64)
    )

    assert intent.intent_id == "5O190127TN364715T"
    assert intent.status == IntentStatus.REQUIRES_PAYMENT
    assert intent.approval_url.startswith("https://www.sandbox.paypal.com/")

    token_request, create_request = stub.requests
    assert token_request.headers["Authorization"].startswith("Basic ")
    assert create_request.headers["Authorization"] == "Bearer tok"
    assert create_request.headers["PayPal-Request-Id"] == "k" * 64
    body = json.loads(create_request.content)
    assert body["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "2.44"}


@pytest.mark.asyncio
async def test_access_token_is_cached(client, stub):
    await client.retrieve("A")
    await client.retrieve("B")
    assert [r.url.path for r in stub.requests].count("/v1/oauth2/token") == 1


@pytest.mark.asyncio
async def test_capture_approved_order(client, stub):
    intent = await client.capture("5O190127TN364715T")
    assert intent.status == IntentStatus.SUCCEEDED
    assert intent.provider_reference == "CAP-1"


@pytest.mark.asyncio
async def test_declined_capture_maps_to_failed(client, stub):
    stub.capture_status = "DECLINED"
    intent = await client.capture("5O190127TN364715T")
    assert intent.status == IntentStatus.FAILED


@pytest.mark.asyncio
async def test_capture_before_approval_does_not_execute(client, stub):
    stub.order_status = "CREATED"
    intent = await client.capture("5O190127TN364715T")
    assert intent.status == IntentStatus.REQUIRES_PAYMENT
    assert not any(r.url.path.endswith("/capture") for r in stub.requests)


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(client, stub):
    stub.failures = [422]
    with pytest.raises(PaymentProviderError) as exc:
        await client.retrieve("A")
    assert exc.value.http_status == 422
    assert [r.url.path for r in stub.requests].count("/v2/checkout/orders/A") == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried(client, stub):
    stub.failures = [503]
    intent = await client.retrieve("A")
    assert intent.status == IntentStatus.AUTHORIZED
    assert [r.url.path for r in stub.requests].count("/v2/checkout/orders/A") == 2


@pytest.mark.asyncio
async def test_webhook_verified_by_paypal(client, stub):
    event = {
        "id": "WH-EVT-1",
        "event_type": "CHECKOUT.ORDER.APPROVED",
        "resource": {"id": "5O190127TN364715T", "status": "APPROVED"},
    }

    parsed = await client.verify_webhook_signature(json.dumps(event).encode(), WEBHOOK_HEADERS)

    assert parsed.kind == WebhookEventKind.PAYMENT_APPROVED
    assert parsed.intent_id == "5O190127TN364715T"
    verify = json.loads(stub.requests[-1].content)
    assert verify["webhook_id"] == "WH-TEST"
    assert verify["transmission_id"] == "tx-1"
    assert verify["webhook_event"]["id"] == "WH-EVT-1"


@pytest.mark.asyncio
async def test_webhook_rejected_by_paypal(client, stub):
    stub.verification_status = "FAILURE"
    with pytest.raises(PaymentSignatureError):
        await client.verify_webhook_signature(b'{"id": "WH-EVT-1"}', WEBHOOK_HEADERS)


@pytest.mark.asyncio
async def test_webhook_missing_transmission_headers(client, stub):
    with pytest.raises(PaymentSignatureError):
        await client.verify_webhook_signature(b"{}", {"PAYPAL-AUTH-ALGO": "SHA256withRSA"})
    assert stub.requests == []


def test_parse_capture_refunded():
    parsed = PaypalClient()._parse_event(
        {
            "id": "WH-EVT-2",
            "event_type": "PAYMENT.CAPTURE.REFUNDED",
            "resource": {
                "id": "REF-1",
                "amount": {"value": "1.00", "currency_code": "USD"},
                "supplementary_data": {"related_ids": {"order_id": "5O190127TN364715T"}},
                "links": [
                    {"rel": "self", "href": "https://api.sandbox.paypal.com/v2/payments/refunds/REF-1"},
                    {"rel": "up", "href": "https://api.sandbox.paypal.com/v2/payments/captures/CAP-1"},
                ],
            },
        }
    )
    assert parsed.kind == WebhookEventKind.REFUND_SUCCEEDED
    assert parsed.intent_id == "5O190127TN364715T"
    assert parsed.provider_reference == "CAP-1"
    assert (parsed.refund_id, parsed.refund_amount) == ("REF-1", 100)
