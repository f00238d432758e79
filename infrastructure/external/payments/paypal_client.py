"""
PayPal Orders v2 adapter (wallet flow) over the REST API with httpx.

Flow: create order -> buyer approves via the ``approve`` link -> capture
("execute"). Webhooks are verified by PayPal itself through
``/v1/notifications/verify-webhook-signature``.
"""
from __future__ import annotations

import json
import time
from typing import Any, Mapping, Optional

import httpx

from application.dtos.payments import (
    CreateIntent,
    IntentStatus,
    ProviderIntent,
    RefundRequest,
    RefundResult,
    WebhookEvent,
    WebhookEventKind,
)
from core.settings import PaymentSettings
from infrastructure.external.payments.base import (
    BasePaymentClient,
    decimal_str_to_minor,
    header,
    minor_to_decimal_str,
)
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentSignatureError,
)


_TRANSMISSION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

_PAYMENT_SUCCEEDED = {"PAYMENT.CAPTURE.COMPLETED"}
_PAYMENT_APPROVED = {"CHECKOUT.ORDER.APPROVED"}
_PAYMENT_FAILED = {"PAYMENT.CAPTURE.DENIED", "CHECKOUT.ORDER.VOIDED"}
_REFUNDED = {"PAYMENT.CAPTURE.REFUNDED"}


def _capture_from_order(order: dict[str, Any]) -> Optional[dict[str, Any]]:
    units = order.get("purchase_units") or []
    if not units:
        return None
    captures = ((units[0].get("payments") or {}).get("captures")) or []
    return captures[0] if captures else None


def _link(resource: dict[str, Any], rel: str) -> Optional[str]:
    for link in resource.get("links") or []:
        if link.get("rel") == rel:
            return link.get("href")
    return None


class PaypalClient(BasePaymentClient):
    provider = "paypal"

    def __init__(
        self,
        settings: Optional[PaymentSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(settings=settings, transport=transport)
        self._paypal_cfg = self._settings.paypal
        if not (self._paypal_cfg.client_id and self._paypal_cfg.client_secret):
            raise RuntimeError("PAYMENT__PAYPAL__CLIENT_ID / CLIENT_SECRET not configured")
        self._base_url = self._paypal_cfg.base_url
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        async def _fetch() -> dict[str, Any]:
            return await self._send(
                "POST",
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self._paypal_cfg.client_id, self._paypal_cfg.client_secret),
                authenticated=False,
            )

        body = await self._retry("oauth_token", _fetch)
        self._token = body["access_token"]
        # refresh a minute early
        self._token_expires_at = time.monotonic() + max(int(body.get("expires_in", 300)) - 60, 30)
        return self._token

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        authenticated: bool = True,
        **kwargs: Any,
    ) -> dict[str, Any]:
        request_headers = {"Accept": "application/json", **(headers or {})}
        if authenticated:
            request_headers["Authorization"] = f"Bearer {await self._access_token()}"
        try:
            resp = await self.http().request(
                method, f"{self._base_url}{path}", json=json_body, headers=request_headers, **kwargs
            )
        except httpx.TimeoutException as exc:
            raise PaymentRecoverableError(
                f"PayPal {method} {path} timed out", provider=self.provider, provider_code="timeout"
            ) from exc
        except httpx.TransportError as exc:
            raise PaymentRecoverableError(str(exc) or "transport error", provider=self.provider) from exc

        if resp.status_code == 401 and authenticated:
            self._token = None
        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = {"message": resp.text}
            message = payload.get("message") or payload.get("error_description") or f"HTTP {resp.status_code}"
            provider_code = payload.get("name") or payload.get("error")
            if resp.status_code >= 500 or resp.status_code == 429:
                raise PaymentRecoverableError(
                    message, provider=self.provider, provider_code=provider_code, http_status=resp.status_code
                )
            raise PaymentProviderError(
                message,
                provider=self.provider,
                provider_code=provider_code,
                http_status=resp.status_code,
                details={"debug_id": payload.get("debug_id")},
            )
        if not resp.content:
            return {}
        return resp.json()

    def _to_intent(self, order: dict[str, Any]) -> ProviderIntent:
        capture = _capture_from_order(order)
        status = order.get("status")
        capture_status = capture.get("status") if capture else None
        # The order completes even when its capture is declined or held for review
        if status == "COMPLETED" and capture_status in ("DECLINED", "FAILED"):
            internal = IntentStatus.FAILED
        elif status == "COMPLETED" and capture_status == "PENDING":
            internal = IntentStatus.PROCESSING
        else:
            internal = self._map_status(status)
        return ProviderIntent(
            provider=self.provider,
            intent_id=str(order["id"]),
            status=internal,
            approval_url=_link(order, "approve") or _link(order, "payer-action"),
            provider_reference=capture.get("id") if capture else None,
            payment_method_type="paypal",
            raw=order,
        )

    async def create_intent(self, req: CreateIntent) -> ProviderIntent:  # type: ignore[override]
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": req.order_number,
                    "invoice_id": req.order_number,
                    "custom_id": req.order_number,
                    "description": (req.description or f"Order {req.order_number}")[:127],
                    "amount": {
                        "currency_code": req.currency,
                        "value": minor_to_decimal_str(req.amount, req.currency),
                    },
                }
            ],
            "application_context": {
                "return_url": self._paypal_cfg.return_url,
                "cancel_url": self._paypal_cfg.cancel_url,
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
                **({"brand_name": self._paypal_cfg.brand_name} if self._paypal_cfg.brand_name else {}),
            },
        }
        headers = {"Prefer": "return=representation"}
        if req.idempotency_key:
            headers["PayPal-Request-Id"] = req.idempotency_key

        order = await self._retry(
            "create_intent",
            lambda: self._send("POST", "/v2/checkout/orders", json_body=body, headers=headers),
        )
        intent = self._to_intent(order)
        self._log("paypal_order_created", intent_id=intent.intent_id, status=intent.status.value)
        return intent

    async def retrieve(self, intent_id: str) -> ProviderIntent:  # type: ignore[override]
        order = await self._retry("retrieve", lambda: self._send("GET", f"/v2/checkout/orders/{intent_id}"))
        return self._to_intent(order)

    async def capture(self, intent_id: str) -> ProviderIntent:  # type: ignore[override]
        current = await self.retrieve(intent_id)
        if current.raw.get("status") != "APPROVED":
            # Nothing to execute yet (buyer has not approved) or already captured
            return current
        order = await self._retry(
            "capture",
            lambda: self._send(
                "POST",
                f"/v2/checkout/orders/{intent_id}/capture",
                json_body={},
                headers={"Prefer": "return=representation", "PayPal-Request-Id": f"capture-{intent_id}"},
            ),
        )
        intent = self._to_intent(order)
        self._log("paypal_order_captured", intent_id=intent_id, status=intent.status.value)
        return intent

    async def cancel(self, intent_id: str) -> ProviderIntent:  # type: ignore[override]
        # Orders v2 has no void for uncaptured CAPTURE-intent orders; they lapse on their own
        return await self.retrieve(intent_id)

    async def refund(self, req: RefundRequest) -> RefundResult:  # type: ignore[override]
        capture_id = req.provider_reference
        if not capture_id:
            order = await self.retrieve(req.intent_id)
            capture_id = order.provider_reference
        if not capture_id:
            raise PaymentProviderError(
                "No capture found for PayPal order", provider=self.provider, details={"intent_id": req.intent_id}
            )
        body: dict[str, Any] = {
            "amount": {"value": minor_to_decimal_str(req.amount, req.currency), "currency_code": req.currency},
        }
        if req.reason:
            body["note_to_payer"] = req.reason[:255]
        headers = {"Prefer": "return=representation"}
        if req.idempotency_key:
            headers["PayPal-Request-Id"] = req.idempotency_key
        refund = await self._retry(
            "refund",
            lambda: self._send("POST", f"/v2/payments/captures/{capture_id}/refund", json_body=body, headers=headers),
        )
        result = RefundResult(
            provider=self.provider,
            refund_id=str(refund["id"]),
            status=self._map_refund_status(refund.get("status")),
            raw=refund,
        )
        self._log("refund_created", intent_id=req.intent_id, refund_id=result.refund_id, status=result.status)
        return result

    async def verify_webhook_signature(  # type: ignore[override]
        self, raw_body: bytes, headers: Mapping[str, str]
    ) -> WebhookEvent:
        webhook_id = self._paypal_cfg.webhook_id
        if not webhook_id:
            raise PaymentSignatureError("Missing PAYMENT__PAYPAL__WEBHOOK_ID", provider=self.provider)
        transmission = {}
        for field, name in _TRANSMISSION_HEADERS.items():
            value = header(headers, name)
            if not value:
                raise PaymentSignatureError(f"Missing {name} header", provider=self.provider)
            transmission[field] = value
        try:
            event = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise PaymentSignatureError("Webhook body is not valid JSON", provider=self.provider) from exc

        verification = await self._retry(
            "verify_webhook",
            lambda: self._send(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                json_body={**transmission, "webhook_id": webhook_id, "webhook_event": event},
            ),
        )
        if verification.get("verification_status") != "SUCCESS":
            raise PaymentSignatureError(
                "PayPal rejected webhook signature",
                provider=self.provider,
                details={"verification_status": verification.get("verification_status")},
            )
        return self._parse_event(event)

    def _parse_event(self, event: dict[str, Any]) -> WebhookEvent:
        event_type = str(event.get("event_type") or "")
        resource = event.get("resource") or {}
        related = ((resource.get("supplementary_data") or {}).get("related_ids")) or {}
        parsed = WebhookEvent(
            id=str(event.get("id")),
            type=event_type,
            provider=self.provider,
            data=resource,
        )
        if event_type in _PAYMENT_APPROVED:
            parsed.kind = WebhookEventKind.PAYMENT_APPROVED
            parsed.intent_id = resource.get("id")
        elif event_type in _PAYMENT_SUCCEEDED:
            parsed.kind = WebhookEventKind.PAYMENT_SUCCEEDED
            parsed.intent_id = related.get("order_id")
            parsed.provider_reference = resource.get("id")
        elif event_type in _PAYMENT_FAILED:
            parsed.kind = WebhookEventKind.PAYMENT_FAILED
            parsed.intent_id = related.get("order_id") or (
                resource.get("id") if event_type.startswith("CHECKOUT.ORDER") else None
            )
            parsed.provider_reference = None if event_type.startswith("CHECKOUT.ORDER") else resource.get("id")
        elif event_type in _REFUNDED:
            parsed.kind = WebhookEventKind.REFUND_SUCCEEDED
            parsed.intent_id = related.get("order_id")
            up = _link(resource, "up") or ""
            # .../v2/payments/captures/<capture_id>
            parsed.provider_reference = up.rstrip("/").rsplit("/", 1)[-1] if "/captures/" in up else None
            parsed.refund_id = resource.get("id")
            amount = resource.get("amount") or {}
            if amount.get("value") and amount.get("currency_code"):
                parsed.refund_amount = decimal_str_to_minor(amount["value"], amount["currency_code"])
        return parsed
