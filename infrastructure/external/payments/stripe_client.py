"""
Stripe PaymentIntents adapter (card-network flow) using the official stripe-python SDK.

Notes on SDK usage:
- The SDK is synchronous; calls run in a worker thread via ``anyio.to_thread``
  bounded by the configured total timeout.
- Idempotency keys are supplied via the ``idempotency_key`` request option.
- Webhook signatures are checked with ``stripe.WebhookSignature.verify_header``
  against the exact raw body and the ``Stripe-Signature`` header.
"""
from __future__ import annotations

import functools
import json
from typing import Any, Callable, Mapping, Optional

import anyio
import stripe

from application.dtos.payments import (
    CreateIntent,
    ProviderIntent,
    RefundRequest,
    RefundResult,
    WebhookEvent,
    WebhookEventKind,
)
from core.logging_config import get_logger
from core.settings import PaymentSettings
from infrastructure.external.payments.base import BasePaymentClient, header
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentSignatureError,
)


logger = get_logger(__name__)

_PAYMENT_SUCCEEDED = {"payment_intent.succeeded"}
_PAYMENT_FAILED = {"payment_intent.payment_failed", "payment_intent.canceled"}
_PAYMENT_REQUIRES_ACTION = {"payment_intent.requires_action"}
_REFUNDED = {"charge.refunded"}
_REFUND_UPDATED = {"charge.refund.updated"}


def _as_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return json.loads(json.dumps(obj, default=str))
    return json.loads(str(obj))


class StripeClient(BasePaymentClient):
    provider = "stripe"

    def __init__(self, settings: Optional[PaymentSettings] = None):
        super().__init__(settings=settings)
        self._stripe_cfg = self._settings.stripe
        if not self._stripe_cfg.secret_key:
            raise RuntimeError("PAYMENT__STRIPE__SECRET_KEY not configured")
        self._api_key = self._stripe_cfg.secret_key

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        call = functools.partial(fn, *args, api_key=self._api_key, **kwargs)

        async def _once() -> Any:
            try:
                with anyio.fail_after(self._timeouts_cfg.total):
                    return await anyio.to_thread.run_sync(call, abandon_on_cancel=True)
            except TimeoutError as exc:
                raise PaymentRecoverableError(
                    f"Stripe {operation} timed out", provider=self.provider, provider_code="timeout"
                ) from exc
            except stripe.StripeError as exc:
                raise self._translate(exc) from exc

        return await self._retry(operation, _once)

    def _translate(self, exc: "stripe.StripeError") -> Exception:
        status = getattr(exc, "http_status", None)
        code = getattr(exc, "code", None)
        message = getattr(exc, "user_message", None) or str(exc) or exc.__class__.__name__
        transient = isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)) or (
            status is not None and status >= 500
        )
        if transient:
            return PaymentRecoverableError(message, provider=self.provider, provider_code=code, http_status=status)
        return PaymentProviderError(message, provider=self.provider, provider_code=code, http_status=status)

    def _to_intent(self, pi: Any) -> ProviderIntent:
        return ProviderIntent(
            provider=self.provider,
            intent_id=str(pi["id"]),
            status=self._map_status(pi.get("status")),
            client_secret=pi.get("client_secret"),
            provider_reference=pi.get("latest_charge") if isinstance(pi.get("latest_charge"), str) else None,
            payment_method_type=(pi.get("payment_method_types") or [None])[0],
            raw=_as_dict(pi),
        )

    async def create_intent(self, req: CreateIntent) -> ProviderIntent:  # type: ignore[override]
        metadata = {str(k): str(v) for k, v in (req.metadata or {}).items()}
        metadata.setdefault("order_number", req.order_number)
        params: dict[str, Any] = dict(
            amount=req.amount,
            currency=req.currency.lower(),
            metadata=metadata,
            description=req.description or f"Order {req.order_number}",
            capture_method=self._stripe_cfg.capture_method,
            automatic_payment_methods={"enabled": True},
            idempotency_key=req.idempotency_key,
        )
        if req.customer_email:
            params["receipt_email"] = req.customer_email
        if self._stripe_cfg.statement_descriptor:
            params["statement_descriptor_suffix"] = self._stripe_cfg.statement_descriptor
        pi = await self._call("create_intent", stripe.PaymentIntent.create, **params)
        intent = self._to_intent(pi)
        self._log("payment_intent_created", intent_id=intent.intent_id, status=intent.status.value)
        return intent

    async def retrieve(self, intent_id: str) -> ProviderIntent:  # type: ignore[override]
        pi = await self._call("retrieve", stripe.PaymentIntent.retrieve, intent_id)
        return self._to_intent(pi)

    async def capture(self, intent_id: str) -> ProviderIntent:  # type: ignore[override]
        pi = await self._call("retrieve", stripe.PaymentIntent.retrieve, intent_id)
        status = pi.get("status")
        if status in ("requires_confirmation", "requires_action"):
            pi = await self._call("confirm", stripe.PaymentIntent.confirm, intent_id)
            # Manual-capture intents land in requires_capture once confirmed
            if pi.get("status") == "requires_capture":
                pi = await self._call("capture", stripe.PaymentIntent.capture, intent_id)
        elif status == "requires_capture":
            pi = await self._call("capture", stripe.PaymentIntent.capture, intent_id)
        intent = self._to_intent(pi)
        self._log("payment_intent_captured", intent_id=intent_id, status=intent.status.value)
        return intent

    async def cancel(self, intent_id: str) -> ProviderIntent:  # type: ignore[override]
        pi = await self._call("cancel", stripe.PaymentIntent.cancel, intent_id)
        return self._to_intent(pi)

    async def refund(self, req: RefundRequest) -> RefundResult:  # type: ignore[override]
        metadata = {"reason": req.reason} if req.reason else {}
        refund = await self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=req.intent_id,
            amount=req.amount,
            metadata=metadata,
            idempotency_key=req.idempotency_key,
        )
        result = RefundResult(
            provider=self.provider,
            refund_id=str(refund["id"]),
            status=self._map_refund_status(refund.get("status")),
            raw=_as_dict(refund),
        )
        self._log("refund_created", intent_id=req.intent_id, refund_id=result.refund_id, status=result.status)
        return result

    async def verify_webhook_signature(  # type: ignore[override]
        self, raw_body: bytes, headers: Mapping[str, str]
    ) -> WebhookEvent:
        secret = self._stripe_cfg.webhook_secret
        if not secret:
            raise PaymentSignatureError("Missing PAYMENT__STRIPE__WEBHOOK_SECRET", provider=self.provider)
        sig = header(headers, "Stripe-Signature")
        if not sig:
            raise PaymentSignatureError("Missing Stripe-Signature header", provider=self.provider)
        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, sig, secret, self._settings.webhook.tolerance_seconds
            )
            event = json.loads(payload)
        except (stripe.SignatureVerificationError, UnicodeDecodeError, ValueError) as exc:
            raise PaymentSignatureError(str(exc) or "Invalid signature", provider=self.provider) from exc
        return self._parse_event(event)

    def _parse_event(self, event: dict[str, Any]) -> WebhookEvent:
        event_type = str(event.get("type") or "")
        obj = (event.get("data") or {}).get("object") or {}
        parsed = WebhookEvent(
            id=str(event.get("id")),
            type=event_type,
            provider=self.provider,
            data=obj,
        )
        if event_type in _PAYMENT_SUCCEEDED:
            parsed.kind = WebhookEventKind.PAYMENT_SUCCEEDED
            parsed.intent_id = obj.get("id")
            parsed.provider_reference = obj.get("latest_charge")
        elif event_type in _PAYMENT_FAILED:
            parsed.kind = WebhookEventKind.PAYMENT_FAILED
            parsed.intent_id = obj.get("id")
        elif event_type in _PAYMENT_REQUIRES_ACTION:
            parsed.kind = WebhookEventKind.PAYMENT_REQUIRES_ACTION
            parsed.intent_id = obj.get("id")
        elif event_type in _REFUNDED:
            parsed.kind = WebhookEventKind.REFUND_SUCCEEDED
            parsed.intent_id = obj.get("payment_intent")
            parsed.provider_reference = obj.get("id")
            parsed.refunded_total = obj.get("amount_refunded")
            refunds = (obj.get("refunds") or {}).get("data") or []
            if refunds:
                parsed.refund_id = refunds[0].get("id")
                parsed.refund_amount = refunds[0].get("amount")
        elif event_type in _REFUND_UPDATED:
            # data.object is the Refund itself
            refund_status = obj.get("status")
            if refund_status in ("failed", "canceled"):
                parsed.kind = WebhookEventKind.REFUND_FAILED
            elif refund_status == "succeeded":
                parsed.kind = WebhookEventKind.REFUND_SUCCEEDED
            parsed.intent_id = obj.get("payment_intent")
            parsed.provider_reference = obj.get("charge")
            parsed.refund_id = obj.get("id")
            parsed.refund_amount = obj.get("amount")
        return parsed
