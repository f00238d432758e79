"""
Base payment client implementing shared concerns: http, retry, logging, mapping.

Concrete providers subclass and implement provider-specific logic.
"""
from __future__ import annotations

import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from core.metrics import gateway_latency
from core.settings import PaymentSettings, payment_settings
from application.dtos.payments import (
    CreateIntent,
    IntentStatus,
    ProviderIntent,
    RefundRequest,
    RefundResult,
    WebhookEvent,
)
from application.ports.payment_gateway import PaymentGateway
from infrastructure.external.payments.exceptions import PaymentRecoverableError
from shared.codes.payment_codes import (
    PROVIDER_REFUND_STATUS_TO_INTERNAL,
    PROVIDER_STATUS_TO_INTERNAL,
)


logger = get_logger(__name__)

T = TypeVar("T")

ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW"}


def currency_exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def minor_to_decimal_str(amount: int, currency: str) -> str:
    """12345 USD -> "123.45"; 500 JPY -> "500"."""
    exponent = currency_exponent(currency)
    value = Decimal(amount) / (Decimal(10) ** exponent)
    return f"{value:.{exponent}f}"


def decimal_str_to_minor(value: str, currency: str) -> int:
    exponent = currency_exponent(currency)
    return int((Decimal(value) * (Decimal(10) ** exponent)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


class BasePaymentClient(PaymentGateway):
    provider: str = "base"

    def __init__(
        self,
        *,
        settings: Optional[PaymentSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings or payment_settings
        self._timeouts_cfg = self._settings.timeouts
        self._retry_cfg = self._settings.retry
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            self._timeouts_cfg.total,
            connect=self._timeouts_cfg.connect,
            read=self._timeouts_cfg.read,
            write=self._timeouts_cfg.write,
        )

    def http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` retrying only transient failures with bounded exponential backoff."""
        started = time.perf_counter()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(int(self._retry_cfg.max) + 1),
                wait=wait_exponential(
                    multiplier=self._retry_cfg.base_backoff, min=0.05, max=self._retry_cfg.max_backoff
                ),
                retry=retry_if_exception_type(PaymentRecoverableError),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        self._log("gateway_retry", operation=operation, attempt=attempt.retry_state.attempt_number)
                    return await fn()
        finally:
            gateway_latency.labels(provider=self.provider, operation=operation).observe(
                (time.perf_counter() - started) * 1000
            )
        raise AssertionError("unreachable")  # pragma: no cover

    async def create_intent(self, req: CreateIntent) -> ProviderIntent:  # type: ignore[override]
        raise NotImplementedError

    async def retrieve(self, intent_id: str) -> ProviderIntent:  # type: ignore[override]
        raise NotImplementedError

    async def capture(self, intent_id: str) -> ProviderIntent:  # type: ignore[override]
        raise NotImplementedError

    async def cancel(self, intent_id: str) -> ProviderIntent:  # type: ignore[override]
        raise NotImplementedError

    async def refund(self, req: RefundRequest) -> RefundResult:  # type: ignore[override]
        raise NotImplementedError

    async def verify_webhook_signature(  # type: ignore[override]
        self, raw_body: bytes, headers: Mapping[str, str]
    ) -> WebhookEvent:
        raise NotImplementedError

    # Helpers
    def _map_status(self, provider_status: Optional[str]) -> IntentStatus:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.provider, {})
        internal = mapping.get(provider_status or "")
        if internal is None:
            logger.warning("unknown_provider_status", provider=self.provider, status=provider_status)
            return IntentStatus.PROCESSING
        return IntentStatus(internal)

    def _map_refund_status(self, provider_status: Optional[str]) -> str:
        mapping = PROVIDER_REFUND_STATUS_TO_INTERNAL.get(self.provider, {})
        return mapping.get(provider_status or "", "processing")

    def _log(self, event: str, **kwargs: Any) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
