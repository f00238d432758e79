"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Callable, Mapping, Protocol, runtime_checkable

from application.dtos.payments import (
    CreateIntent,
    ProviderIntent,
    RefundRequest,
    RefundResult,
    WebhookEvent,
)


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for third-party payment providers.

    All methods translate provider vocabularies into the internal one and
    raise ``PaymentGatewayException`` subclasses on failure.
    """

    provider: str

    async def create_intent(self, req: CreateIntent) -> ProviderIntent: ...

    async def retrieve(self, intent_id: str) -> ProviderIntent: ...

    async def capture(self, intent_id: str) -> ProviderIntent:
        """Confirm or capture depending on where the intent currently is."""
        ...

    async def cancel(self, intent_id: str) -> ProviderIntent: ...

    async def refund(self, req: RefundRequest) -> RefundResult: ...

    async def verify_webhook_signature(
        self, raw_body: bytes, headers: Mapping[str, str]
    ) -> WebhookEvent:
        """Verify against the exact raw bytes; raise PaymentSignatureException."""
        ...

    async def aclose(self) -> None: ...


GatewayFactory = Callable[[str], PaymentGateway]
