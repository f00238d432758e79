"""Pytest bootstrap configuration.

Environment variables are set before any application module is imported,
since settings are read at import time.
"""
import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENT__STRIPE__SECRET_KEY", "sk_test_123")
os.environ.setdefault("PAYMENT__STRIPE__WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("PAYMENT__PAYPAL__CLIENT_ID", "paypal-client")
os.environ.setdefault("PAYMENT__PAYPAL__CLIENT_SECRET", "paypal-secret")
os.environ.setdefault("PAYMENT__PAYPAL__WEBHOOK_ID", "WH-TEST")

from datetime import datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402

from application.dtos.payments import (  # noqa: E402
    CreateIntent,
    IntentStatus,
    ProviderIntent,
    RefundRequest,
    RefundResult,
    WebhookEvent,
)
from application.services.payment_orchestrator import PaymentOrchestrator  # noqa: E402
from application.services.webhook_reconciler import WebhookReconciler  # noqa: E402
from domain.commerce.entity import Coupon, DiscountType, TaxRate  # noqa: E402
from infrastructure.database import build_engine, build_session_factory, create_tables  # noqa: E402
from infrastructure.external.payments.exceptions import (  # noqa: E402
    PaymentProviderError,
    PaymentSignatureError,
)
from infrastructure.unit_of_work import sqlalchemy_uow_factory  # noqa: E402


class FakeGateway:
    """In-memory PaymentGateway double; records every call."""

    provider = "stripe"

    def __init__(self):
        self.calls: list[str] = []
        self.create_status = IntentStatus.REQUIRES_PAYMENT
        self.capture_status = IntentStatus.SUCCEEDED
        self.retrieve_status = IntentStatus.SUCCEEDED
        self.cancel_status = IntentStatus.CANCELED
        self.refund_status = "succeeded"
        self.fail_on: set[str] = set()
        self.event: Optional[WebhookEvent] = None
        self.signature_valid = True
        self._intents = 0
        self._refunds = 0
        self.closed = 0

    def _maybe_fail(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail_on:
            raise PaymentProviderError(
                f"{operation} declined", provider=self.provider, provider_code="card_declined", http_status=402
            )

    def _intent(self, intent_id: str, status: IntentStatus) -> ProviderIntent:
        return ProviderIntent(
            provider=self.provider,
            intent_id=intent_id,
            status=status,
            client_secret=f"{intent_id}_secret",
            provider_reference="ch_1" if status == IntentStatus.SUCCEEDED else None,
            raw={"id": intent_id, "status": status.value},
        )

    async def create_intent(self, req: CreateIntent) -> ProviderIntent:
        self._maybe_fail("create_intent")
        self.last_create = req
        self._intents += 1
        return self._intent(f"pi_{self._intents}", self.create_status)

    async def retrieve(self, intent_id: str) -> ProviderIntent:
        self._maybe_fail("retrieve")
        return self._intent(intent_id, self.retrieve_status)

    async def capture(self, intent_id: str) -> ProviderIntent:
        self._maybe_fail("capture")
        return self._intent(intent_id, self.capture_status)

    async def cancel(self, intent_id: str) -> ProviderIntent:
        self._maybe_fail("cancel")
        return self._intent(intent_id, self.cancel_status)

    async def refund(self, req: RefundRequest) -> RefundResult:
        self._maybe_fail("refund")
        self.last_refund = req
        self._refunds += 1
        return RefundResult(provider=self.provider, refund_id=f"re_{self._refunds}", status=self.refund_status)

    async def verify_webhook_signature(self, raw_body: bytes, headers) -> WebhookEvent:
        self.calls.append("verify_webhook_signature")
        if not self.signature_valid:
            raise PaymentSignatureError("signature mismatch", provider=self.provider)
        return self.event

    async def aclose(self) -> None:
        self.closed += 1


@pytest.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await create_tables(engine)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def uow_factory(session_factory):
    return sqlalchemy_uow_factory(session_factory)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def orchestrator(uow_factory, gateway):
    return PaymentOrchestrator(uow_factory=uow_factory, gateway_factory=lambda provider: gateway)


@pytest.fixture
def reconciler(uow_factory, gateway, orchestrator):
    return WebhookReconciler(uow_factory=uow_factory, gateway_factory=lambda provider: gateway, orchestrator=orchestrator)


@pytest.fixture
def seed_coupon(uow_factory):
    async def _seed(code="SAVE25", *, discount_type=DiscountType.PERCENTAGE, value="25", **kwargs) -> Coupon:
        async with uow_factory() as uow:
            return await uow.coupons.create(
                Coupon(code=code, discount_type=discount_type, discount_value=Decimal(value), **kwargs)
            )

    return _seed


@pytest.fixture
def seed_tax_rate(uow_factory):
    async def _seed(country="US", rate="8.5", *, region=None, **kwargs) -> TaxRate:
        kwargs.setdefault("effective_from", datetime.now(timezone.utc) - timedelta(days=30))
        async with uow_factory() as uow:
            return await uow.tax_rates.create(
                TaxRate(country_code=country, rate_percentage=Decimal(rate), region_code=region, **kwargs)
            )

    return _seed
