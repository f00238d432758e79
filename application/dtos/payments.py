"""
Payment DTOs (Pydantic v2) used at application boundaries.

Gateway DTOs carry the internal vocabulary; adapters translate provider
statuses into ``IntentStatus`` / refund status strings before returning.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

# Common ISO-4217 currencies (extend as needed)
ISO_4217 = {
    "USD", "EUR", "GBP", "CNY", "JPY", "KRW", "HKD", "AUD", "CAD", "SGD", "CHF", "SEK",
}

SUPPORTED_PROVIDERS = {"stripe", "paypal"}


def _validate_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    if u not in ISO_4217:
        raise ValueError("unsupported currency")
    return u


class IntentStatus(str, Enum):
    REQUIRES_PAYMENT = "requires_payment"
    REQUIRES_ACTION = "requires_action"
    AUTHORIZED = "authorized"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"
    FAILED = "failed"


class WebhookEventKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REQUIRES_ACTION = "payment.requires_action"
    PAYMENT_APPROVED = "payment.approved"
    REFUND_SUCCEEDED = "refund.succeeded"
    REFUND_FAILED = "refund.failed"
    IGNORED = "ignored"


# ---- gateway port DTOs ----

class CreateIntent(BaseModel):
    order_number: str
    amount: int = Field(gt=0, description="minor units")
    currency: str
    description: Optional[str] = None
    customer_email: Optional[str] = None
    idempotency_key: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def _currency(cls, v: str) -> str:
        return _validate_currency(v)


class ProviderIntent(BaseModel):
    provider: str
    intent_id: str
    status: IntentStatus
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None
    provider_reference: Optional[str] = None  # charge / capture id once money moved
    payment_method_type: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class RefundRequest(BaseModel):
    intent_id: str
    amount: int = Field(gt=0)
    currency: str
    provider_reference: Optional[str] = None  # capture id (wallet) when known
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _currency(cls, v: str) -> str:
        return _validate_currency(v)


class RefundResult(BaseModel):
    provider: str
    refund_id: str
    status: str  # pending | processing | succeeded | failed
    raw: dict[str, Any] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    id: str
    type: str
    provider: str
    kind: WebhookEventKind = WebhookEventKind.IGNORED
    intent_id: Optional[str] = None
    provider_reference: Optional[str] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[int] = None
    refunded_total: Optional[int] = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(arbitrary_types_allowed=True)


# ---- orchestrator inputs / outputs ----

class OrderItemInput(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    unit_amount: int = Field(ge=0)
    quantity: int = Field(gt=0)
    item_type: str = "product"
    item_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class BillingDetails(BaseModel):
    email: Optional[EmailStr] = None
    country: Optional[str] = Field(default=None, min_length=2, max_length=2)
    region: Optional[str] = Field(default=None, max_length=10)

    @field_validator("country", "region")
    @classmethod
    def _upper(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class CreateOrder(BaseModel):
    items: list[OrderItemInput] = Field(min_length=1)
    currency: str = "USD"
    provider: Optional[str] = None
    coupon_codes: list[str] = Field(default_factory=list)
    billing: BillingDetails = Field(default_factory=BillingDetails)
    user_id: Optional[int] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def _currency(cls, v: str) -> str:
        return _validate_currency(v)

    @field_validator("provider")
    @classmethod
    def _provider(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        p = v.lower()
        if p not in SUPPORTED_PROVIDERS:
            raise ValueError(f"unsupported provider '{v}'")
        return p


class RefundOrder(BaseModel):
    transaction_id: int
    amount: Optional[int] = Field(default=None, gt=0, description="defaults to the remaining balance")
    reason: Optional[str] = Field(default=None, max_length=500)


class OrderItemView(BaseModel):
    name: str
    item_type: str
    item_id: Optional[str] = None
    unit_amount: int
    quantity: int
    total_amount: int
    discount_amount: int
    tax_amount: int

    model_config = ConfigDict(from_attributes=True)


class TransactionView(BaseModel):
    id: int
    type: str
    status: str
    amount: int
    currency: str
    payment_provider: str
    provider_transaction_id: Optional[str] = None
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RefundView(BaseModel):
    id: int
    transaction_id: int
    amount: int
    currency: str
    status: str
    reason: Optional[str] = None
    provider_refund_id: Optional[str] = None
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class OrderView(BaseModel):
    id: int
    order_number: str
    status: str
    currency: str
    subtotal_amount: int
    discount_amount: int
    tax_amount: int
    total_amount: int
    payment_provider: Optional[str] = None
    provider_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    items: list[OrderItemView] = Field(default_factory=list)
    transactions: list[TransactionView] = Field(default_factory=list)
    refunds: list[RefundView] = Field(default_factory=list)


class WebhookOutcome(BaseModel):
    provider: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    duplicate: bool = False
    handled: bool = False
    order_number: Optional[str] = None
    order_status: Optional[str] = None
