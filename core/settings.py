"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so gateway credentials are loaded only
where payments are wired (``PAYMENT__*`` environment variables).
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 3.0
    write: float = 3.0
    total: float = 5.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2
    max_backoff: float = 2.0


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    # "automatic" captures on confirmation; "manual" authorizes and waits for capture_order
    capture_method: str = "manual"
    statement_descriptor: Optional[str] = None


class PaypalSettings(BaseModel):
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    webhook_id: Optional[str] = None
    environment: str = "sandbox"  # sandbox | live
    return_url: str = "http://localhost:3000/checkout/paypal/return"
    cancel_url: str = "http://localhost:3000/checkout/paypal/cancel"
    brand_name: Optional[str] = None

    @property
    def base_url(self) -> str:
        if self.environment == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


class PaymentSettings(BaseSettings):
    default_provider: str = "stripe"
    allowed_currencies: list[str] = Field(default_factory=lambda: ["USD", "EUR", "GBP"])
    order_number_prefix: str = "ORD"
    order_expiry_minutes: int = 30
    expiry_sweep_seconds: int = 300
    reconcile_delay_seconds: int = 60
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    stripe: StripeSettings = Field(default_factory=StripeSettings)
    paypal: PaypalSettings = Field(default_factory=PaypalSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @field_validator("allowed_currencies", mode="before")
    @classmethod
    def _parse_currencies(cls, v):
        if isinstance(v, str):
            v = [item for item in v.replace(" ", "").split(",") if item]
        return [str(item).upper() for item in v]


payment_settings = PaymentSettings()
