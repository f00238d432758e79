"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

from core.settings import payment_settings
from application.ports.payment_gateway import PaymentGateway
from domain.common.exceptions import PaymentGatewayException
from shared.codes.payment_codes import PaymentCode


def get_payment_gateway(provider: Optional[str] = None) -> PaymentGateway:
    name = (provider or payment_settings.default_provider).lower()
    if name == "stripe":
        from .stripe_client import StripeClient
        return StripeClient()
    if name == "paypal":
        from .paypal_client import PaypalClient
        return PaypalClient()
    raise PaymentGatewayException(
        f"Unsupported payment provider: {name}",
        provider=name,
        code=PaymentCode.UNSUPPORTED_PROVIDER,
    )
