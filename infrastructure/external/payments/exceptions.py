"""
Exceptions for payment providers mapped to unified BusinessException variants.

They subclass the domain gateway exceptions so application services can catch
``PaymentGatewayException`` without importing infrastructure.
"""
from __future__ import annotations

from typing import Optional
from domain.common.exceptions import PaymentGatewayException, PaymentSignatureException
from shared.codes.payment_codes import PaymentCode


class PaymentProviderError(PaymentGatewayException):
    """Non-retryable: declines, validation errors, 4xx responses."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        provider_code: str | None = None,
        http_status: int | None = None,
        details: Optional[dict] = None,
    ):
        full_details = {"provider_code": provider_code, "http_status": http_status}
        if details:
            full_details.update(details)
        super().__init__(message, provider=provider, code=PaymentCode.PROVIDER_ERROR, details=full_details)
        self.error_type = "PaymentProviderError"
        self.provider_code = provider_code
        self.http_status = http_status


class PaymentRecoverableError(PaymentGatewayException):
    """Transient: transport failures, timeouts, 5xx and 429. Retried with backoff."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        provider_code: str | None = None,
        http_status: int | None = None,
        details: Optional[dict] = None,
    ):
        full_details = {"provider_code": provider_code, "http_status": http_status}
        if details:
            full_details.update(details)
        code = PaymentCode.RATE_LIMITED if http_status == 429 else PaymentCode.PROVIDER_RECOVERABLE
        super().__init__(message, provider=provider, code=code, details=full_details)
        self.error_type = "PaymentRecoverableError"
        self.provider_code = provider_code
        self.http_status = http_status


class PaymentSignatureError(PaymentSignatureException):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        super().__init__(message, provider=provider)
        if details:
            self.details = {**(self.details or {}), **details}
