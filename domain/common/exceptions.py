"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class OrderNotFoundException(BusinessException):
    def __init__(self, order_number: Optional[str] = None, *, order_id: Optional[int] = None):
        details = {}
        if order_number is not None:
            details["order_number"] = order_number
        if order_id is not None:
            details["order_id"] = order_id
        super().__init__(
            code=BusinessCode.ORDER_NOT_FOUND,
            message="Order not found",
            error_type="OrderNotFound",
            details=details or None,
        )


class TransactionNotFoundException(BusinessException):
    def __init__(self, transaction_id: int):
        super().__init__(
            code=BusinessCode.TRANSACTION_NOT_FOUND,
            message="Transaction not found",
            error_type="TransactionNotFound",
            details={"transaction_id": transaction_id},
        )


class IllegalOrderTransitionException(BusinessException):
    def __init__(self, current: str, event: str, *, order_number: Optional[str] = None):
        details = {"current": current, "event": event}
        if order_number:
            details["order_number"] = order_number
        super().__init__(
            code=BusinessCode.ORDER_STATE_CONFLICT,
            message=f"Order in status {current} cannot handle {event}",
            error_type="IllegalOrderTransition",
            details=details,
            field="status",
        )


class CouponNotApplicableException(BusinessException):
    def __init__(self, code: str, reason: str):
        super().__init__(
            code=BusinessCode.COUPON_NOT_APPLICABLE,
            message=f"Coupon {code} cannot be applied: {reason}",
            error_type="CouponNotApplicable",
            details={"coupon_code": code, "reason": reason},
            field="coupon_codes",
        )


class CouponExhaustedException(BusinessException):
    def __init__(self, coupon_id: Optional[int] = None, *, code: Optional[str] = None):
        details = {}
        if coupon_id is not None:
            details["coupon_id"] = coupon_id
        if code is not None:
            details["coupon_code"] = code
        super().__init__(
            code=BusinessCode.COUPON_EXHAUSTED,
            message="Coupon redemption limit reached",
            error_type="CouponExhausted",
            details=details or None,
            field="coupon_codes",
        )


class RefundExceedsCapturedException(BusinessException):
    def __init__(self, requested: int, refundable: int):
        super().__init__(
            code=BusinessCode.REFUND_EXCEEDS_CAPTURED,
            message="Refund amount exceeds the refundable balance",
            error_type="RefundExceedsCaptured",
            details={"requested": requested, "refundable": refundable},
            field="amount",
        )


class IdempotencyConflictException(BusinessException):
    """重复请求/回调：调用方应将其视为成功的空操作。"""

    def __init__(self, key: str, *, details: Optional[dict] = None):
        super().__init__(
            code=BusinessCode.IDEMPOTENCY_CONFLICT,
            message=f"Operation already applied: {key}",
            error_type="IdempotencyConflict",
            details=details or {"key": key},
        )


class PaymentGatewayException(BusinessException):
    """支付网关调用失败（网络、超时、渠道拒绝等）。"""

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        code: int = PaymentCode.PROVIDER_ERROR,
        details: Optional[dict] = None,
    ):
        merged = dict(details or {})
        if provider:
            merged.setdefault("provider", provider)
        super().__init__(
            code=code,
            message=message,
            error_type="PaymentGatewayError",
            details=merged or None,
        )
        self.provider = provider


class PaymentNotCapturableException(PaymentGatewayException):
    def __init__(self, intent_status: str, *, provider: Optional[str] = None):
        super().__init__(
            f"Payment is not ready for capture (status: {intent_status})",
            provider=provider,
            code=PaymentCode.NOT_CAPTURABLE,
            details={"intent_status": intent_status},
        )


class PaymentSignatureException(BusinessException):
    def __init__(self, message: str = "Invalid webhook signature", *, provider: Optional[str] = None):
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="PaymentSignatureError",
            details={"provider": provider} if provider else None,
        )
        self.provider = provider
