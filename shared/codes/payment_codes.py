"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004
    NOT_CAPTURABLE = 60005
    UNSUPPORTED_PROVIDER = 60006


# Provider intent/order status → internal intent status
PROVIDER_STATUS_TO_INTERNAL = {
    "stripe": {
        "requires_payment_method": "requires_payment",
        "requires_confirmation": "requires_payment",
        "requires_action": "requires_action",
        "requires_capture": "authorized",
        "processing": "processing",
        "succeeded": "succeeded",
        "canceled": "canceled",
    },
    "paypal": {
        "CREATED": "requires_payment",
        "SAVED": "requires_payment",
        "PAYER_ACTION_REQUIRED": "requires_action",
        "APPROVED": "authorized",
        "COMPLETED": "succeeded",
        "VOIDED": "canceled",
    },
}

# Provider refund status → internal refund status
PROVIDER_REFUND_STATUS_TO_INTERNAL = {
    "stripe": {
        "pending": "processing",
        "requires_action": "processing",
        "succeeded": "succeeded",
        "failed": "failed",
        "canceled": "failed",
    },
    "paypal": {
        "PENDING": "processing",
        "COMPLETED": "succeeded",
        "FAILED": "failed",
        "CANCELLED": "failed",
    },
}
