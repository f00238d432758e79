"""Infrastructure models package exports."""
from .base import Base, metadata
from .commerce import CouponModel, TaxRateModel
from .order import (
    AuditLogModel,
    OrderItemModel,
    OrderModel,
    RefundModel,
    TransactionModel,
    WebhookEventModel,
)

__all__ = [
    "Base",
    "metadata",
    "CouponModel",
    "TaxRateModel",
    "OrderModel",
    "OrderItemModel",
    "TransactionModel",
    "RefundModel",
    "AuditLogModel",
    "WebhookEventModel",
]
