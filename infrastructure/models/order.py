"""
订单/交易/退款/审计数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Boolean, Column, Integer, BigInteger, String, DateTime, Text, JSON,
    Index, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OrderModel(Base):
    """订单表，所有业务规则在 domain.order.entity.Order 中"""
    __tablename__ = "payment_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(40), unique=True, nullable=False, index=True, comment="订单号 ORD-<年>-<6位>")
    user_id = Column(Integer, nullable=True, index=True)

    currency = Column(String(3), nullable=False, comment="ISO-4217")
    subtotal_amount = Column(BigInteger, nullable=False, default=0)
    discount_amount = Column(BigInteger, nullable=False, default=0)
    tax_amount = Column(BigInteger, nullable=False, default=0)
    total_amount = Column(BigInteger, nullable=False, default=0)

    status = Column(String(32), nullable=False, default="draft", index=True)
    payment_provider = Column(String(32), nullable=True, index=True)
    provider_intent_id = Column(String(200), nullable=True, index=True, comment="渠道意图/订单ID")
    provider_client_secret = Column(String(500), nullable=True, comment="前端调用凭证")
    provider_approval_url = Column(String(1000), nullable=True, comment="钱包授权跳转地址")

    applied_coupon_id = Column(Integer, ForeignKey("commerce_coupons.id"), nullable=True)
    applied_tax_rate_id = Column(Integer, ForeignKey("commerce_tax_rates.id"), nullable=True)
    coupon_redemption_recorded = Column(Boolean, nullable=False, default=False, comment="优惠券是否已计入核销次数")

    billing_email = Column(String(255), nullable=True)
    billing_country = Column(String(2), nullable=True)
    billing_region = Column(String(10), nullable=True)
    extra_metadata = Column("metadata", JSON, nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    items = relationship(
        "OrderItemModel",
        back_populates="order",
        lazy="selectin",
        order_by="OrderItemModel.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_payment_orders_provider_intent", "payment_provider", "provider_intent_id"),
        Index("ix_payment_orders_status_expires", "status", "expires_at"),
    )

    def __repr__(self):
        return f"<Order(id={self.id}, number={self.order_number}, status={self.status})>"


class OrderItemModel(Base):
    __tablename__ = "payment_order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("payment_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    item_type = Column(String(50), nullable=False, default="product")
    item_id = Column(String(100), nullable=True)
    name = Column(String(255), nullable=False)
    unit_amount = Column(BigInteger, nullable=False)
    quantity = Column(Integer, nullable=False)
    total_amount = Column(BigInteger, nullable=False)
    discount_amount = Column(BigInteger, nullable=False, default=0)
    tax_amount = Column(BigInteger, nullable=False, default=0)
    extra_metadata = Column("metadata", JSON, nullable=True)

    order = relationship("OrderModel", back_populates="items")


class TransactionModel(Base):
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("payment_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(20), nullable=False, comment="authorization/capture/refund")
    status = Column(String(20), nullable=False, default="pending", index=True)
    payment_provider = Column(String(32), nullable=False)
    provider_transaction_id = Column(String(200), nullable=True, index=True)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    payment_method_type = Column(String(50), nullable=True)
    response_snapshot = Column(JSON, nullable=True, comment="渠道原始响应快照")
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)


class RefundModel(Base):
    __tablename__ = "payment_refunds"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(
        Integer, ForeignKey("payment_transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    reason = Column(Text, nullable=True)
    provider_refund_id = Column(String(200), nullable=True, index=True)
    requested_by = Column(Integer, nullable=True)
    extra_metadata = Column("metadata", JSON, nullable=True)
    requested_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)


class AuditLogModel(Base):
    __tablename__ = "payment_audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(64), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("payment_orders.id", ondelete="SET NULL"), nullable=True, index=True)
    transaction_id = Column(Integer, nullable=True)
    performed_by = Column(Integer, nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False, index=True)


class WebhookEventModel(Base):
    __tablename__ = "payment_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(32), nullable=False)
    event_id = Column(String(200), nullable=False)
    event_type = Column(String(100), nullable=False)
    order_id = Column(Integer, nullable=True)
    received_at = Column(DateTime(timezone=True), default=_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_payment_webhook_events_provider_event"),
    )
