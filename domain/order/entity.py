"""
订单领域实体 - 订单聚合根及其交易/退款/审计记录
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException, IllegalOrderTransitionException


class OrderStatus(str, Enum):
    """订单状态枚举"""
    DRAFT = "draft"
    AWAITING_PAYMENT = "awaiting_payment"    # 待支付
    REQUIRES_ACTION = "requires_action"      # 待用户验证（3DS / 钱包授权）
    PROCESSING = "processing"                # 渠道处理中
    COMPLETED = "completed"                  # 已支付
    CANCELLED = "cancelled"
    REFUNDED = "refunded"                    # 已全额退款


class OrderEvent(str, Enum):
    SUBMIT = "submit"
    REQUIRE_ACTION = "require_action"
    START_PROCESSING = "start_processing"
    AWAIT_PAYMENT = "await_payment"
    SUCCEED = "succeed"
    CANCEL = "cancel"
    REFUND_PARTIAL = "refund_partial"
    REFUND_FULL = "refund_full"


# 已支付前的可变状态
PAYABLE_STATUSES = frozenset({
    OrderStatus.AWAITING_PAYMENT,
    OrderStatus.REQUIRES_ACTION,
    OrderStatus.PROCESSING,
})

ORDER_TRANSITIONS: dict[tuple[OrderStatus, OrderEvent], OrderStatus] = {
    (OrderStatus.DRAFT, OrderEvent.SUBMIT): OrderStatus.AWAITING_PAYMENT,
    (OrderStatus.AWAITING_PAYMENT, OrderEvent.REQUIRE_ACTION): OrderStatus.REQUIRES_ACTION,
    (OrderStatus.AWAITING_PAYMENT, OrderEvent.START_PROCESSING): OrderStatus.PROCESSING,
    (OrderStatus.REQUIRES_ACTION, OrderEvent.START_PROCESSING): OrderStatus.PROCESSING,
    (OrderStatus.REQUIRES_ACTION, OrderEvent.AWAIT_PAYMENT): OrderStatus.AWAITING_PAYMENT,
    (OrderStatus.PROCESSING, OrderEvent.AWAIT_PAYMENT): OrderStatus.AWAITING_PAYMENT,
    (OrderStatus.AWAITING_PAYMENT, OrderEvent.SUCCEED): OrderStatus.COMPLETED,
    (OrderStatus.REQUIRES_ACTION, OrderEvent.SUCCEED): OrderStatus.COMPLETED,
    (OrderStatus.PROCESSING, OrderEvent.SUCCEED): OrderStatus.COMPLETED,
    (OrderStatus.DRAFT, OrderEvent.CANCEL): OrderStatus.CANCELLED,
    (OrderStatus.AWAITING_PAYMENT, OrderEvent.CANCEL): OrderStatus.CANCELLED,
    (OrderStatus.REQUIRES_ACTION, OrderEvent.CANCEL): OrderStatus.CANCELLED,
    (OrderStatus.PROCESSING, OrderEvent.CANCEL): OrderStatus.CANCELLED,
    (OrderStatus.COMPLETED, OrderEvent.REFUND_PARTIAL): OrderStatus.COMPLETED,
    (OrderStatus.COMPLETED, OrderEvent.REFUND_FULL): OrderStatus.REFUNDED,
}


def next_status(current: OrderStatus, event: OrderEvent, *, order_number: Optional[str] = None) -> OrderStatus:
    """按状态表计算下一状态，非法转换抛出异常。"""
    try:
        return ORDER_TRANSITIONS[(OrderStatus(current), OrderEvent(event))]
    except KeyError:
        raise IllegalOrderTransitionException(
            OrderStatus(current).value, OrderEvent(event).value, order_number=order_number
        ) from None


def sources_for(event: OrderEvent) -> tuple[OrderStatus, ...]:
    """返回允许触发某事件的全部源状态，用于条件 UPDATE 的 WHERE status IN (...)。"""
    return tuple(src for (src, ev) in ORDER_TRANSITIONS if ev == event)


class TransactionType(str, Enum):
    AUTHORIZATION = "authorization"
    CAPTURE = "capture"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    REQUIRES_ACTION = "requires_action"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    FAILED = "failed"


class RefundStatus(str, Enum):
    """退款状态枚举"""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OrderItem:
    """订单行，创建后不可变"""

    name: str
    unit_amount: int
    quantity: int
    item_type: str = "product"
    item_id: Optional[str] = None
    total_amount: Optional[int] = None
    discount_amount: int = 0
    tax_amount: int = 0
    metadata: dict = field(default_factory=dict)
    id: Optional[int] = None
    order_id: Optional[int] = None

    def __post_init__(self):
        if self.quantity <= 0:
            raise DomainValidationException("Item quantity must be positive", field="quantity")
        if self.unit_amount < 0:
            raise DomainValidationException("Item unit amount cannot be negative", field="unit_amount")
        if self.total_amount is None:
            self.total_amount = self.unit_amount * self.quantity
        if self.metadata is None:
            self.metadata = {}


@dataclass
class Order:
    """
    订单聚合根

    业务规则：
    1. total = subtotal - discount + tax，各金额均为非负整数（最小货币单位）
    2. 状态转换遵循 ORDER_TRANSITIONS
    3. 优惠券核销标记仅在 completed 时置位，全额退款时清除
    """

    order_number: str
    currency: str
    subtotal_amount: int
    discount_amount: int
    tax_amount: int
    total_amount: int
    status: OrderStatus = OrderStatus.DRAFT
    payment_provider: Optional[str] = None
    id: Optional[int] = None
    user_id: Optional[int] = None
    provider_intent_id: Optional[str] = None
    provider_client_secret: Optional[str] = None
    provider_approval_url: Optional[str] = None
    applied_coupon_id: Optional[int] = None
    applied_tax_rate_id: Optional[int] = None
    coupon_redemption_recorded: bool = False
    billing_email: Optional[str] = None
    billing_country: Optional[str] = None
    billing_region: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    items: list[OrderItem] = field(default_factory=list)

    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def __post_init__(self):
        self.currency = (self.currency or "").upper()
        if len(self.currency) != 3 or not self.currency.isalpha():
            raise DomainValidationException(f"Invalid currency code: {self.currency}", field="currency")
        for name in ("subtotal_amount", "discount_amount", "tax_amount", "total_amount"):
            if getattr(self, name) < 0:
                raise DomainValidationException(f"{name} cannot be negative", field=name)
        if self.total_amount != self.subtotal_amount - self.discount_amount + self.tax_amount:
            raise DomainValidationException("Order totals do not add up", field="total_amount")
        self.status = OrderStatus(self.status)
        if self.metadata is None:
            self.metadata = {}
        self.expires_at = _ensure_utc(self.expires_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.paid_at = _ensure_utc(self.paid_at)
        self.cancelled_at = _ensure_utc(self.cancelled_at)

    def apply(self, event: OrderEvent) -> OrderStatus:
        """应用事件并返回新状态（仅内存；持久化由仓储的条件更新负责）。"""
        self.status = next_status(self.status, event, order_number=self.order_number)
        return self.status

    def can(self, event: OrderEvent) -> bool:
        return (self.status, OrderEvent(event)) in ORDER_TRANSITIONS

    @property
    def is_payable(self) -> bool:
        return self.status in PAYABLE_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at


@dataclass
class Transaction:
    order_id: int
    type: TransactionType
    status: TransactionStatus
    payment_provider: str
    amount: int
    currency: str
    id: Optional[int] = None
    provider_transaction_id: Optional[str] = None
    payment_method_type: Optional[str] = None
    response_snapshot: Optional[dict] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.type = TransactionType(self.type)
        self.status = TransactionStatus(self.status)
        self.processed_at = _ensure_utc(self.processed_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    @property
    def is_settled_payment(self) -> bool:
        return self.type != TransactionType.REFUND and self.status == TransactionStatus.SUCCEEDED


@dataclass
class Refund:
    transaction_id: int
    amount: int
    currency: str
    status: RefundStatus = RefundStatus.PENDING
    id: Optional[int] = None
    reason: Optional[str] = None
    provider_refund_id: Optional[str] = None
    requested_by: Optional[int] = None
    metadata: dict = field(default_factory=dict)
    requested_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise DomainValidationException("Refund amount must be positive", field="amount")
        self.status = RefundStatus(self.status)
        if self.metadata is None:
            self.metadata = {}
        self.requested_at = _ensure_utc(self.requested_at)
        self.processed_at = _ensure_utc(self.processed_at)

    @property
    def counts_against_balance(self) -> bool:
        return self.status != RefundStatus.FAILED


@dataclass
class AuditLog:
    """审计日志，只追加"""

    event_type: str
    order_id: Optional[int] = None
    transaction_id: Optional[int] = None
    performed_by: Optional[int] = None
    payload: dict = field(default_factory=dict)
    id: Optional[int] = None
    created_at: Optional[datetime] = None


class AuditEvent:
    ORDER_CREATED = "order.created"
    ORDER_CREATE_FAILED = "order.create_failed"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_EXPIRED = "order.expired"
    INTENT_CREATED = "payment.intent.created"
    REQUIRES_ACTION = "payment.requires_action"
    PROCESSING = "payment.processing"
    CAPTURE_REQUESTED = "payment.capture.requested"
    CAPTURED = "payment.captured"
    CAPTURE_FAILED = "payment.capture.failed"
    FAILED = "payment.failed"
    COUPON_REDEEMED = "coupon.redeemed"
    COUPON_REDEMPTION_REJECTED = "coupon.redemption_rejected"
    COUPON_RELEASED = "coupon.released"
    REFUND_REQUESTED = "payment.refund.requested"
    REFUND_COMPLETED = "payment.refund.completed"
    REFUND_PENDING = "payment.refund.pending"
    REFUND_FAILED = "payment.refund.failed"
