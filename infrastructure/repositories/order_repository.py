"""
订单仓储实现 - 使用SQLAlchemy实现订单/交易/退款/审计/回调去重的数据访问
"""
from datetime import datetime
from typing import Any, Iterable, List, Optional

from sqlalchemy import select, update, exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.common.exceptions import IdempotencyConflictException
from domain.order.entity import (
    AuditLog,
    Order,
    OrderItem,
    OrderStatus,
    Refund,
    RefundStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from domain.order.repository import (
    AuditLogRepository,
    OrderRepository,
    RefundRepository,
    TransactionRepository,
    WebhookEventRepository,
)
from infrastructure.models.order import (
    AuditLogModel,
    OrderItemModel,
    OrderModel,
    RefundModel,
    TransactionModel,
    WebhookEventModel,
)


logger = get_logger(__name__)

# 实体字段名 -> 模型属性名
_ORDER_FIELD_ALIASES = {"metadata": "extra_metadata"}


def _plain(value: Any) -> Any:
    return getattr(value, "value", value)


class SQLAlchemyOrderRepository(OrderRepository):
    """订单仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OrderModel) -> Order:
        return Order(
            id=model.id,
            order_number=model.order_number,
            user_id=model.user_id,
            currency=model.currency,
            subtotal_amount=model.subtotal_amount,
            discount_amount=model.discount_amount,
            tax_amount=model.tax_amount,
            total_amount=model.total_amount,
            status=OrderStatus(model.status),
            payment_provider=model.payment_provider,
            provider_intent_id=model.provider_intent_id,
            provider_client_secret=model.provider_client_secret,
            provider_approval_url=model.provider_approval_url,
            applied_coupon_id=model.applied_coupon_id,
            applied_tax_rate_id=model.applied_tax_rate_id,
            coupon_redemption_recorded=bool(model.coupon_redemption_recorded),
            billing_email=model.billing_email,
            billing_country=model.billing_country,
            billing_region=model.billing_region,
            metadata=model.extra_metadata or {},
            items=[self._item_to_entity(i) for i in model.items],
            expires_at=model.expires_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
            paid_at=model.paid_at,
            cancelled_at=model.cancelled_at,
        )

    @staticmethod
    def _item_to_entity(model: OrderItemModel) -> OrderItem:
        return OrderItem(
            id=model.id,
            order_id=model.order_id,
            item_type=model.item_type,
            item_id=model.item_id,
            name=model.name,
            unit_amount=model.unit_amount,
            quantity=model.quantity,
            total_amount=model.total_amount,
            discount_amount=model.discount_amount,
            tax_amount=model.tax_amount,
            metadata=model.extra_metadata or {},
        )

    def _to_model(self, entity: Order) -> OrderModel:
        return OrderModel(
            id=entity.id,
            order_number=entity.order_number,
            user_id=entity.user_id,
            currency=entity.currency,
            subtotal_amount=entity.subtotal_amount,
            discount_amount=entity.discount_amount,
            tax_amount=entity.tax_amount,
            total_amount=entity.total_amount,
            status=entity.status.value,
            payment_provider=entity.payment_provider,
            provider_intent_id=entity.provider_intent_id,
            provider_client_secret=entity.provider_client_secret,
            provider_approval_url=entity.provider_approval_url,
            applied_coupon_id=entity.applied_coupon_id,
            applied_tax_rate_id=entity.applied_tax_rate_id,
            coupon_redemption_recorded=entity.coupon_redemption_recorded,
            billing_email=entity.billing_email,
            billing_country=entity.billing_country,
            billing_region=entity.billing_region,
            extra_metadata=entity.metadata,
            expires_at=entity.expires_at,
            paid_at=entity.paid_at,
            cancelled_at=entity.cancelled_at,
            items=[
                OrderItemModel(
                    item_type=i.item_type,
                    item_id=i.item_id,
                    name=i.name,
                    unit_amount=i.unit_amount,
                    quantity=i.quantity,
                    total_amount=i.total_amount,
                    discount_amount=i.discount_amount,
                    tax_amount=i.tax_amount,
                    extra_metadata=i.metadata,
                )
                for i in entity.items
            ],
        )

    async def _get_one(self, *criteria, for_update: bool = False) -> Optional[Order]:
        stmt = select(OrderModel).where(*criteria).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def create(self, order: Order) -> Order:
        db_order = self._to_model(order)
        self.session.add(db_order)
        await self.session.flush()
        await self.session.refresh(db_order)
        logger.info(
            "order_created",
            order_id=db_order.id,
            order_number=db_order.order_number,
            total_amount=db_order.total_amount,
            currency=db_order.currency,
        )
        return self._to_entity(db_order)

    async def get_by_id(self, order_id: int, *, for_update: bool = False) -> Optional[Order]:
        return await self._get_one(OrderModel.id == order_id, for_update=for_update)

    async def get_by_order_number(self, order_number: str, *, for_update: bool = False) -> Optional[Order]:
        return await self._get_one(OrderModel.order_number == order_number, for_update=for_update)

    async def get_by_provider_intent_id(
        self, provider: str, intent_id: str, *, for_update: bool = False
    ) -> Optional[Order]:
        return await self._get_one(
            OrderModel.payment_provider == provider,
            OrderModel.provider_intent_id == intent_id,
            for_update=for_update,
        )

    async def exists_order_number(self, order_number: str) -> bool:
        result = await self.session.execute(
            select(exists().where(OrderModel.order_number == order_number))
        )
        return bool(result.scalar())

    async def update_by_id(self, order_id: int, **values: Any) -> None:
        if "status" in values:
            raise ValueError("status must change through transition()")
        mapped = {_ORDER_FIELD_ALIASES.get(k, k): _plain(v) for k, v in values.items()}
        await self.session.execute(
            update(OrderModel)
            .where(OrderModel.id == order_id)
            .values(**mapped)
            .execution_options(synchronize_session=False)
        )

    async def transition(
        self,
        order_id: int,
        *,
        allowed_from: Iterable[OrderStatus],
        to: OrderStatus,
        **values: Any,
    ) -> bool:
        sources = [OrderStatus(s).value for s in allowed_from]
        mapped = {_ORDER_FIELD_ALIASES.get(k, k): _plain(v) for k, v in values.items()}
        result = await self.session.execute(
            update(OrderModel)
            .where(OrderModel.id == order_id, OrderModel.status.in_(sources))
            .values(status=OrderStatus(to).value, **mapped)
            .execution_options(synchronize_session=False)
        )
        hit = result.rowcount == 1
        logger.info(
            "order_transition",
            order_id=order_id,
            to=OrderStatus(to).value,
            allowed_from=sources,
            applied=hit,
        )
        return hit

    async def list_expired(self, now: datetime, limit: int = 100) -> List[Order]:
        result = await self.session.execute(
            select(OrderModel)
            .where(
                OrderModel.status.in_([OrderStatus.AWAITING_PAYMENT.value, OrderStatus.REQUIRES_ACTION.value]),
                OrderModel.expires_at.is_not(None),
                OrderModel.expires_at <= now,
            )
            .order_by(OrderModel.expires_at)
            .limit(limit)
        )
        return [self._to_entity(m) for m in result.scalars().all()]


class SQLAlchemyTransactionRepository(TransactionRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _to_entity(model: TransactionModel) -> Transaction:
        return Transaction(
            id=model.id,
            order_id=model.order_id,
            type=TransactionType(model.type),
            status=TransactionStatus(model.status),
            payment_provider=model.payment_provider,
            provider_transaction_id=model.provider_transaction_id,
            amount=model.amount,
            currency=model.currency,
            payment_method_type=model.payment_method_type,
            response_snapshot=model.response_snapshot,
            processed_at=model.processed_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def create(self, transaction: Transaction) -> Transaction:
        model = TransactionModel(
            order_id=transaction.order_id,
            type=transaction.type.value,
            status=transaction.status.value,
            payment_provider=transaction.payment_provider,
            provider_transaction_id=transaction.provider_transaction_id,
            amount=transaction.amount,
            currency=transaction.currency,
            payment_method_type=transaction.payment_method_type,
            response_snapshot=transaction.response_snapshot,
            processed_at=transaction.processed_at,
        )
        self.session.add(model)
        await self.session.flush()
        await self.session.refresh(model)
        logger.info(
            "transaction_created",
            transaction_id=model.id,
            order_id=model.order_id,
            type=model.type,
            status=model.status,
        )
        return self._to_entity(model)

    async def get_by_id(self, transaction_id: int) -> Optional[Transaction]:
        result = await self.session.execute(
            select(TransactionModel)
            .where(TransactionModel.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def get_by_provider_transaction_id(self, provider: str, reference: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(TransactionModel)
            .where(
                TransactionModel.payment_provider == provider,
                TransactionModel.provider_transaction_id == reference,
            )
            .order_by(TransactionModel.id.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def list_by_order(self, order_id: int) -> List[Transaction]:
        result = await self.session.execute(
            select(TransactionModel)
            .where(TransactionModel.order_id == order_id)
            .order_by(TransactionModel.id)
            .execution_options(populate_existing=True)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def update(self, transaction: Transaction) -> Transaction:
        model = await self.session.get(TransactionModel, transaction.id)
        if model is None:
            raise ValueError(f"Transaction {transaction.id} not found")
        model.status = transaction.status.value
        model.type = transaction.type.value
        model.provider_transaction_id = transaction.provider_transaction_id
        model.payment_method_type = transaction.payment_method_type
        model.response_snapshot = transaction.response_snapshot
        model.processed_at = transaction.processed_at
        await self.session.flush()
        await self.session.refresh(model)
        return self._to_entity(model)


class SQLAlchemyRefundRepository(RefundRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _to_entity(model: RefundModel) -> Refund:
        return Refund(
            id=model.id,
            transaction_id=model.transaction_id,
            amount=model.amount,
            currency=model.currency,
            status=RefundStatus(model.status),
            reason=model.reason,
            provider_refund_id=model.provider_refund_id,
            requested_by=model.requested_by,
            metadata=model.extra_metadata or {},
            requested_at=model.requested_at,
            processed_at=model.processed_at,
        )

    async def create(self, refund: Refund) -> Refund:
        model = RefundModel(
            transaction_id=refund.transaction_id,
            amount=refund.amount,
            currency=refund.currency,
            status=refund.status.value,
            reason=refund.reason,
            provider_refund_id=refund.provider_refund_id,
            requested_by=refund.requested_by,
            extra_metadata=refund.metadata,
            processed_at=refund.processed_at,
        )
        self.session.add(model)
        await self.session.flush()
        await self.session.refresh(model)
        logger.info(
            "refund_created",
            refund_id=model.id,
            transaction_id=model.transaction_id,
            amount=model.amount,
            status=model.status,
        )
        return self._to_entity(model)

    async def get_by_provider_refund_id(self, provider_refund_id: str) -> Optional[Refund]:
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.provider_refund_id == provider_refund_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def list_by_order(self, order_id: int) -> List[Refund]:
        result = await self.session.execute(
            select(RefundModel)
            .join(TransactionModel, RefundModel.transaction_id == TransactionModel.id)
            .where(TransactionModel.order_id == order_id)
            .order_by(RefundModel.id)
            .execution_options(populate_existing=True)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def update(self, refund: Refund) -> Refund:
        model = await self.session.get(RefundModel, refund.id)
        if model is None:
            raise ValueError(f"Refund {refund.id} not found")
        model.status = refund.status.value
        model.provider_refund_id = refund.provider_refund_id
        model.extra_metadata = refund.metadata
        model.processed_at = refund.processed_at
        await self.session.flush()
        await self.session.refresh(model)
        logger.info("refund_updated", refund_id=model.id, status=model.status)
        return self._to_entity(model)


class SQLAlchemyAuditLogRepository(AuditLogRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, entry: AuditLog) -> AuditLog:
        model = AuditLogModel(
            event_type=entry.event_type,
            order_id=entry.order_id,
            transaction_id=entry.transaction_id,
            performed_by=entry.performed_by,
            payload=entry.payload,
        )
        self.session.add(model)
        await self.session.flush()
        entry.id = model.id
        entry.created_at = model.created_at
        return entry

    async def list_by_order(self, order_id: int) -> List[AuditLog]:
        result = await self.session.execute(
            select(AuditLogModel).where(AuditLogModel.order_id == order_id).order_by(AuditLogModel.id)
        )
        return [
            AuditLog(
                id=m.id,
                event_type=m.event_type,
                order_id=m.order_id,
                transaction_id=m.transaction_id,
                performed_by=m.performed_by,
                payload=m.payload or {},
                created_at=m.created_at,
            )
            for m in result.scalars().all()
        ]


class SQLAlchemyWebhookEventRepository(WebhookEventRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, provider: str, event_id: str) -> bool:
        result = await self.session.execute(
            select(
                exists().where(
                    WebhookEventModel.provider == provider,
                    WebhookEventModel.event_id == event_id,
                )
            )
        )
        return bool(result.scalar())

    async def record(
        self,
        provider: str,
        event_id: str,
        event_type: str,
        order_id: Optional[int] = None,
    ) -> None:
        try:
            self.session.add(
                WebhookEventModel(
                    provider=provider,
                    event_id=event_id,
                    event_type=event_type,
                    order_id=order_id,
                )
            )
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            logger.warning("webhook_event_duplicate", provider=provider, event_id=event_id)
            raise IdempotencyConflictException(
                f"{provider}:{event_id}", details={"provider": provider, "event_id": event_id}
            )
