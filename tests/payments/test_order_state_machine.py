import pytest

from domain.common.exceptions import DomainValidationException, IllegalOrderTransitionException
from domain.order.entity import (
    Order,
    OrderEvent,
    OrderStatus,
    next_status,
    sources_for,
)


def _order(**kwargs) -> Order:
    values = dict(
        order_number="ORD-2026-123456",
        currency="usd",
        subtotal_amount=300,
        discount_amount=75,
        tax_amount=19,
        total_amount=244,
    )
    values.update(kwargs)
    return Order(**values)


def test_happy_path_transitions():
    order = _order()
    assert order.currency == "USD"
    assert order.apply(OrderEvent.SUBMIT) == OrderStatus.AWAITING_PAYMENT
    assert order.apply(OrderEvent.REQUIRE_ACTION) == OrderStatus.REQUIRES_ACTION
    assert order.apply(OrderEvent.START_PROCESSING) == OrderStatus.PROCESSING
    assert order.apply(OrderEvent.SUCCEED) == OrderStatus.COMPLETED
    assert order.apply(OrderEvent.REFUND_PARTIAL) == OrderStatus.COMPLETED
    assert order.apply(OrderEvent.REFUND_FULL) == OrderStatus.REFUNDED


def test_refunding_a_draft_order_fails_loudly():
    with pytest.raises(IllegalOrderTransitionException) as exc:
        next_status(OrderStatus.DRAFT, OrderEvent.REFUND_FULL, order_number="ORD-2026-000001")
    assert exc.value.details["current"] == "draft"
    assert exc.value.details["order_number"] == "ORD-2026-000001"


def test_terminal_states_reject_payment_events():
    for status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
        order = _order(status=status)
        assert not order.can(OrderEvent.SUCCEED)
        with pytest.raises(IllegalOrderTransitionException):
            order.apply(OrderEvent.CANCEL)


def test_guard_sources_for_completion():
    assert set(sources_for(OrderEvent.SUCCEED)) == {
        OrderStatus.AWAITING_PAYMENT,
        OrderStatus.REQUIRES_ACTION,
        OrderStatus.PROCESSING,
    }
    assert sources_for(OrderEvent.REFUND_FULL) == (OrderStatus.COMPLETED,)


def test_totals_must_add_up():
    with pytest.raises(DomainValidationException):
        _order(total_amount=245)
