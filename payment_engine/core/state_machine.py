"""
Allowed status transitions for orders, payments and refunds.

Stores consult these tables before every guarded write, so no code path
can produce a transition outside them (e.g. processing → success → failed).
"""

from __future__ import annotations

from typing import Mapping, TypeVar

from payment_engine.core.errors import InvalidTransition
from payment_engine.core.models import OrderStatus, PaymentStatus, RefundStatus

S = TypeVar("S")

PAYMENT_TRANSITIONS: Mapping[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.SUCCESS, PaymentStatus.FAILED}),
    PaymentStatus.SUCCESS: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

ORDER_TRANSITIONS: Mapping[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SUCCESS, OrderStatus.FAILED}),
    OrderStatus.FAILED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.SUCCESS: frozenset(),
}

REFUND_TRANSITIONS: Mapping[RefundStatus, frozenset[RefundStatus]] = {
    RefundStatus.INITIATED: frozenset({RefundStatus.COMPLETED}),
    RefundStatus.COMPLETED: frozenset(),
}

# Order states from which a new payment attempt may start
PAYABLE_ORDER_STATUSES = frozenset(
    status for status, targets in ORDER_TRANSITIONS.items() if OrderStatus.PROCESSING in targets
)


def _ensure(table: Mapping[S, frozenset[S]], entity: str, current: S, target: S) -> None:
    if target not in table.get(current, frozenset()):
        raise InvalidTransition(entity, _value(current), _value(target))


def _value(status: object) -> str:
    return getattr(status, "value", str(status))


def ensure_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    _ensure(PAYMENT_TRANSITIONS, "payment", current, target)


def ensure_order_transition(current: OrderStatus, target: OrderStatus) -> None:
    _ensure(ORDER_TRANSITIONS, "order", current, target)


def ensure_refund_transition(current: RefundStatus, target: RefundStatus) -> None:
    _ensure(REFUND_TRANSITIONS, "refund", current, target)


def order_status_for(payment_status: PaymentStatus) -> OrderStatus:
    """Order status mirroring a settled payment."""
    if payment_status is PaymentStatus.SUCCESS:
        return OrderStatus.SUCCESS
    if payment_status is PaymentStatus.FAILED:
        return OrderStatus.FAILED
    raise ValueError(f"No order mirror for payment status {payment_status.value}")
