"""
Ledger store contract and in-memory implementation.

The store is the single shared mutable resource. Every state change goes
through a guarded (compare-and-swap) operation:

    update_payment_status(pid, from_status=PROCESSING, to_status=SUCCESS)

If the payment is no longer PROCESSING the write is refused with
ConflictError instead of being applied. This is what lets concurrent
requests and settlement tasks share the ledger without a global lock.

Example race without the guard:
T0: settlement task reads payment (processing)
T0: cancel request reads payment (processing)
T1: settlement writes success ✓
T2: cancel writes failed ✗ history becomes processing → success → failed

With the guard, T2 sees status=success ≠ processing and is rejected.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

from payment_engine.core.errors import ConflictError
from payment_engine.core.models import (
    Order,
    OrderStatus,
    Payment,
    PaymentEvent,
    PaymentStatus,
    Refund,
    RefundStatus,
    utcnow,
)
from payment_engine.core.state_machine import (
    PAYABLE_ORDER_STATUSES,
    ensure_order_transition,
    ensure_payment_transition,
    ensure_refund_transition,
    order_status_for,
)

UPDATABLE_PAYMENT_FIELDS = frozenset({"error_message"})


class LedgerStore(Protocol):
    """Interface for ledger persistence (in-memory, SQL, ...)."""

    async def ping(self) -> None:
        """Raise StorageUnavailable when the backend cannot be reached."""
        ...

    async def create_order(self, order: Order) -> Order:
        ...

    async def get_order(self, order_id: str) -> Optional[Order]:
        ...

    async def list_orders(
        self, merchant_id: str, status: Optional[OrderStatus] = None
    ) -> list[Order]:
        ...

    async def create_payment_if_absent(
        self,
        payment: Payment,
        payable_statuses: Iterable[OrderStatus] = PAYABLE_ORDER_STATUSES,
    ) -> Payment:
        """
        Insert a processing payment and claim the order's active slot.

        Atomically: the order must have no active payment and be in one of
        ``payable_statuses``; the order moves to processing. Otherwise
        ConflictError and nothing is written.
        """
        ...

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        ...

    async def list_payments_by_order(self, order_id: str) -> list[Payment]:
        ...

    async def update_payment_status(
        self,
        payment_id: str,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        **fields: Any,
    ) -> Payment:
        """
        Compare-and-swap the payment status.

        ConflictError when the current status is not ``from_status``.
        Leaving processing releases the order's active slot and moves the
        order to the matching terminal status in the same write.
        """
        ...

    async def update_order_status(
        self, order_id: str, from_status: OrderStatus, to_status: OrderStatus
    ) -> Order:
        """Compare-and-swap the order status."""
        ...

    async def create_refund(self, refund: Refund, limit: int) -> Refund:
        """
        Insert an initiated refund.

        ConflictError unless the payment is SUCCESS and the open plus
        completed refunds, including this one, stay within ``limit``.
        """
        ...

    async def complete_refund(self, refund_id: str) -> Refund:
        """Compare-and-swap initiated → completed."""
        ...

    async def get_refund(self, refund_id: str) -> Optional[Refund]:
        ...

    async def list_refunds(self, payment_id: str) -> list[Refund]:
        ...

    async def list_payments(
        self,
        merchant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Payment]:
        """Merchant payments with start <= created_at < end, oldest first."""
        ...

    async def list_payments_by_status(
        self, status: PaymentStatus, created_before: Optional[datetime] = None
    ) -> list[Payment]:
        ...

    async def list_payment_events(self, payment_id: str) -> list[PaymentEvent]:
        ...


# ============================================================================
# IN-MEMORY IMPLEMENTATION (for testing and local development)
# ============================================================================


class InMemoryLedgerStore:
    """
    In-memory ledger.

    Useful for:
    - Unit tests (fast, no DB required)
    - Local development (no infrastructure needed)

    Each operation runs under one asyncio.Lock, which makes every method
    atomic with respect to the others. Returned entities are copies.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._orders: dict[str, Order] = {}
        self._payments: dict[str, Payment] = {}
        self._refunds: dict[str, Refund] = {}
        self._events: dict[str, list[PaymentEvent]] = {}

    async def ping(self) -> None:
        return None

    # ----------------------------------------------------------------- orders

    async def create_order(self, order: Order) -> Order:
        async with self._lock:
            if order.id in self._orders:
                raise ConflictError(order.id, expected="absent", current="present")
            self._orders[order.id] = copy.deepcopy(order)
            return copy.deepcopy(order)

    async def get_order(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def list_orders(
        self, merchant_id: str, status: Optional[OrderStatus] = None
    ) -> list[Order]:
        orders = [
            o
            for o in self._orders.values()
            if o.merchant_id == merchant_id and (status is None or o.status == status)
        ]
        orders.sort(key=lambda o: o.created_at)
        return copy.deepcopy(orders)

    async def update_order_status(
        self, order_id: str, from_status: OrderStatus, to_status: OrderStatus
    ) -> Order:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status != from_status:
                raise ConflictError(
                    order_id, expected=from_status, current=order.status if order else None
                )
            ensure_order_transition(from_status, to_status)
            order.status = to_status
            order.updated_at = utcnow()
            return copy.deepcopy(order)

    # --------------------------------------------------------------- payments

    async def create_payment_if_absent(
        self,
        payment: Payment,
        payable_statuses: Iterable[OrderStatus] = PAYABLE_ORDER_STATUSES,
    ) -> Payment:
        async with self._lock:
            order = self._orders.get(payment.order_id)
            if order is None:
                raise ConflictError(payment.order_id, expected="order", current=None)
            if order.active_payment_id is not None:
                raise ConflictError(
                    payment.order_id, expected=None, current=order.active_payment_id
                )
            if order.status not in frozenset(payable_statuses):
                raise ConflictError(payment.order_id, expected="payable", current=order.status)
            if payment.id in self._payments:
                raise ConflictError(payment.id, expected="absent", current="present")

            ensure_order_transition(order.status, OrderStatus.PROCESSING)
            now = utcnow()
            order.status = OrderStatus.PROCESSING
            order.active_payment_id = payment.id
            order.updated_at = now

            stored = copy.deepcopy(payment)
            stored.status = PaymentStatus.PROCESSING
            self._payments[stored.id] = stored
            self._events.setdefault(stored.id, []).append(
                PaymentEvent(
                    payment_id=stored.id,
                    event_type="payment.created",
                    from_status=None,
                    to_status=PaymentStatus.PROCESSING,
                    occurred_at=now,
                    data={"method": stored.method.value, "amount": stored.amount},
                )
            )
            return copy.deepcopy(stored)

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        payment = self._payments.get(payment_id)
        return copy.deepcopy(payment) if payment else None

    async def list_payments_by_order(self, order_id: str) -> list[Payment]:
        payments = [p for p in self._payments.values() if p.order_id == order_id]
        payments.sort(key=lambda p: p.created_at)
        return copy.deepcopy(payments)

    async def update_payment_status(
        self,
        payment_id: str,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        **fields: Any,
    ) -> Payment:
        unknown = set(fields) - UPDATABLE_PAYMENT_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")

        async with self._lock:
            payment = self._payments.get(payment_id)
            if payment is None or payment.status != from_status:
                raise ConflictError(
                    payment_id,
                    expected=from_status,
                    current=payment.status if payment else None,
                )
            ensure_payment_transition(from_status, to_status)

            now = utcnow()
            payment.status = to_status
            payment.updated_at = now
            for name, value in fields.items():
                setattr(payment, name, value)

            if from_status is PaymentStatus.PROCESSING:
                order = self._orders.get(payment.order_id)
                if order is not None and order.active_payment_id == payment_id:
                    order.status = order_status_for(to_status)
                    order.active_payment_id = None
                    order.updated_at = now

            self._events.setdefault(payment_id, []).append(
                PaymentEvent(
                    payment_id=payment_id,
                    event_type=f"payment.{to_status.value}",
                    from_status=from_status,
                    to_status=to_status,
                    occurred_at=now,
                    data={k: v for k, v in fields.items() if v is not None},
                )
            )
            return copy.deepcopy(payment)

    async def list_payments(
        self,
        merchant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Payment]:
        payments = [
            p
            for p in self._payments.values()
            if p.merchant_id == merchant_id
            and (start is None or p.created_at >= start)
            and (end is None or p.created_at < end)
        ]
        payments.sort(key=lambda p: p.created_at)
        return copy.deepcopy(payments)

    async def list_payments_by_status(
        self, status: PaymentStatus, created_before: Optional[datetime] = None
    ) -> list[Payment]:
        payments = [
            p
            for p in self._payments.values()
            if p.status == status and (created_before is None or p.created_at < created_before)
        ]
        payments.sort(key=lambda p: p.created_at)
        return copy.deepcopy(payments)

    async def list_payment_events(self, payment_id: str) -> list[PaymentEvent]:
        return list(self._events.get(payment_id, []))

    # ---------------------------------------------------------------- refunds

    async def create_refund(self, refund: Refund, limit: int) -> Refund:
        async with self._lock:
            payment = self._payments.get(refund.payment_id)
            if payment is None or payment.status != PaymentStatus.SUCCESS:
                raise ConflictError(
                    refund.payment_id,
                    expected=PaymentStatus.SUCCESS,
                    current=payment.status if payment else None,
                )
            committed = sum(
                r.amount for r in self._refunds.values() if r.payment_id == refund.payment_id
            )
            if committed + refund.amount > limit:
                raise ConflictError(
                    refund.payment_id, expected=f"<= {limit}", current=committed + refund.amount
                )
            stored = copy.deepcopy(refund)
            stored.status = RefundStatus.INITIATED
            self._refunds[stored.id] = stored
            return copy.deepcopy(stored)

    async def complete_refund(self, refund_id: str) -> Refund:
        async with self._lock:
            refund = self._refunds.get(refund_id)
            if refund is None or refund.status != RefundStatus.INITIATED:
                raise ConflictError(
                    refund_id,
                    expected=RefundStatus.INITIATED,
                    current=refund.status if refund else None,
                )
            ensure_refund_transition(refund.status, RefundStatus.COMPLETED)
            refund.status = RefundStatus.COMPLETED
            refund.completed_at = utcnow()
            return copy.deepcopy(refund)

    async def get_refund(self, refund_id: str) -> Optional[Refund]:
        refund = self._refunds.get(refund_id)
        return copy.deepcopy(refund) if refund else None

    async def list_refunds(self, payment_id: str) -> list[Refund]:
        refunds = [r for r in self._refunds.values() if r.payment_id == payment_id]
        refunds.sort(key=lambda r: r.created_at)
        return copy.deepcopy(refunds)
