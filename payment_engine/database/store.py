"""
SQL-backed ledger store.

Implements the LedgerStore contract on SQLAlchemy async sessions. Guarded
writes are single UPDATE statements whose WHERE clause carries the expected
status; a rowcount of zero means another writer got there first and is
reported as ConflictError.

Driver-level connection failures are raised as StorageUnavailable so the
engine's retry policy can back off and try again.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Optional

import structlog
from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_engine.core.errors import ConflictError, StorageUnavailable
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
    order_status_for,
)
from payment_engine.core.store import UPDATABLE_PAYMENT_FIELDS
from payment_engine.database.models import (
    OrderRecord,
    PaymentEventRecord,
    PaymentRecord,
    RefundRecord,
)

logger = structlog.get_logger(__name__)


class SQLAlchemyLedgerStore:
    """Ledger persisted through SQLAlchemy (SQLite via aiosqlite, or PostgreSQL)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except IntegrityError as e:
            logger.warning("ledger_integrity_error", operation=operation, error=str(e.orig))
            raise ConflictError(operation, expected="unique", current="duplicate") from e
        except (OperationalError, InterfaceError) as e:
            logger.warning("ledger_unavailable", operation=operation, error=str(e.orig))
            raise StorageUnavailable(f"{operation} failed: {e.orig}") from e

    async def ping(self) -> None:
        async with self._transaction("ping") as session:
            await session.execute(text("SELECT 1"))

    # ----------------------------------------------------------------- orders

    async def create_order(self, order: Order) -> Order:
        async with self._transaction("create_order") as session:
            record = OrderRecord(
                id=order.id,
                merchant_id=order.merchant_id,
                amount=order.amount,
                currency=order.currency,
                customer_id=order.customer_id,
                customer_email=order.customer_email,
                description=order.description,
                status=order.status.value,
                active_payment_id=order.active_payment_id,
                created_at=order.created_at,
                updated_at=order.updated_at,
            )
            session.add(record)
            await session.flush()
            return record.to_domain()

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._transaction("get_order") as session:
            record = await session.get(OrderRecord, order_id)
            return record.to_domain() if record else None

    async def list_orders(
        self, merchant_id: str, status: Optional[OrderStatus] = None
    ) -> list[Order]:
        stmt = select(OrderRecord).where(OrderRecord.merchant_id == merchant_id)
        if status is not None:
            stmt = stmt.where(OrderRecord.status == status.value)
        stmt = stmt.order_by(OrderRecord.created_at)
        async with self._transaction("list_orders") as session:
            result = await session.scalars(stmt)
            return [r.to_domain() for r in result]

    async def update_order_status(
        self, order_id: str, from_status: OrderStatus, to_status: OrderStatus
    ) -> Order:
        ensure_order_transition(from_status, to_status)
        async with self._transaction("update_order_status") as session:
            result = await session.execute(
                update(OrderRecord)
                .where(OrderRecord.id == order_id, OrderRecord.status == from_status.value)
                .values(status=to_status.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = await session.scalar(
                    select(OrderRecord.status).where(OrderRecord.id == order_id)
                )
                raise ConflictError(order_id, expected=from_status, current=_order_status(current))
            record = await session.get(OrderRecord, order_id, populate_existing=True)
            return record.to_domain()

    # --------------------------------------------------------------- payments

    async def create_payment_if_absent(
        self,
        payment: Payment,
        payable_statuses: Iterable[OrderStatus] = PAYABLE_ORDER_STATUSES,
    ) -> Payment:
        payable = [s.value for s in payable_statuses]
        now = utcnow()
        async with self._transaction("create_payment_if_absent") as session:
            # Claim the order's in-flight slot; losing writers see rowcount 0
            result = await session.execute(
                update(OrderRecord)
                .where(
                    OrderRecord.id == payment.order_id,
                    OrderRecord.active_payment_id.is_(None),
                    OrderRecord.status.in_(payable),
                )
                .values(
                    status=OrderStatus.PROCESSING.value,
                    active_payment_id=payment.id,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                row = (
                    await session.execute(
                        select(OrderRecord.status, OrderRecord.active_payment_id).where(
                            OrderRecord.id == payment.order_id
                        )
                    )
                ).first()
                if row is None:
                    raise ConflictError(payment.order_id, expected="order", current=None)
                current = row.active_payment_id or _order_status(row.status)
                raise ConflictError(payment.order_id, expected="payable", current=current)

            record = PaymentRecord(
                id=payment.id,
                order_id=payment.order_id,
                merchant_id=payment.merchant_id,
                method=payment.method.value,
                amount=payment.amount,
                currency=payment.currency,
                status=PaymentStatus.PROCESSING.value,
                instrument_summary=dict(payment.instrument_summary),
                error_message=payment.error_message,
                created_at=payment.created_at,
                updated_at=payment.updated_at,
            )
            session.add(record)
            session.add(
                PaymentEventRecord(
                    payment_id=payment.id,
                    event_type="payment.created",
                    from_status=None,
                    to_status=PaymentStatus.PROCESSING.value,
                    data={"method": payment.method.value, "amount": payment.amount},
                    occurred_at=now,
                )
            )
            await session.flush()
            return record.to_domain()

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        async with self._transaction("get_payment") as session:
            record = await session.get(PaymentRecord, payment_id)
            return record.to_domain() if record else None

    async def list_payments_by_order(self, order_id: str) -> list[Payment]:
        stmt = (
            select(PaymentRecord)
            .where(PaymentRecord.order_id == order_id)
            .order_by(PaymentRecord.created_at)
        )
        async with self._transaction("list_payments_by_order") as session:
            return [r.to_domain() for r in await session.scalars(stmt)]

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
        ensure_payment_transition(from_status, to_status)

        now = utcnow()
        async with self._transaction("update_payment_status") as session:
            result = await session.execute(
                update(PaymentRecord)
                .where(PaymentRecord.id == payment_id, PaymentRecord.status == from_status.value)
                .values(status=to_status.value, updated_at=now, **fields)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = await session.scalar(
                    select(PaymentRecord.status).where(PaymentRecord.id == payment_id)
                )
                raise ConflictError(
                    payment_id, expected=from_status, current=_payment_status(current)
                )

            record = await session.get(PaymentRecord, payment_id, populate_existing=True)

            if from_status is PaymentStatus.PROCESSING:
                await session.execute(
                    update(OrderRecord)
                    .where(
                        OrderRecord.id == record.order_id,
                        OrderRecord.active_payment_id == payment_id,
                    )
                    .values(
                        status=order_status_for(to_status).value,
                        active_payment_id=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )

            session.add(
                PaymentEventRecord(
                    payment_id=payment_id,
                    event_type=f"payment.{to_status.value}",
                    from_status=from_status.value,
                    to_status=to_status.value,
                    data={k: v for k, v in fields.items() if v is not None},
                    occurred_at=now,
                )
            )
            return record.to_domain()

    async def list_payments(
        self,
        merchant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Payment]:
        stmt = select(PaymentRecord).where(PaymentRecord.merchant_id == merchant_id)
        if start is not None:
            stmt = stmt.where(PaymentRecord.created_at >= start)
        if end is not None:
            stmt = stmt.where(PaymentRecord.created_at < end)
        stmt = stmt.order_by(PaymentRecord.created_at)
        async with self._transaction("list_payments") as session:
            return [r.to_domain() for r in await session.scalars(stmt)]

    async def list_payments_by_status(
        self, status: PaymentStatus, created_before: Optional[datetime] = None
    ) -> list[Payment]:
        stmt = select(PaymentRecord).where(PaymentRecord.status == status.value)
        if created_before is not None:
            stmt = stmt.where(PaymentRecord.created_at < created_before)
        stmt = stmt.order_by(PaymentRecord.created_at)
        async with self._transaction("list_payments_by_status") as session:
            return [r.to_domain() for r in await session.scalars(stmt)]

    async def list_payment_events(self, payment_id: str) -> list[PaymentEvent]:
        stmt = (
            select(PaymentEventRecord)
            .where(PaymentEventRecord.payment_id == payment_id)
            .order_by(PaymentEventRecord.id)
        )
        async with self._transaction("list_payment_events") as session:
            return [r.to_domain() for r in await session.scalars(stmt)]

    # ---------------------------------------------------------------- refunds

    async def create_refund(self, refund: Refund, limit: int) -> Refund:
        async with self._transaction("create_refund") as session:
            # Touching the payment row takes its write lock, so concurrent
            # refunds for the same payment see each other's inserts.
            result = await session.execute(
                update(PaymentRecord)
                .where(
                    PaymentRecord.id == refund.payment_id,
                    PaymentRecord.status == PaymentStatus.SUCCESS.value,
                )
                .values(updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = await session.scalar(
                    select(PaymentRecord.status).where(PaymentRecord.id == refund.payment_id)
                )
                raise ConflictError(
                    refund.payment_id,
                    expected=PaymentStatus.SUCCESS,
                    current=_payment_status(current),
                )

            committed = await session.scalar(
                select(func.coalesce(func.sum(RefundRecord.amount), 0)).where(
                    RefundRecord.payment_id == refund.payment_id
                )
            )
            if committed + refund.amount > limit:
                raise ConflictError(
                    refund.payment_id, expected=f"<= {limit}", current=committed + refund.amount
                )

            record = RefundRecord(
                id=refund.id,
                payment_id=refund.payment_id,
                merchant_id=refund.merchant_id,
                amount=refund.amount,
                reason=refund.reason,
                status=RefundStatus.INITIATED.value,
                created_at=refund.created_at,
                completed_at=None,
            )
            session.add(record)
            await session.flush()
            return record.to_domain()

    async def complete_refund(self, refund_id: str) -> Refund:
        async with self._transaction("complete_refund") as session:
            result = await session.execute(
                update(RefundRecord)
                .where(
                    RefundRecord.id == refund_id,
                    RefundRecord.status == RefundStatus.INITIATED.value,
                )
                .values(status=RefundStatus.COMPLETED.value, completed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = await session.scalar(
                    select(RefundRecord.status).where(RefundRecord.id == refund_id)
                )
                raise ConflictError(
                    refund_id,
                    expected=RefundStatus.INITIATED,
                    current=RefundStatus(current) if current else None,
                )
            record = await session.get(RefundRecord, refund_id, populate_existing=True)
            return record.to_domain()

    async def get_refund(self, refund_id: str) -> Optional[Refund]:
        async with self._transaction("get_refund") as session:
            record = await session.get(RefundRecord, refund_id)
            return record.to_domain() if record else None

    async def list_refunds(self, payment_id: str) -> list[Refund]:
        stmt = (
            select(RefundRecord)
            .where(RefundRecord.payment_id == payment_id)
            .order_by(RefundRecord.created_at)
        )
        async with self._transaction("list_refunds") as session:
            return [r.to_domain() for r in await session.scalars(stmt)]


def _order_status(value: Optional[str]) -> Optional[OrderStatus]:
    return OrderStatus(value) if value else None


def _payment_status(value: Optional[str]) -> Optional[PaymentStatus]:
    return PaymentStatus(value) if value else None
