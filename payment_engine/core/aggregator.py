"""
Read-only ledger statistics.

Derived by scanning the merchant's payments; nothing here touches the
state machine. Results are consistent with the ledger at read time but a
payment settling mid-query may be counted as processing or as settled.

Policies:
- one transaction = one payment attempt
- refunded payments count as successful (they were collected)
- success_rate = successful * 100 // total (integer floor), 0 when empty
- daily buckets use the UTC calendar date of created_at
- date ranges are inclusive calendar days in UTC
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

import structlog

from payment_engine.core.errors import InvalidInput
from payment_engine.core.models import (
    DailyVolume,
    Order,
    Payment,
    PaymentStatus,
    TransactionRecord,
    TransactionStats,
    as_utc,
)
from payment_engine.core.retry import RetryPolicy
from payment_engine.core.store import LedgerStore

logger = structlog.get_logger(__name__)

SUCCESSFUL_STATUSES = frozenset({PaymentStatus.SUCCESS, PaymentStatus.REFUNDED})


def _day_bounds(
    start_date: Optional[date], end_date: Optional[date]
) -> tuple[Optional[datetime], Optional[datetime]]:
    if start_date and end_date and start_date > end_date:
        raise InvalidInput("start_date must not be after end_date", field="start_date")
    start = datetime.combine(start_date, time.min, tzinfo=timezone.utc) if start_date else None
    end = (
        datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
        if end_date
        else None
    )
    return start, end


class StatsAggregator:
    """Merchant-scoped statistics over the ledger."""

    def __init__(self, store: LedgerStore, retry_policy: Optional[RetryPolicy] = None):
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()

    async def _payments(
        self, merchant_id: str, start_date: Optional[date], end_date: Optional[date]
    ) -> list[Payment]:
        start, end = _day_bounds(start_date, end_date)
        return await self.retry_policy.call(
            "list_payments", self.store.list_payments, merchant_id, start, end
        )

    @staticmethod
    def summarize(payments: list[Payment]) -> TransactionStats:
        """Reduce a list of payments to statistics."""
        total = len(payments)
        successful = [p for p in payments if p.status in SUCCESSFUL_STATUSES]
        failed = [p for p in payments if p.status is PaymentStatus.FAILED]
        processing = total - len(successful) - len(failed)

        total_amount = sum(p.amount for p in payments)

        buckets: dict[date, list[Payment]] = defaultdict(list)
        for p in payments:
            buckets[as_utc(p.created_at).date()].append(p)

        daily = [
            DailyVolume(
                day=day,
                count=len(items),
                amount=sum(p.amount for p in items),
                successful=sum(1 for p in items if p.status in SUCCESSFUL_STATUSES),
            )
            for day, items in sorted(buckets.items())
        ]

        return TransactionStats(
            total_transactions=total,
            successful_transactions=len(successful),
            failed_transactions=len(failed),
            processing_transactions=processing,
            total_amount=total_amount,
            successful_amount=sum(p.amount for p in successful),
            failed_amount=sum(p.amount for p in failed),
            success_rate=(len(successful) * 100 // total) if total else 0,
            average_amount=round(total_amount / total, 2) if total else 0.0,
            daily_volume=daily,
        )

    async def get_stats(
        self,
        merchant_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> TransactionStats:
        payments = await self._payments(merchant_id, start_date, end_date)
        stats = self.summarize(payments)
        logger.info(
            "stats_computed",
            merchant_id=merchant_id,
            start_date=start_date.isoformat() if start_date else None,
            end_date=end_date.isoformat() if end_date else None,
            total_transactions=stats.total_transactions,
        )
        return stats

    async def list_transactions(
        self,
        merchant_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        status: Optional[PaymentStatus] = None,
    ) -> list[TransactionRecord]:
        """Order + payment view, newest first."""
        payments = await self._payments(merchant_id, start_date, end_date)
        if status is not None:
            payments = [p for p in payments if p.status is status]

        records = []
        orders: dict[str, Optional[Order]] = {}
        for p in payments:
            if p.order_id not in orders:
                orders[p.order_id] = await self.retry_policy.call(
                    "get_order", self.store.get_order, p.order_id
                )
            order = orders[p.order_id]
            if order is None:
                logger.warning("transaction_order_missing", payment_id=p.id, order_id=p.order_id)
                continue
            records.append(
                TransactionRecord(
                    payment_id=p.id,
                    order_id=order.id,
                    merchant_id=p.merchant_id,
                    customer_id=order.customer_id,
                    customer_email=order.customer_email,
                    description=order.description,
                    method=p.method,
                    amount=p.amount,
                    currency=p.currency,
                    status=p.status,
                    order_status=order.status,
                    instrument_summary=dict(p.instrument_summary),
                    error_message=p.error_message,
                    created_at=p.created_at,
                    updated_at=p.updated_at,
                )
            )
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records
