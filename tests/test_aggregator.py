"""
Tests for merchant statistics and the transaction listing.
"""
from datetime import date, datetime, timezone
from typing import Any

import pytest

from conftest import MERCHANT_ID, OTHER_MERCHANT_ID, seed_payment
from payment_engine.core.aggregator import StatsAggregator
from payment_engine.core.errors import InvalidInput
from payment_engine.core.models import OrderStatus, PaymentStatus
from payment_engine.core.retry import RetryPolicy


def _at(day: int, hour: int = 12) -> datetime:
    return datetime(2026, 3, day, hour, 0, tzinfo=timezone.utc)


@pytest.fixture
def aggregator(store: Any, fast_retry: RetryPolicy) -> StatsAggregator:
    return StatsAggregator(store, fast_retry)


class TestStats:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_three_payment_fixture(self, store: Any, aggregator: StatsAggregator) -> None:
        await seed_payment(store, 1000, PaymentStatus.SUCCESS)
        await seed_payment(store, 2000, PaymentStatus.SUCCESS)
        await seed_payment(store, 500, PaymentStatus.FAILED)

        stats = await aggregator.get_stats(MERCHANT_ID)

        assert stats.total_transactions == 3
        assert stats.successful_transactions == 2
        assert stats.failed_transactions == 1
        assert stats.processing_transactions == 0
        assert stats.total_amount == 3500
        assert stats.successful_amount == 3000
        assert stats.failed_amount == 500
        assert stats.success_rate == 66
        assert stats.average_amount == pytest.approx(1166.67)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_merchant(self, aggregator: StatsAggregator) -> None:
        stats = await aggregator.get_stats(MERCHANT_ID)

        assert stats.total_transactions == 0
        assert stats.success_rate == 0
        assert stats.average_amount == 0.0
        assert stats.daily_volume == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refunded_counts_as_successful(self, store: Any, aggregator: StatsAggregator) -> None:
        await seed_payment(store, 1000, PaymentStatus.REFUNDED)
        await seed_payment(store, 1000, PaymentStatus.PROCESSING)

        stats = await aggregator.get_stats(MERCHANT_ID)

        assert stats.total_transactions == 2
        assert stats.successful_transactions == 1
        assert stats.processing_transactions == 1
        assert stats.success_rate == 50

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_merchant_isolation(self, store: Any, aggregator: StatsAggregator) -> None:
        await seed_payment(store, 1000, PaymentStatus.SUCCESS)
        await seed_payment(store, 9999, PaymentStatus.SUCCESS, merchant_id=OTHER_MERCHANT_ID)

        stats = await aggregator.get_stats(MERCHANT_ID)

        assert stats.total_transactions == 1
        assert stats.total_amount == 1000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_date_range_is_inclusive(self, store: Any, aggregator: StatsAggregator) -> None:
        await seed_payment(store, 100, PaymentStatus.SUCCESS, created_at=_at(1))
        await seed_payment(store, 200, PaymentStatus.SUCCESS, created_at=_at(2, 0))
        await seed_payment(store, 300, PaymentStatus.FAILED, created_at=_at(3, 23))
        await seed_payment(store, 400, PaymentStatus.SUCCESS, created_at=_at(4))

        stats = await aggregator.get_stats(MERCHANT_ID, date(2026, 3, 2), date(2026, 3, 3))

        assert stats.total_transactions == 2
        assert stats.total_amount == 500
        assert [(d.day, d.count, d.amount, d.successful) for d in stats.daily_volume] == [
            (date(2026, 3, 2), 1, 200, 1),
            (date(2026, 3, 3), 1, 300, 0),
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_start_after_end_rejected(self, aggregator: StatsAggregator) -> None:
        with pytest.raises(InvalidInput):
            await aggregator.get_stats(MERCHANT_ID, date(2026, 3, 5), date(2026, 3, 1))

    @pytest.mark.unit
    def test_daily_buckets_are_sorted(self) -> None:
        class P:
            def __init__(self, day: int, amount: int, status: PaymentStatus):
                self.created_at = _at(day)
                self.amount = amount
                self.status = status

        stats = StatsAggregator.summarize(
            [P(5, 10, PaymentStatus.SUCCESS), P(1, 20, PaymentStatus.FAILED), P(5, 30, PaymentStatus.SUCCESS)]
        )

        assert [d.day for d in stats.daily_volume] == [date(2026, 3, 1), date(2026, 3, 5)]
        assert stats.daily_volume[1].amount == 40
        assert stats.daily_volume[1].successful == 2


class TestTransactions:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_newest_first_with_order_fields(self, store: Any, aggregator: StatsAggregator) -> None:
        older = await seed_payment(store, 100, PaymentStatus.SUCCESS, created_at=_at(1))
        newer = await seed_payment(store, 200, PaymentStatus.FAILED, created_at=_at(2))

        records = await aggregator.list_transactions(MERCHANT_ID)

        assert [r.payment_id for r in records] == [newer.id, older.id]
        assert records[0].order_status is OrderStatus.FAILED
        assert records[1].order_status is OrderStatus.SUCCESS
        assert records[1].instrument_summary == {"network": "Visa", "last4": "0366"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_filter(self, store: Any, aggregator: StatsAggregator) -> None:
        await seed_payment(store, 100, PaymentStatus.SUCCESS)
        failed = await seed_payment(store, 200, PaymentStatus.FAILED)

        records = await aggregator.list_transactions(MERCHANT_ID, status=PaymentStatus.FAILED)

        assert [r.payment_id for r in records] == [failed.id]
