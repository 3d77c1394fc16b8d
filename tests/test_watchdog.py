"""
Tests for the stuck-payment watchdog and health checks.
"""
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest

from conftest import seed_payment
from payment_engine.config import Settings
from payment_engine.core.models import OrderStatus, PaymentStatus, utcnow
from payment_engine.core.retry import RetryPolicy
from payment_engine.core.scheduler import FixedDelay, ForcedOutcome, SettlementScheduler
from payment_engine.monitoring.health import HealthCheck, HealthCheckError
from payment_engine.workers.watchdog import EXPIRY_REASON, scan_once, start_watchdog


def _scheduler(store: Any, retry: RetryPolicy) -> SettlementScheduler:
    return SettlementScheduler(
        store,
        outcome=ForcedOutcome("success"),
        delay=FixedDelay(0),
        retry_policy=retry,
        max_settlement_window_seconds=60,
    )


class TestScanOnce:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reports_without_expiring(self, store: Any, fast_retry: RetryPolicy) -> None:
        payment = await seed_payment(store, 1000, PaymentStatus.PROCESSING)
        scheduler = _scheduler(store, fast_retry)

        assert await scan_once(scheduler) == []

        stuck = await scan_once(scheduler, now=utcnow() + timedelta(minutes=5))

        assert [p.id for p in stuck] == [payment.id]
        assert (await store.get_payment(payment.id)).status is PaymentStatus.PROCESSING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expire_fails_stuck_payment(self, store: Any, fast_retry: RetryPolicy) -> None:
        payment = await seed_payment(store, 1000, PaymentStatus.PROCESSING)
        settled = await seed_payment(store, 2000, PaymentStatus.SUCCESS)
        scheduler = _scheduler(store, fast_retry)

        stuck = await scan_once(scheduler, expire=True, now=utcnow() + timedelta(minutes=5))

        assert [p.id for p in stuck] == [payment.id]
        expired = await store.get_payment(payment.id)
        assert expired.status is PaymentStatus.FAILED
        assert expired.error_message == EXPIRY_REASON
        order = await store.get_order(payment.order_id)
        assert order.status is OrderStatus.FAILED
        assert order.active_payment_id is None
        assert (await store.get_payment(settled.id)).status is PaymentStatus.SUCCESS

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_single_pass_against_sql_ledger(self, tmp_path: Path, test_settings: Settings) -> None:
        settings = test_settings.model_copy(
            update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"}
        )

        await start_watchdog(settings, once=True, expire=True)

        assert (tmp_path / "ledger.db").exists()


class TestHealthCheck:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_healthy(self, store: Any, fast_retry: RetryPolicy) -> None:
        result = await HealthCheck(store, _scheduler(store, fast_retry)).check_all()

        assert result["status"] == "healthy"
        assert result["checks"]["ledger"]["status"] == "healthy"
        assert result["checks"]["settlement"]["pending"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ledger_down_is_unhealthy(
        self, store: Any, fast_retry: RetryPolicy, flaky_store_factory: Any
    ) -> None:
        flaky = flaky_store_factory(store, {"ping": 1})
        health = HealthCheck(flaky, _scheduler(flaky, fast_retry))

        with pytest.raises(HealthCheckError):
            await health.check_ledger()

        flaky.failures["ping"] = 1
        result = await health.check_all()
        assert result["status"] == "unhealthy"
        assert result["checks"]["ledger"]["status"] == "unhealthy"
        assert result["checks"]["settlement"]["status"] == "healthy"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stuck_payments_degrade_settlement(
        self, store: Any, fast_retry: RetryPolicy
    ) -> None:
        payment = await seed_payment(store, 1000, PaymentStatus.PROCESSING)
        scheduler = SettlementScheduler(
            store,
            outcome=ForcedOutcome("success"),
            delay=FixedDelay(0),
            retry_policy=fast_retry,
            max_settlement_window_seconds=0.000001,
        )

        result = await HealthCheck(store, scheduler).check_all()

        assert result["status"] == "degraded"
        assert result["checks"]["settlement"]["status"] == "degraded"
        assert result["checks"]["settlement"]["stuck_payment_ids"] == [payment.id]


class TestSettings:
    @pytest.mark.unit
    def test_empty_forced_outcome_is_unset(self) -> None:
        assert Settings(forced_outcome="").forced_outcome is None
        assert Settings(forced_outcome=" FAILED ").forced_outcome == "failed"

    @pytest.mark.unit
    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValueError):
            Settings(log_level="LOUD")

    @pytest.mark.unit
    def test_delay_bounds(self) -> None:
        with pytest.raises(ValueError):
            Settings(settlement_delay_min_seconds=5, settlement_delay_max_seconds=1)

    @pytest.mark.unit
    def test_sqlite_detection(self) -> None:
        assert Settings(database_url="sqlite+aiosqlite:///:memory:").is_sqlite
        assert not Settings(database_url="postgresql+asyncpg://u:p@db/ledger").is_sqlite
