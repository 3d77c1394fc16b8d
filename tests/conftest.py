"""
Pytest configuration and fixtures.
"""
import inspect
from datetime import date, datetime
from typing import Any, AsyncGenerator, Dict, Optional

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from payment_engine.api.main import create_app
from payment_engine.config import Settings
from payment_engine.core.errors import StorageUnavailable
from payment_engine.core.engine import PaymentEngine
from payment_engine.core.models import (
    Order,
    Payment,
    PaymentMethod,
    PaymentStatus,
    new_id,
)
from payment_engine.core.retry import RetryPolicy
from payment_engine.core.scheduler import FixedDelay, ForcedOutcome, SettlementScheduler
from payment_engine.core.store import InMemoryLedgerStore

MERCHANT_ID = "merchant_test"
OTHER_MERCHANT_ID = "merchant_other"
VISA = "4532015112830366"


class FlakyLedgerStore:
    """
    Wraps a store and raises StorageUnavailable on the first N calls of
    the named operations.
    """

    def __init__(self, inner: Any, failures: Optional[Dict[str, int]] = None):
        self.inner = inner
        self.failures = dict(failures or {})
        self.calls: Dict[str, int] = {}

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self.inner, name)
        if not inspect.iscoroutinefunction(attr):
            return attr

        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            self.calls[name] = self.calls.get(name, 0) + 1
            if self.failures.get(name, 0) > 0:
                self.failures[name] -= 1
                raise StorageUnavailable(f"{name} unavailable")
            return await attr(*args, **kwargs)

        return wrapper


def card_payload(number: str = VISA, cvv: str = "123", **overrides: Any) -> Dict[str, Any]:
    payload = {
        "number": number,
        "expiry_month": 12,
        "expiry_year": date.today().year + 3,
        "cvv": cvv,
        "holder_name": "Test Buyer",
    }
    payload.update(overrides)
    return payload


async def seed_payment(
    store: InMemoryLedgerStore,
    amount: int,
    status: PaymentStatus,
    merchant_id: str = MERCHANT_ID,
    created_at: Optional[datetime] = None,
    method: PaymentMethod = PaymentMethod.CARD,
) -> Payment:
    """Insert an order plus one payment and drive it to ``status``."""
    order = Order(id=new_id("order"), merchant_id=merchant_id, amount=amount, currency="INR")
    if created_at is not None:
        order.created_at = created_at
    await store.create_order(order)

    payment = Payment(
        id=new_id("pay"),
        order_id=order.id,
        merchant_id=merchant_id,
        method=method,
        amount=amount,
        currency="INR",
        instrument_summary={"network": "Visa", "last4": "0366"},
    )
    if created_at is not None:
        payment.created_at = created_at
        payment.updated_at = created_at
    payment = await store.create_payment_if_absent(payment)

    if status is PaymentStatus.PROCESSING:
        return payment

    settled = PaymentStatus.FAILED if status is PaymentStatus.FAILED else PaymentStatus.SUCCESS
    payment = await store.update_payment_status(payment.id, PaymentStatus.PROCESSING, settled)
    if status is PaymentStatus.REFUNDED:
        payment = await store.update_payment_status(
            payment.id, PaymentStatus.SUCCESS, PaymentStatus.REFUNDED
        )
    return payment


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        app_name="payment-engine-test",
        app_env="test",
        log_level="DEBUG",
        database_url="sqlite+aiosqlite:///:memory:",
        deterministic_mode=True,
        forced_outcome="success",
        deterministic_delay_seconds=0.0,
        storage_retry_max_attempts=3,
        storage_retry_base_delay=0.0,
        storage_retry_max_delay=0.0,
        max_settlement_window_seconds=60,
    )


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def flaky_store_factory() -> Any:
    return FlakyLedgerStore


@pytest_asyncio.fixture
async def make_engine(fast_retry: RetryPolicy) -> AsyncGenerator[Any, Any]:
    """Factory for engines over a given store with injected strategies."""
    created = []

    def factory(
        store: Any,
        outcome: Any = None,
        delay: float = 0.0,
        validate_on_create: bool = False,
    ) -> PaymentEngine:
        scheduler = SettlementScheduler(
            store,
            outcome=outcome or ForcedOutcome("success"),
            delay=FixedDelay(delay),
            retry_policy=fast_retry,
        )
        engine = PaymentEngine(
            store,
            scheduler=scheduler,
            retry_policy=fast_retry,
            validate_on_create=validate_on_create,
        )
        created.append(engine)
        return engine

    yield factory
    for engine in created:
        await engine.scheduler.shutdown()


@pytest_asyncio.fixture
async def engine(store: InMemoryLedgerStore, make_engine: Any) -> PaymentEngine:
    """Engine over the in-memory store; every settlement succeeds immediately."""
    return make_engine(store)


@pytest_asyncio.fixture
async def order(engine: PaymentEngine) -> Order:
    return await engine.create_order(
        MERCHANT_ID,
        {
            "amount": 50000,
            "currency": "INR",
            "customer_id": "cust_1",
            "customer_email": "buyer@example.com",
            "description": "Annual plan",
        },
    )


@pytest.fixture
def api_app(test_settings: Settings) -> FastAPI:
    """Application wired to an in-memory ledger."""
    return create_app(settings=test_settings, store=InMemoryLedgerStore())


@pytest_asyncio.fixture
async def client(api_app: FastAPI) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    transport = ASGITransport(app=api_app)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers={"X-Merchant-ID": MERCHANT_ID}
    ) as ac:
        yield ac
    await api_app.state.scheduler.shutdown()
