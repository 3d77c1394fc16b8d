"""
Race condition tests for concurrent payment, refund and settlement calls.

Tests that guarded writes keep the ledger consistent under concurrent load.
"""
import asyncio
from typing import Any

import pytest

from conftest import MERCHANT_ID, card_payload, seed_payment
from payment_engine.core.errors import ConflictError, DuplicatePayment, InvalidInput
from payment_engine.core.models import CardInstrument, OrderStatus, PaymentStatus
from payment_engine.core.scheduler import FixedDelay, ForcedOutcome, SettlementScheduler


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_payment_requests_same_order(
        self, store: Any, make_engine: Any
    ) -> None:
        """
        Concurrent payment attempts on one order.

        Exactly one payment is created; every other attempt is a DuplicatePayment.
        """
        engine = make_engine(store, delay=30)
        order = await engine.create_order(MERCHANT_ID, {"amount": 1000, "currency": "INR"})

        tasks = [
            engine.create_payment(MERCHANT_ID, order.id, "card", card_payload())
            for _ in range(10)
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        created = [r for r in results if not isinstance(r, Exception)]
        duplicates = [r for r in results if isinstance(r, DuplicatePayment)]
        assert len(created) == 1
        assert len(duplicates) == 9

        payments = await engine.list_payments(MERCHANT_ID, order.id)
        assert [p.id for p in payments] == [created[0].id]
        assert engine.scheduler.pending == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_payments_different_orders(
        self, store: Any, make_engine: Any
    ) -> None:
        engine = make_engine(store)
        orders = [
            await engine.create_order(MERCHANT_ID, {"amount": 100 + i, "currency": "INR"})
            for i in range(5)
        ]

        results = await asyncio.gather(
            *[engine.create_payment(MERCHANT_ID, o.id, "card", card_payload()) for o in orders]
        )
        await engine.scheduler.drain()

        assert len({p.id for p in results}) == 5
        for o in orders:
            assert (await engine.get_order(MERCHANT_ID, o.id)).status is OrderStatus.SUCCESS

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_refunds_never_exceed_amount(
        self, store: Any, make_engine: Any
    ) -> None:
        engine = make_engine(store)
        payment = await seed_payment(store, 50000, PaymentStatus.SUCCESS)

        results = await asyncio.gather(
            *[engine.create_refund(MERCHANT_ID, payment.id, amount=20000) for _ in range(5)],
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, InvalidInput)]
        assert len(succeeded) == 2
        assert len(rejected) == 3

        refunds = await engine.list_refunds(MERCHANT_ID, payment.id)
        assert sum(r.amount for r in refunds) == 40000
        assert (await engine.get_payment(MERCHANT_ID, payment.id)).status is PaymentStatus.SUCCESS

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_settlement_and_cancel_race(self, store: Any, fast_retry: Any) -> None:
        """
        Settlement and cancel hit the same payment at once.

        Exactly one transition out of processing is recorded.
        """
        payment = await seed_payment(store, 1000, PaymentStatus.PROCESSING)
        scheduler = SettlementScheduler(
            store, outcome=ForcedOutcome("success"), delay=FixedDelay(0), retry_policy=fast_retry
        )
        card = CardInstrument(**card_payload())

        results = await asyncio.gather(
            scheduler.settle(payment.id, card),
            scheduler.cancel(payment.id),
            return_exceptions=True,
        )

        final = await store.get_payment(payment.id)
        assert final.status in (PaymentStatus.SUCCESS, PaymentStatus.FAILED)

        events = await store.list_payment_events(payment.id)
        transitions = [e for e in events if e.from_status is PaymentStatus.PROCESSING]
        assert len(transitions) == 1

        # Order mirrors whichever side won
        order = await store.get_order(payment.order_id)
        assert order.status.value == final.status.value

        # The loser either skipped or reported a conflict
        settle_result, cancel_result = results
        if final.status is PaymentStatus.SUCCESS:
            assert isinstance(cancel_result, ConflictError)
        else:
            assert settle_result is None
