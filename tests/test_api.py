"""
API tests over the ASGI app with an in-memory ledger.
"""
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Tuple

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from conftest import MERCHANT_ID, OTHER_MERCHANT_ID, card_payload, seed_payment
from payment_engine.api.main import create_app
from payment_engine.config import Settings
from payment_engine.core.models import PaymentStatus
from payment_engine.core.store import InMemoryLedgerStore
from payment_engine.monitoring.health import HealthCheck

ORDER = {
    "amount": 50000,
    "currency": "inr",
    "customer_id": "cust_1",
    "customer_email": "buyer@example.com",
    "description": "Annual plan",
}


@asynccontextmanager
async def _client_for(settings: Settings) -> AsyncIterator[Tuple[AsyncClient, FastAPI]]:
    app = create_app(settings=settings, store=InMemoryLedgerStore())
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-Merchant-ID": MERCHANT_ID},
    ) as ac:
        yield ac, app
    await app.state.scheduler.shutdown()


async def _pay(client: AsyncClient, **order: Any) -> dict:
    response = await client.post("/orders", json={**ORDER, **order})
    assert response.status_code == 201
    order_id = response.json()["id"]
    response = await client.post(
        f"/orders/{order_id}/payments", json={"method": "card", "instrument": card_payload()}
    )
    assert response.status_code == 202
    return response.json()


class TestOrderEndpoints:
    @pytest.mark.asyncio
    async def test_create_order(self, client: AsyncClient) -> None:
        response = await client.post("/orders", json=ORDER)

        assert response.status_code == 201
        body = response.json()
        assert body["id"].startswith("order_")
        assert body["merchant_id"] == MERCHANT_ID
        assert body["currency"] == "INR"
        assert body["status"] == "created"
        assert body["active_payment_id"] is None

    @pytest.mark.asyncio
    async def test_missing_merchant_header(self, client: AsyncClient) -> None:
        response = await client.post("/orders", json=ORDER, headers={"X-Merchant-ID": ""})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_input"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["abc", 12.5, 0, -100])
    async def test_invalid_amount(self, client: AsyncClient, amount: Any) -> None:
        response = await client.post("/orders", json={**ORDER, "amount": amount})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_input"

    @pytest.mark.asyncio
    async def test_foreign_merchant_gets_not_found(self, client: AsyncClient) -> None:
        order_id = (await client.post("/orders", json=ORDER)).json()["id"]

        response = await client.get(f"/orders/{order_id}", headers={"X-Merchant-ID": OTHER_MERCHANT_ID})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "order_not_found"

    @pytest.mark.asyncio
    async def test_list_orders_by_status(self, client: AsyncClient) -> None:
        await client.post("/orders", json=ORDER)
        await _pay(client)

        response = await client.get("/orders", params={"status": "created"})

        assert response.status_code == 200
        assert [o["status"] for o in response.json()] == ["created"]


class TestPaymentEndpoints:
    @pytest.mark.asyncio
    async def test_payment_settles_asynchronously(self, client: AsyncClient, api_app: FastAPI) -> None:
        payment = await _pay(client)

        assert payment["status"] == "processing"
        assert payment["instrument_summary"]["last4"] == "0366"
        assert "number" not in payment["instrument_summary"]

        await api_app.state.scheduler.drain()

        settled = (await client.get(f"/payments/{payment['id']}")).json()
        assert settled["status"] == "success"
        order = (await client.get(f"/orders/{payment['order_id']}")).json()
        assert order["status"] == "success"

        events = (await client.get(f"/payments/{payment['id']}/events")).json()
        assert [e["event_type"] for e in events] == ["payment.created", "payment.success"]

    @pytest.mark.asyncio
    async def test_duplicate_payment_rejected(self, test_settings: Settings) -> None:
        slow = test_settings.model_copy(update={"deterministic_delay_seconds": 5.0})
        async with _client_for(slow) as (client, _):
            payment = await _pay(client)

            response = await client.post(
                f"/orders/{payment['order_id']}/payments",
                json={"method": "upi", "instrument": {"vpa": "buyer@okbank"}},
            )

            assert response.status_code == 409
            assert response.json()["error"]["code"] == "duplicate_payment"
            payments = (await client.get(f"/orders/{payment['order_id']}/payments")).json()
            assert len(payments) == 1

    @pytest.mark.asyncio
    async def test_cancel_processing_payment(self, test_settings: Settings) -> None:
        slow = test_settings.model_copy(update={"deterministic_delay_seconds": 5.0})
        async with _client_for(slow) as (client, _):
            payment = await _pay(client)

            response = await client.post(f"/payments/{payment['id']}/cancel")

            assert response.status_code == 200
            assert response.json()["status"] == "failed"
            assert response.json()["error_message"] == "cancelled_by_merchant"

            again = await client.post(f"/payments/{payment['id']}/cancel", json={"reason": "late"})
            assert again.status_code == 409
            assert again.json()["error"]["code"] == "invalid_transition"

    @pytest.mark.asyncio
    async def test_invalid_card_fails_at_settlement(self, test_settings: Settings) -> None:
        validating = test_settings.model_copy(update={"forced_outcome": None})
        async with _client_for(validating) as (client, app):
            order_id = (await client.post("/orders", json=ORDER)).json()["id"]
            response = await client.post(
                f"/orders/{order_id}/payments",
                json={"method": "card", "instrument": card_payload(number="4532015112830367")},
            )
            assert response.status_code == 202

            await app.state.scheduler.drain()

            payment = (await client.get(f"/payments/{response.json()['id']}")).json()
            assert payment["status"] == "failed"
            assert payment["error_message"] == "invalid_card_number"

    @pytest.mark.asyncio
    async def test_malformed_instrument(self, client: AsyncClient) -> None:
        order_id = (await client.post("/orders", json=ORDER)).json()["id"]

        response = await client.post(
            f"/orders/{order_id}/payments", json={"method": "card", "instrument": {"vpa": "x@bank"}}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_input"

    @pytest.mark.asyncio
    async def test_unknown_method(self, client: AsyncClient) -> None:
        order_id = (await client.post("/orders", json=ORDER)).json()["id"]

        response = await client.post(
            f"/orders/{order_id}/payments", json={"method": "cheque", "instrument": {}}
        )

        assert response.status_code == 400


class TestRefundEndpoints:
    @pytest.mark.asyncio
    async def test_partial_then_full_refund(self, client: AsyncClient, api_app: FastAPI) -> None:
        payment = await _pay(client)
        await api_app.state.scheduler.drain()

        partial = await client.post(f"/payments/{payment['id']}/refunds", json={"amount": 20000})
        assert partial.status_code == 201
        assert partial.json()["status"] == "completed"
        assert (await client.get(f"/payments/{payment['id']}")).json()["status"] == "success"

        rest = await client.post(f"/payments/{payment['id']}/refunds", json={"reason": "return"})
        assert rest.status_code == 201
        assert rest.json()["amount"] == 30000
        assert (await client.get(f"/payments/{payment['id']}")).json()["status"] == "refunded"

        refunds = (await client.get(f"/payments/{payment['id']}/refunds")).json()
        assert [r["amount"] for r in refunds] == [20000, 30000]
        fetched = await client.get(f"/refunds/{partial.json()['id']}")
        assert fetched.status_code == 200

    @pytest.mark.asyncio
    async def test_refund_over_balance(self, client: AsyncClient, api_app: FastAPI) -> None:
        payment = await _pay(client)
        await api_app.state.scheduler.drain()

        response = await client.post(f"/payments/{payment['id']}/refunds", json={"amount": 50001})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_input"

    @pytest.mark.asyncio
    async def test_refund_requires_success(self, test_settings: Settings) -> None:
        slow = test_settings.model_copy(update={"deterministic_delay_seconds": 5.0})
        async with _client_for(slow) as (client, _):
            payment = await _pay(client)

            response = await client.post(f"/payments/{payment['id']}/refunds", json={})

            assert response.status_code == 409
            assert response.json()["error"]["code"] == "invalid_transition"


class TestReportingEndpoints:
    @pytest.mark.asyncio
    async def test_stats_and_transactions(self, client: AsyncClient, api_app: FastAPI) -> None:
        first = await _pay(client)
        await _pay(client, amount=10000)
        await api_app.state.scheduler.drain()

        stats = (await client.get("/stats")).json()
        assert stats["total_transactions"] == 2
        assert stats["successful_transactions"] == 2
        assert stats["total_amount"] == 60000
        assert stats["success_rate"] == 100
        assert len(stats["daily_volume"]) == 1

        other = (await client.get("/stats", headers={"X-Merchant-ID": OTHER_MERCHANT_ID})).json()
        assert other["total_transactions"] == 0

        transactions = (await client.get("/transactions")).json()
        assert len(transactions) == 2
        row = next(t for t in transactions if t["payment_id"] == first["id"])
        assert row["order_status"] == "success"
        assert row["customer_email"] == "buyer@example.com"
        assert transactions[0]["created_at"] >= transactions[1]["created_at"]

        filtered = (await client.get("/transactions", params={"status": "failed"})).json()
        assert filtered == []

    @pytest.mark.asyncio
    async def test_stats_bad_date_range(self, client: AsyncClient) -> None:
        response = await client.get(
            "/stats", params={"start_date": "2026-03-05", "end_date": "2026-03-01"}
        )

        assert response.status_code == 400


class TestMonitoringEndpoints:
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["ledger"]["status"] == "healthy"
        assert body["checks"]["settlement"]["stuck"] == 0

    @pytest.mark.asyncio
    async def test_liveness_and_readiness(self, client: AsyncClient) -> None:
        assert (await client.get("/health/live")).json()["status"] == "alive"
        assert (await client.get("/health/ready")).status_code == 200

    @pytest.mark.asyncio
    async def test_settlement_backlog_degrades_but_stays_ready(
        self, api_app: FastAPI, client: AsyncClient
    ) -> None:
        payment = await seed_payment(api_app.state.store, 1000, PaymentStatus.PROCESSING)
        api_app.state.scheduler.max_settlement_window = timedelta(microseconds=1)

        body = (await client.get("/health")).json()
        ready = await client.get("/health/ready")

        assert body["status"] == "degraded"
        assert body["checks"]["settlement"]["stuck_payment_ids"] == [payment.id]
        assert ready.status_code == 200
        assert ready.json()["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_readiness_fails_when_ledger_down(
        self, api_app: FastAPI, client: AsyncClient, flaky_store_factory: Any
    ) -> None:
        flaky = flaky_store_factory(api_app.state.store, {"ping": 1})
        api_app.state.health_check = HealthCheck(flaky, api_app.state.scheduler)

        response = await client.get("/health/ready")

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_metrics(self, client: AsyncClient) -> None:
        await client.post("/orders", json=ORDER)

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "orders_created_total" in response.text

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client: AsyncClient) -> None:
        response = await client.get("/", headers={"X-Request-ID": "req-123"})

        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["status"] == "operational"
