"""
API routes for orders, payments, refunds and merchant reporting.

Engine errors are not caught here; the application-level handler turns
them into the error envelope with the status code each error carries.
"""
from datetime import date
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payment_engine.core.aggregator import StatsAggregator
from payment_engine.core.engine import PaymentEngine
from payment_engine.core.errors import InvalidInput
from payment_engine.core.models import OrderStatus, PaymentStatus
from payment_engine.monitoring.health import HealthCheck

from .schemas import (
    CancelPaymentRequest,
    CreateOrderRequest,
    CreatePaymentRequest,
    CreateRefundRequest,
    HealthCheckResponse,
    OrderResponse,
    PaymentEventResponse,
    PaymentResponse,
    RefundResponse,
    StatsResponse,
    TransactionResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
refund_router = APIRouter(prefix="/refunds", tags=["refunds"])
reporting_router = APIRouter(tags=["reporting"])
monitoring_router = APIRouter(tags=["monitoring"])


# ============================================================================
# DEPENDENCIES
# ============================================================================


def get_engine(request: Request) -> PaymentEngine:
    return request.app.state.engine


def get_aggregator(request: Request) -> StatsAggregator:
    return request.app.state.aggregator


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check


def get_merchant_id(request: Request) -> str:
    """
    Merchant identity from the configured header.

    Authentication happens upstream; the header value is trusted.
    """
    header = request.app.state.settings.merchant_header
    merchant_id = request.headers.get(header, "").strip()
    if not merchant_id:
        raise InvalidInput(f"Missing {header} header", field=header)
    structlog.contextvars.bind_contextvars(merchant_id=merchant_id)
    return merchant_id


# ============================================================================
# ORDERS
# ============================================================================


@order_router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
)
async def create_order(
    request: CreateOrderRequest,
    merchant_id: str = Depends(get_merchant_id),
    engine: PaymentEngine = Depends(get_engine),
) -> Any:
    return await engine.create_order(merchant_id, request.model_dump())


@order_router.get("", response_model=List[OrderResponse], summary="List orders")
async def list_orders(
    status_filter: Optional[OrderStatus] = Query(default=None, alias="status"),
    merchant_id: str = Depends(get_merchant_id),
    engine: PaymentEngine = Depends(get_engine),
) -> Any:
    return await engine.list_orders(merchant_id, status_filter)


@order_router.get("/{order_id}", response_model=OrderResponse, summary="Get an order")
async def get_order(
    order_id: str,
    merchant_id: str = Depends(get_merchant_id),
    engine: PaymentEngine = Depends(get_engine),
) -> Any:
    return await engine.get_order(merchant_id, order_id)


@order_router.post(
    "/{order_id}/payments",
    response_model=PaymentResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Pay for an order",
    description=(
        "Start a payment attempt. Returns immediately with status 'processing'; "
        "the outcome is applied asynchronously."
    ),
)
async def create_payment(
    order_id: str,
    request: CreatePaymentRequest,
    merchant_id: str = Depends(get_merchant_id),
    engine: PaymentEngine = Depends(get_engine),
) -> Any:
    logger.info(
        "api_create_payment_request",
        order_id=order_id,
        method=request.method.value,
    )
    return await engine.create_payment(merchant_id, order_id, request.method, request.instrument)


@order_router.get(
    "/{order_id}/payments",
    response_model=List[PaymentResponse],
    summary="List payment attempts for an order",
)
async def list_order_payments(
    order_id: str,
    merchant_id: str = Depends(get_merchant_id),
    engine: PaymentEngine = Depends(get_engine),
) -> Any:
    return await engine.list_payments(merchant_id, order_id)


# ============================================================================
# PAYMENTS
# ============================================================================


@payment_router.get("/{payment_id}", response_model=PaymentResponse, summary="Get a payment")
async def get_payment(
    payment_id: str,
    merchant_id: str = Depends(get_merchant_id),
    engine: PaymentEngine = Depends(get_engine),
) -> Any:
    return await engine.get_payment(merchant_id, payment_id)


@payment_router.get(
    "/{payment_id}/events",
    response_model=List[PaymentEventResponse],
    summary="Payment status history",
)
async def get_payment_events(
    payment_id: str,
    merchant_id: str = Depends(get_merchant_id),
    engine: PaymentEngine = Depends(get_engine),
) -> Any:
    return await engine.get_payment_history(merchant_id, payment_id)


@payment_router.post(
    "/{payment_id}/cancel",
    response_model=PaymentResponse,
    summary="Cancel a processing payment",
)
async def cancel_payment(
    payment_id: str,
    request: Optional[CancelPaymentRequest] = None,
    merchant_id: str = Depends(get_merchant_id),
    engine: PaymentEngine = Depends(get_engine),
) -> Any:
    reason = request.reason if request else "cancelled_by_merchant"
    return await engine.cancel_payment(merchant_id, payment_id, reason=reason)


@payment_router.post(
    "/{payment_id}/refunds",
    response_model=RefundResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Refund a payment",
    description="Create a full or partial refund for a successful payment",
)
async def create_refund(
    payment_id: str,
    request: CreateRefundRequest,
    merchant_id: str = Depends(get_merchant_id),
    engine: PaymentEngine = Depends(get_engine),
) -> Any:
    logger.info(
        "api_refund_payment_request",
        payment_id=payment_id,
        amount=request.amount,
        reason=request.reason,
    )
    return await engine.create_refund(
        merchant_id, payment_id, amount=request.amount, reason=request.reason
    )


@payment_router.get(
    "/{payment_id}/refunds",
    response_model=List[RefundResponse],
    summary="List refunds for a payment",
)
async def list_refunds(
    payment_id: str,
    merchant_id: str = Depends(get_merchant_id),
    engine: PaymentEngine = Depends(get_engine),
) -> Any:
    return await engine.list_refunds(merchant_id, payment_id)


@refund_router.get("/{refund_id}", response_model=RefundResponse, summary="Get a refund")
async def get_refund(
    refund_id: str,
    merchant_id: str = Depends(get_merchant_id),
    engine: PaymentEngine = Depends(get_engine),
) -> Any:
    return await engine.get_refund(merchant_id, refund_id)


# ============================================================================
# REPORTING
# ============================================================================


@reporting_router.get("/stats", response_model=StatsResponse, summary="Merchant statistics")
async def get_stats(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    merchant_id: str = Depends(get_merchant_id),
    aggregator: StatsAggregator = Depends(get_aggregator),
) -> Any:
    return await aggregator.get_stats(merchant_id, start_date, end_date)


@reporting_router.get(
    "/transactions",
    response_model=List[TransactionResponse],
    summary="Merchant transactions, newest first",
)
async def list_transactions(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    status_filter: Optional[PaymentStatus] = Query(default=None, alias="status"),
    merchant_id: str = Depends(get_merchant_id),
    aggregator: StatsAggregator = Depends(get_aggregator),
) -> Any:
    return await aggregator.list_transactions(merchant_id, start_date, end_date, status_filter)


# ============================================================================
# MONITORING
# ============================================================================


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Ledger reachability and settlement backlog",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get("/health/live", response_model=HealthCheckResponse, summary="Liveness probe")
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get("/health/ready", response_model=HealthCheckResponse, summary="Readiness probe")
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    # A settlement backlog still serves traffic
    if result["status"] == "unhealthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
