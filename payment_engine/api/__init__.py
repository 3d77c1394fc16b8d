"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    CreateOrderRequest,
    CreatePaymentRequest,
    CreateRefundRequest,
    OrderResponse,
    PaymentResponse,
    RefundResponse,
    StatsResponse,
)

__all__ = [
    "app",
    "create_app",
    "CreateOrderRequest",
    "CreatePaymentRequest",
    "CreateRefundRequest",
    "OrderResponse",
    "PaymentResponse",
    "RefundResponse",
    "StatsResponse",
]
