"""
Pydantic schemas for API request/response models.
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator

from payment_engine.core.models import (
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
)


# ============================================================================
# REQUESTS
# ============================================================================


class CreateOrderRequest(BaseModel):
    """Request schema for creating an order."""

    amount: StrictInt = Field(..., description="Order amount in minor units (paise, cents)")
    currency: str = Field(..., description="ISO 4217 currency code (e.g., INR)")
    customer_id: str = Field(default="", description="Merchant's customer reference")
    customer_email: str = Field(default="", description="Customer email")
    description: str = Field(default="", description="Free-form order description")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        return v.strip().upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "amount": 50000,
                    "currency": "INR",
                    "customer_id": "cust_42",
                    "customer_email": "buyer@example.com",
                    "description": "Annual plan",
                }
            ]
        }
    }


class CreatePaymentRequest(BaseModel):
    """Request schema for starting a payment attempt on an order."""

    method: PaymentMethod = Field(..., description="Payment method (card or upi)")
    instrument: Dict[str, Any] = Field(..., description="Card or UPI instrument payload")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "method": "card",
                    "instrument": {
                        "number": "4532015112830366",
                        "expiry_month": 12,
                        "expiry_year": 2030,
                        "cvv": "123",
                        "holder_name": "A Buyer",
                    },
                },
                {"method": "upi", "instrument": {"vpa": "buyer@okbank"}},
            ]
        }
    }


class CancelPaymentRequest(BaseModel):
    reason: str = Field(default="cancelled_by_merchant", max_length=255)


class CreateRefundRequest(BaseModel):
    """Request schema for refunding a payment."""

    amount: Optional[StrictInt] = Field(
        default=None, description="Partial refund amount (full remaining balance if omitted)"
    )
    reason: str = Field(default="", description="Refund reason")


# ============================================================================
# RESPONSES
# ============================================================================


class OrderResponse(BaseModel):
    """Response schema for an order."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    merchant_id: str
    amount: int
    currency: str
    customer_id: str
    customer_email: str
    description: str
    status: OrderStatus
    active_payment_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PaymentResponse(BaseModel):
    """Response schema for a payment attempt. Never carries raw card data."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    merchant_id: str
    method: PaymentMethod
    amount: int
    currency: str
    status: PaymentStatus
    instrument_summary: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PaymentEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    event_type: str
    from_status: Optional[PaymentStatus] = None
    to_status: PaymentStatus
    occurred_at: datetime
    data: Dict[str, Any] = Field(default_factory=dict)


class RefundResponse(BaseModel):
    """Response schema for a refund."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    payment_id: str
    merchant_id: str
    amount: int
    reason: str
    status: RefundStatus
    created_at: datetime
    completed_at: Optional[datetime] = None


class TransactionResponse(BaseModel):
    """One row of the merchant's transaction listing."""

    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    order_id: str
    merchant_id: str
    customer_id: str
    customer_email: str
    description: str
    method: PaymentMethod
    amount: int
    currency: str
    status: PaymentStatus
    order_status: OrderStatus
    instrument_summary: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class DailyVolumeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    day: date
    count: int
    amount: int
    successful: int


class StatsResponse(BaseModel):
    """Response schema for merchant statistics."""

    model_config = ConfigDict(from_attributes=True)

    total_transactions: int
    successful_transactions: int
    failed_transactions: int
    processing_transactions: int
    total_amount: int
    successful_amount: int
    failed_amount: int
    success_rate: int = Field(..., description="Integer percentage, floor(successful * 100 / total)")
    average_amount: float
    daily_volume: List[DailyVolumeResponse] = Field(default_factory=list)


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/degraded/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorBody(BaseModel):
    code: str
    message: str
    type: str


class ErrorResponse(BaseModel):
    """Error envelope returned for every engine error."""

    error: ErrorBody
