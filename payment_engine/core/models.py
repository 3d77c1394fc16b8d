"""
Domain types for orders, payments and refunds.

Entities are plain dataclasses owned by the ledger store; stores hand out
copies, so mutating a returned object never changes the ledger. Instruments
are pydantic models forming a tagged union on ``method``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


# ISO 4217 codes accepted for orders
SUPPORTED_CURRENCIES = frozenset(
    {
        "AED", "AUD", "BDT", "BRL", "CAD", "CHF", "CNY", "CZK", "DKK", "EUR",
        "GBP", "HKD", "IDR", "ILS", "INR", "JPY", "KRW", "LKR", "MXN", "MYR",
        "NOK", "NPR", "NZD", "PHP", "PKR", "PLN", "QAR", "SAR", "SEK", "SGD",
        "THB", "TRY", "TWD", "USD", "VND", "ZAR",
    }
)


class OrderStatus(str, Enum):
    """
    Order lifecycle.

    created → processing → success
                  ↓
                failed → processing (retry with a new payment)
    """

    CREATED = "created"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    """
    Payment lifecycle.

    processing → success → refunded
         ↓
       failed
    """

    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.FAILED, PaymentStatus.REFUNDED)

    @property
    def is_settled(self) -> bool:
        return self is not PaymentStatus.PROCESSING


class PaymentMethod(str, Enum):
    CARD = "card"
    UPI = "upi"


class RefundStatus(str, Enum):
    INITIATED = "initiated"
    COMPLETED = "completed"


class CardNetwork(str, Enum):
    VISA = "Visa"
    MASTERCARD = "Mastercard"
    AMEX = "Amex"
    RUPAY = "RuPay"
    UNKNOWN = "Unknown"


# ============================================================================
# INSTRUMENTS (tagged union on method)
# ============================================================================


class CardInstrument(BaseModel):
    """Raw card details. Held in memory for settlement, never persisted."""

    model_config = ConfigDict(frozen=True)

    method: Literal["card"] = "card"
    number: str = Field(..., min_length=1, max_length=32)
    expiry_month: int
    expiry_year: int
    cvv: str = Field(..., min_length=1, max_length=8)
    holder_name: Optional[str] = None

    @field_validator("number")
    @classmethod
    def require_digits(cls, v: str) -> str:
        if not any("0" <= ch <= "9" for ch in v):
            raise ValueError("card number must contain digits")
        return v

    def __repr__(self) -> str:
        return f"CardInstrument(last4={''.join(c for c in self.number if '0' <= c <= '9')[-4:]})"

    __str__ = __repr__


class UpiInstrument(BaseModel):
    """UPI virtual payment address."""

    model_config = ConfigDict(frozen=True)

    method: Literal["upi"] = "upi"
    vpa: str = Field(..., min_length=1, max_length=255)


Instrument = Annotated[Union[CardInstrument, UpiInstrument], Field(discriminator="method")]


class OrderSpec(BaseModel):
    """Order creation request."""

    amount: StrictInt
    currency: str
    customer_id: str = ""
    customer_email: str = ""
    description: str = ""

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.strip().upper()


# ============================================================================
# LEDGER ENTITIES
# ============================================================================


@dataclass
class Order:
    id: str
    merchant_id: str
    amount: int
    currency: str
    customer_id: str = ""
    customer_email: str = ""
    description: str = ""
    status: OrderStatus = OrderStatus.CREATED
    active_payment_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Payment:
    id: str
    order_id: str
    merchant_id: str
    method: PaymentMethod
    amount: int
    currency: str
    status: PaymentStatus = PaymentStatus.PROCESSING
    instrument_summary: dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Refund:
    id: str
    payment_id: str
    merchant_id: str
    amount: int
    reason: str = ""
    status: RefundStatus = RefundStatus.INITIATED
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentEvent:
    """Audit trail row. Immutable once written."""

    payment_id: str
    event_type: str
    from_status: Optional[PaymentStatus]
    to_status: PaymentStatus
    occurred_at: datetime = field(default_factory=utcnow)
    data: dict[str, Any] = field(default_factory=dict)


# ============================================================================
# REPORTING VIEWS
# ============================================================================


@dataclass(frozen=True)
class TransactionRecord:
    """Order + payment joined for reporting. Recomputed on every query."""

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
    instrument_summary: dict[str, Any]
    error_message: Optional[str]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class DailyVolume:
    day: date
    count: int
    amount: int
    successful: int


@dataclass(frozen=True)
class TransactionStats:
    total_transactions: int
    successful_transactions: int
    failed_transactions: int
    processing_transactions: int
    total_amount: int
    successful_amount: int
    failed_amount: int
    success_rate: int
    average_amount: float
    daily_volume: list[DailyVolume]
