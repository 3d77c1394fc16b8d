"""SQLAlchemy database models for the payment ledger."""
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from payment_engine.core.models import (
    Order,
    OrderStatus,
    Payment,
    PaymentEvent,
    PaymentMethod,
    PaymentStatus,
    Refund,
    RefundStatus,
    as_utc,
)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class OrderRecord(Base):
    """
    Orders table.

    ``active_payment_id`` is the single in-flight slot: it is claimed by a
    guarded UPDATE when a payment starts and released when it settles.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    active_payment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="order_positive_amount"),
        CheckConstraint(
            "status IN ('created', 'processing', 'success', 'failed')",
            name="order_valid_status",
        ),
        CheckConstraint("length(currency) = 3", name="order_valid_currency"),
        Index("idx_orders_merchant_status", "merchant_id", "status"),
    )

    def to_domain(self) -> Order:
        return Order(
            id=self.id,
            merchant_id=self.merchant_id,
            amount=self.amount,
            currency=self.currency,
            customer_id=self.customer_id,
            customer_email=self.customer_email,
            description=self.description,
            status=OrderStatus(self.status),
            active_payment_id=self.active_payment_id,
            created_at=as_utc(self.created_at),
            updated_at=as_utc(self.updated_at),
        )

    def __repr__(self) -> str:
        """String representation of OrderRecord."""
        return f"<OrderRecord(id={self.id}, amount={self.amount}, status={self.status})>"


class PaymentRecord(Base):
    """
    Payment attempts table.

    Stores the instrument summary only; raw card data is never persisted.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.id"), nullable=False, index=True
    )
    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    instrument_summary: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="payment_positive_amount"),
        CheckConstraint("method IN ('card', 'upi')", name="payment_valid_method"),
        CheckConstraint(
            "status IN ('processing', 'success', 'failed', 'refunded')",
            name="payment_valid_status",
        ),
        Index("idx_payments_merchant_created", "merchant_id", "created_at"),
        Index("idx_payments_status_created", "status", "created_at"),
    )

    def to_domain(self) -> Payment:
        return Payment(
            id=self.id,
            order_id=self.order_id,
            merchant_id=self.merchant_id,
            method=PaymentMethod(self.method),
            amount=self.amount,
            currency=self.currency,
            status=PaymentStatus(self.status),
            instrument_summary=dict(self.instrument_summary or {}),
            error_message=self.error_message,
            created_at=as_utc(self.created_at),
            updated_at=as_utc(self.updated_at),
        )

    def __repr__(self) -> str:
        """String representation of PaymentRecord."""
        return (
            f"<PaymentRecord(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class RefundRecord(Base):
    """Refunds table."""

    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    payment_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("payments.id"), nullable=False, index=True
    )
    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="refund_positive_amount"),
        CheckConstraint("status IN ('initiated', 'completed')", name="refund_valid_status"),
    )

    def to_domain(self) -> Refund:
        return Refund(
            id=self.id,
            payment_id=self.payment_id,
            merchant_id=self.merchant_id,
            amount=self.amount,
            reason=self.reason,
            status=RefundStatus(self.status),
            created_at=as_utc(self.created_at),
            completed_at=as_utc(self.completed_at) if self.completed_at else None,
        )


class PaymentEventRecord(Base):
    """
    Payment events audit trail table.

    One row per creation and per status transition. Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def to_domain(self) -> PaymentEvent:
        return PaymentEvent(
            payment_id=self.payment_id,
            event_type=self.event_type,
            from_status=PaymentStatus(self.from_status) if self.from_status else None,
            to_status=PaymentStatus(self.to_status),
            occurred_at=as_utc(self.occurred_at),
            data=dict(self.data or {}),
        )

    def __repr__(self) -> str:
        """String representation of PaymentEventRecord."""
        return (
            f"<PaymentEventRecord(id={self.id}, payment_id={self.payment_id}, "
            f"type={self.event_type})>"
        )
