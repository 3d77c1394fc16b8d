"""
Payment processing engine.

Sole entry point for state-changing operations. Orchestrates:
1. Validate input
2. Check the order is payable for this merchant
3. Claim the order's single in-flight slot (create_payment_if_absent)
4. Hand the payment to the settlement scheduler
5. Refunds bounded by the remaining refundable amount

The engine holds no locks. Idempotency and ordering come from the ledger
store's guarded writes; a lost compare-and-swap is translated into the
caller-facing error for the operation.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Union

import structlog
from pydantic import TypeAdapter, ValidationError

from payment_engine.config import Settings, get_settings
from payment_engine.core.errors import (
    ConflictError,
    DuplicatePayment,
    InvalidInput,
    InvalidTransition,
    NotFound,
)
from payment_engine.core.models import (
    SUPPORTED_CURRENCIES,
    CardInstrument,
    Instrument,
    Order,
    OrderSpec,
    OrderStatus,
    Payment,
    PaymentEvent,
    PaymentMethod,
    PaymentStatus,
    Refund,
    RefundStatus,
    UpiInstrument,
    new_id,
)
from payment_engine.core.retry import RetryPolicy
from payment_engine.core.scheduler import SettlementScheduler
from payment_engine.core.state_machine import PAYABLE_ORDER_STATUSES
from payment_engine.core.store import LedgerStore
from payment_engine.core.validators import require_valid, summarize_instrument
from payment_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

AnyInstrument = Union[CardInstrument, UpiInstrument]
_instrument_adapter: TypeAdapter = TypeAdapter(Instrument)


def _same_order(stored: Order, attempted: Order) -> bool:
    return (
        stored.merchant_id == attempted.merchant_id
        and stored.amount == attempted.amount
        and stored.currency == attempted.currency
    )


class PaymentEngine:
    """
    Order / payment / refund orchestrator.

    Every read and write is scoped to the calling merchant: an entity owned
    by another merchant is reported as NotFound.
    """

    def __init__(
        self,
        store: LedgerStore,
        scheduler: Optional[SettlementScheduler] = None,
        retry_policy: Optional[RetryPolicy] = None,
        validate_on_create: bool = False,
    ):
        self.store = store
        self.scheduler = scheduler or SettlementScheduler(store)
        self.retry_policy = retry_policy or RetryPolicy()
        self.validate_on_create = validate_on_create

        logger.info(
            "payment_engine_initialized",
            store=type(store).__name__,
            validate_on_create=validate_on_create,
        )

    @classmethod
    def from_settings(
        cls, store: LedgerStore, settings: Optional[Settings] = None
    ) -> "PaymentEngine":
        settings = settings or get_settings()
        return cls(
            store,
            scheduler=SettlementScheduler.from_settings(store, settings),
            retry_policy=RetryPolicy.from_settings(settings),
            validate_on_create=settings.validate_on_create,
        )

    async def _call(self, operation: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        return await self.retry_policy.call(operation, func, *args, **kwargs)

    # ================================================================= orders

    @staticmethod
    def _validate_order_spec(spec: OrderSpec) -> None:
        """
        Validate order parameters.

        Raises:
            InvalidInput: If amount or currency are not acceptable
        """
        if isinstance(spec.amount, bool) or not isinstance(spec.amount, int):
            raise InvalidInput("Amount must be an integer in minor units", field="amount")
        if spec.amount <= 0:
            raise InvalidInput("Amount must be positive", field="amount")
        if len(spec.currency) != 3 or not spec.currency.isalpha():
            raise InvalidInput("Currency must be 3-letter code", field="currency")
        if spec.currency not in SUPPORTED_CURRENCIES:
            raise InvalidInput(f"Unsupported currency: {spec.currency}", field="currency")

    async def create_order(
        self, merchant_id: str, spec: Union[OrderSpec, Mapping[str, Any]]
    ) -> Order:
        """Persist a new order in status created."""
        if not merchant_id:
            raise InvalidInput("Merchant ID is required", field="merchant_id")
        if not isinstance(spec, OrderSpec):
            try:
                spec = OrderSpec.model_validate(spec)
            except ValidationError as e:
                raise InvalidInput(f"Malformed order: {e.errors()[0]['msg']}") from e

        self._validate_order_spec(spec)

        order = Order(
            id=new_id("order"),
            merchant_id=merchant_id,
            amount=spec.amount,
            currency=spec.currency,
            customer_id=spec.customer_id,
            customer_email=spec.customer_email,
            description=spec.description,
        )
        try:
            order = await self._call("create_order", self.store.create_order, order)
        except ConflictError as e:
            # A retried insert whose first attempt committed finds its own row
            existing = await self._call("get_order", self.store.get_order, order.id)
            if existing is None or not _same_order(existing, order):
                raise InvalidTransition(
                    "order", "conflicting", OrderStatus.CREATED.value, order_id=order.id
                ) from e
            logger.info("order_create_recovered", order_id=order.id, merchant_id=merchant_id)
            order = existing

        metrics.record_order_created(order.currency)
        logger.info(
            "order_created",
            order_id=order.id,
            merchant_id=merchant_id,
            amount=order.amount,
            currency=order.currency,
        )
        return order

    async def get_order(self, merchant_id: str, order_id: str) -> Order:
        order = await self._call("get_order", self.store.get_order, order_id)
        if order is None or order.merchant_id != merchant_id:
            raise NotFound("order", order_id)
        return order

    async def list_orders(
        self, merchant_id: str, status: Optional[OrderStatus] = None
    ) -> list[Order]:
        return await self._call("list_orders", self.store.list_orders, merchant_id, status)

    # =============================================================== payments

    @staticmethod
    def _parse_instrument(
        method: Union[PaymentMethod, str], instrument: Union[AnyInstrument, Mapping[str, Any]]
    ) -> AnyInstrument:
        try:
            method = PaymentMethod(method)
        except ValueError as e:
            raise InvalidInput(f"Unsupported payment method: {method}", field="method") from e

        if isinstance(instrument, Mapping):
            payload = dict(instrument)
            payload.setdefault("method", method.value)
            try:
                instrument = _instrument_adapter.validate_python(payload)
            except ValidationError as e:
                raise InvalidInput(
                    f"Malformed {method.value} instrument: {e.errors()[0]['msg']}",
                    field="instrument",
                ) from e

        if not isinstance(instrument, (CardInstrument, UpiInstrument)):
            raise InvalidInput("Instrument must be a card or UPI payload", field="instrument")
        if instrument.method != method.value:
            raise InvalidInput(
                f"Instrument is {instrument.method} but method is {method.value}",
                field="method",
            )
        return instrument

    async def create_payment(
        self,
        merchant_id: str,
        order_id: str,
        method: Union[PaymentMethod, str],
        instrument: Union[AnyInstrument, Mapping[str, Any]],
    ) -> Payment:
        """
        Start a payment attempt and hand it to settlement.

        Returns immediately with the processing payment; never waits on
        settlement.

        Raises:
            InvalidInput: Malformed method/instrument
            ValidationFailed: Instrument rejected (only with validate_on_create)
            NotFound: Unknown order for this merchant
            InvalidTransition: Order already paid
            DuplicatePayment: Another attempt is in processing
        """
        parsed = self._parse_instrument(method, instrument)
        order = await self.get_order(merchant_id, order_id)

        if order.status not in PAYABLE_ORDER_STATUSES:
            if order.status is OrderStatus.PROCESSING:
                metrics.record_duplicate_payment()
                raise DuplicatePayment(order_id)
            raise InvalidTransition("order", order.status.value, OrderStatus.PROCESSING.value)

        if self.validate_on_create:
            require_valid(parsed)

        payment = Payment(
            id=new_id("pay"),
            order_id=order.id,
            merchant_id=merchant_id,
            method=PaymentMethod(parsed.method),
            amount=order.amount,
            currency=order.currency,
            instrument_summary=summarize_instrument(parsed),
        )

        try:
            payment = await self._call(
                "create_payment_if_absent", self.store.create_payment_if_absent, payment
            )
        except ConflictError as e:
            current = await self._call("get_order", self.store.get_order, order_id)
            if current is not None and current.status is OrderStatus.SUCCESS:
                raise InvalidTransition(
                    "order", current.status.value, OrderStatus.PROCESSING.value
                ) from e
            metrics.record_duplicate_payment()
            logger.warning(
                "duplicate_payment_rejected",
                order_id=order_id,
                merchant_id=merchant_id,
                active_payment_id=current.active_payment_id if current else None,
            )
            raise DuplicatePayment(order_id) from e

        self.scheduler.schedule(payment, parsed)

        metrics.record_payment_created(payment.method.value, payment.amount)
        logger.info(
            "payment_created",
            payment_id=payment.id,
            order_id=order_id,
            merchant_id=merchant_id,
            method=payment.method.value,
            amount=payment.amount,
        )
        return payment

    async def get_payment(self, merchant_id: str, payment_id: str) -> Payment:
        payment = await self._call("get_payment", self.store.get_payment, payment_id)
        if payment is None or payment.merchant_id != merchant_id:
            raise NotFound("payment", payment_id)
        return payment

    async def list_payments(self, merchant_id: str, order_id: str) -> list[Payment]:
        await self.get_order(merchant_id, order_id)
        return await self._call(
            "list_payments_by_order", self.store.list_payments_by_order, order_id
        )

    async def get_payment_history(self, merchant_id: str, payment_id: str) -> list[PaymentEvent]:
        await self.get_payment(merchant_id, payment_id)
        return await self._call(
            "list_payment_events", self.store.list_payment_events, payment_id
        )

    async def cancel_payment(
        self, merchant_id: str, payment_id: str, reason: str = "cancelled_by_merchant"
    ) -> Payment:
        """Fail a processing payment. Settled payments cannot be cancelled."""
        payment = await self.get_payment(merchant_id, payment_id)
        if payment.status is not PaymentStatus.PROCESSING:
            raise InvalidTransition("payment", payment.status.value, PaymentStatus.FAILED.value)
        try:
            return await self.scheduler.cancel(payment_id, reason=reason)
        except ConflictError as e:
            current = getattr(e.current, "value", str(e.current))
            raise InvalidTransition("payment", current, PaymentStatus.FAILED.value) from e

    # ================================================================ refunds

    @staticmethod
    def _refunded_amount(refunds: list[Refund]) -> int:
        return sum(r.amount for r in refunds if r.status is RefundStatus.COMPLETED)

    async def create_refund(
        self,
        merchant_id: str,
        payment_id: str,
        amount: Optional[int] = None,
        reason: str = "",
    ) -> Refund:
        """
        Refund all or part of a successful payment.

        ``amount`` defaults to the remaining refundable balance. When the
        payment becomes fully refunded it moves to refunded.
        """
        payment = await self.get_payment(merchant_id, payment_id)
        if payment.status is not PaymentStatus.SUCCESS:
            raise InvalidTransition("payment", payment.status.value, PaymentStatus.REFUNDED.value)

        refunds = await self._call("list_refunds", self.store.list_refunds, payment_id)
        # Initiated refunds hold their amount until completed
        remaining = payment.amount - sum(r.amount for r in refunds)
        if amount is None:
            amount = remaining
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidInput("Refund amount must be a positive integer", field="amount")
        if amount > remaining:
            raise InvalidInput(
                f"Refund amount {amount} exceeds refundable balance {remaining}",
                field="amount",
                remaining=remaining,
            )

        refund = Refund(
            id=new_id("rfnd"),
            payment_id=payment_id,
            merchant_id=merchant_id,
            amount=amount,
            reason=reason,
        )
        try:
            refund = await self._call(
                "create_refund", self.store.create_refund, refund, payment.amount
            )
        except ConflictError as e:
            current = await self._call("get_payment", self.store.get_payment, payment_id)
            if current is None or current.status is not PaymentStatus.SUCCESS:
                status = current.status.value if current else "missing"
                raise InvalidTransition("payment", status, PaymentStatus.REFUNDED.value) from e
            raise InvalidInput(
                "Refund amount exceeds refundable balance", field="amount"
            ) from e

        logger.info(
            "refund_initiated",
            refund_id=refund.id,
            payment_id=payment_id,
            amount=amount,
            reason=reason,
        )
        return await self._settle_refund(payment, refund)

    async def _settle_refund(self, payment: Payment, refund: Refund) -> Refund:
        refund = await self._call("complete_refund", self.store.complete_refund, refund.id)

        refunds = await self._call("list_refunds", self.store.list_refunds, payment.id)
        refunded = self._refunded_amount(refunds)
        fully_refunded = refunded >= payment.amount

        if fully_refunded:
            try:
                await self._call(
                    "update_payment_status",
                    self.store.update_payment_status,
                    payment.id,
                    PaymentStatus.SUCCESS,
                    PaymentStatus.REFUNDED,
                )
            except ConflictError:
                logger.warning("payment_already_refunded", payment_id=payment.id)

        metrics.record_refund(refund.amount, full=refund.amount == payment.amount)
        logger.info(
            "refund_completed",
            refund_id=refund.id,
            payment_id=payment.id,
            amount=refund.amount,
            refunded_total=refunded,
            payment_refunded=fully_refunded,
        )
        return refund

    async def get_refund(self, merchant_id: str, refund_id: str) -> Refund:
        refund = await self._call("get_refund", self.store.get_refund, refund_id)
        if refund is None or refund.merchant_id != merchant_id:
            raise NotFound("refund", refund_id)
        return refund

    async def list_refunds(self, merchant_id: str, payment_id: str) -> list[Refund]:
        await self.get_payment(merchant_id, payment_id)
        return await self._call("list_refunds", self.store.list_refunds, payment_id)
