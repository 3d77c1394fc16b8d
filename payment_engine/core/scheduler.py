"""
Settlement scheduler.

Simulates bank-side latency and drives each processing payment to a
terminal status exactly once:

1. schedule(payment, instrument) starts one delayed task per payment id
2. after the delay the task re-reads the payment; anything but processing
   is a no-op
3. the outcome strategy decides success or failed
4. compare-and-swap processing → terminal; the store moves the order in
   the same write
5. store failures retry with backoff; when the budget runs out the payment
   stays processing and the watchdog reports it as stuck

Raw instruments are held in memory only for the lifetime of the task.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Optional, Protocol, Union

import structlog

from payment_engine.config import Settings
from payment_engine.core.errors import ConflictError, SettlementExhausted, StorageUnavailable
from payment_engine.core.models import (
    CardInstrument,
    Payment,
    PaymentStatus,
    UpiInstrument,
    utcnow,
)
from payment_engine.core.retry import RetryPolicy
from payment_engine.core.store import LedgerStore
from payment_engine.core.validators import check_instrument
from payment_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

AnyInstrument = Union[CardInstrument, UpiInstrument]


# ============================================================================
# STRATEGIES
# ============================================================================


@dataclass(frozen=True)
class SettlementDecision:
    status: PaymentStatus
    error_message: Optional[str] = None


class OutcomeStrategy(Protocol):
    def decide(self, payment: Payment, instrument: AnyInstrument) -> SettlementDecision:
        ...


class ValidatorOutcome:
    """Settle by running the instrument validators."""

    def __init__(self, today: Optional[Callable[[], date]] = None):
        self._today = today

    def decide(self, payment: Payment, instrument: AnyInstrument) -> SettlementDecision:
        today = self._today() if self._today else None
        reason = check_instrument(instrument, today=today)
        if reason is None:
            return SettlementDecision(PaymentStatus.SUCCESS)
        return SettlementDecision(PaymentStatus.FAILED, error_message=reason)


class ForcedOutcome:
    """Deterministic test mode: skip validation, always return one outcome."""

    def __init__(self, outcome: Union[str, PaymentStatus]):
        status = PaymentStatus(outcome)
        if status not in (PaymentStatus.SUCCESS, PaymentStatus.FAILED):
            raise ValueError(f"Forced outcome must be success or failed, got {status.value}")
        self.status = status

    def decide(self, payment: Payment, instrument: AnyInstrument) -> SettlementDecision:
        if self.status is PaymentStatus.FAILED:
            return SettlementDecision(PaymentStatus.FAILED, error_message="forced_failure")
        return SettlementDecision(PaymentStatus.SUCCESS)


class RandomDelay:
    """Uniform latency in [low, high] seconds."""

    def __init__(self, low: float = 2.0, high: float = 5.0, rng: Optional[random.Random] = None):
        self.low = low
        self.high = high
        self._rng = rng or random.Random()

    def __call__(self) -> float:
        return self._rng.uniform(self.low, self.high)


class FixedDelay:
    def __init__(self, seconds: float = 0.0):
        self.seconds = seconds

    def __call__(self) -> float:
        return self.seconds


# ============================================================================
# SCHEDULER
# ============================================================================


class SettlementScheduler:
    """
    Owns one settlement task per processing payment.

    Tasks are independent of each other; the only ordering guarantee is the
    store's compare-and-swap on processing → terminal.
    """

    def __init__(
        self,
        store: LedgerStore,
        outcome: Optional[OutcomeStrategy] = None,
        delay: Optional[Callable[[], float]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_settlement_window_seconds: float = 60.0,
    ):
        self.store = store
        self.outcome = outcome or ValidatorOutcome()
        self.delay = delay or RandomDelay()
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_settlement_window = timedelta(seconds=max_settlement_window_seconds)
        self._jobs: dict[str, asyncio.Task] = {}
        self.exhausted: set[str] = set()

        logger.info(
            "settlement_scheduler_initialized",
            outcome=type(self.outcome).__name__,
            delay=type(self.delay).__name__,
            max_attempts=self.retry_policy.max_attempts,
        )

    @classmethod
    def from_settings(cls, store: LedgerStore, settings: Settings) -> "SettlementScheduler":
        """Pick delay and outcome strategies from configuration."""
        outcome: OutcomeStrategy
        if settings.deterministic_mode:
            delay: Callable[[], float] = FixedDelay(settings.deterministic_delay_seconds)
            if settings.forced_outcome:
                outcome = ForcedOutcome(settings.forced_outcome)
            else:
                outcome = ValidatorOutcome()
        else:
            delay = RandomDelay(
                settings.settlement_delay_min_seconds, settings.settlement_delay_max_seconds
            )
            outcome = ValidatorOutcome()
            if settings.forced_outcome:
                logger.warning(
                    "forced_outcome_ignored",
                    forced_outcome=settings.forced_outcome,
                    reason="deterministic_mode is off",
                )
        return cls(
            store,
            outcome=outcome,
            delay=delay,
            retry_policy=RetryPolicy.from_settings(settings),
            max_settlement_window_seconds=settings.max_settlement_window_seconds,
        )

    # -------------------------------------------------------------- lifecycle

    def schedule(self, payment: Payment, instrument: AnyInstrument) -> bool:
        """
        Start the settlement task for a processing payment.

        Returns False (and does nothing) when one is already running.
        """
        if payment.id in self._jobs:
            logger.warning("settlement_already_scheduled", payment_id=payment.id)
            return False

        delay = self.delay()
        task = asyncio.get_running_loop().create_task(
            self._run(payment.id, instrument, delay), name=f"settle:{payment.id}"
        )
        self._jobs[payment.id] = task
        logger.info(
            "settlement_scheduled",
            payment_id=payment.id,
            order_id=payment.order_id,
            delay_seconds=round(delay, 3),
        )
        return True

    def is_scheduled(self, payment_id: str) -> bool:
        return payment_id in self._jobs

    @property
    def pending(self) -> int:
        return len(self._jobs)

    async def wait_for(self, payment_id: str) -> None:
        """Wait until the payment's settlement task (if any) has finished."""
        task = self._jobs.get(payment_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def drain(self) -> None:
        """Wait for every scheduled settlement to finish."""
        while self._jobs:
            await asyncio.gather(*list(self._jobs.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding timers. Their payments stay processing."""
        tasks = list(self._jobs.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._jobs.clear()
        logger.info("settlement_scheduler_stopped", cancelled=len(tasks))

    # ----------------------------------------------------------------- settle

    async def _run(self, payment_id: str, instrument: AnyInstrument, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            await self.settle(payment_id, instrument)
        except asyncio.CancelledError:
            logger.info("settlement_timer_cancelled", payment_id=payment_id)
            raise
        except StorageUnavailable as e:
            exhausted = SettlementExhausted(payment_id, self.retry_policy.max_attempts)
            self.exhausted.add(payment_id)
            metrics.record_settlement_exhausted()
            logger.error(
                "settlement_exhausted",
                payment_id=payment_id,
                attempts=exhausted.attempts,
                error=str(e),
                error_code=exhausted.error_code,
            )
        except Exception:
            logger.exception("settlement_unexpected_error", payment_id=payment_id)
        finally:
            self._jobs.pop(payment_id, None)

    async def settle(self, payment_id: str, instrument: AnyInstrument) -> Optional[Payment]:
        """
        Apply the settlement outcome now.

        Returns the settled payment, or None when the payment was missing or
        had already left processing.
        """
        payment = await self.retry_policy.call("get_payment", self.store.get_payment, payment_id)
        if payment is None or payment.status is not PaymentStatus.PROCESSING:
            logger.info(
                "settlement_skipped",
                payment_id=payment_id,
                status=payment.status.value if payment else None,
            )
            return None

        decision = self.outcome.decide(payment, instrument)

        try:
            settled = await self.retry_policy.call(
                "update_payment_status",
                self.store.update_payment_status,
                payment_id,
                PaymentStatus.PROCESSING,
                decision.status,
                error_message=decision.error_message,
            )
        except ConflictError as e:
            metrics.record_settlement_conflict()
            logger.warning(
                "settlement_transition_conflict",
                payment_id=payment_id,
                attempted=decision.status.value,
                current=getattr(e.current, "value", e.current),
            )
            return None

        duration = (utcnow() - settled.created_at).total_seconds()
        metrics.record_settlement(settled.status.value, settled.method.value, duration)
        logger.info(
            "payment_settled",
            payment_id=settled.id,
            order_id=settled.order_id,
            status=settled.status.value,
            error_message=settled.error_message,
            duration_seconds=round(duration, 3),
        )
        return settled

    async def cancel(self, payment_id: str, reason: str = "settlement_cancelled") -> Payment:
        """
        Fail a processing payment through the same guarded path.

        Raises ConflictError when it has already settled.
        """
        failed = await self.retry_policy.call(
            "update_payment_status",
            self.store.update_payment_status,
            payment_id,
            PaymentStatus.PROCESSING,
            PaymentStatus.FAILED,
            error_message=reason,
        )
        task = self._jobs.pop(payment_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

        logger.info("settlement_cancelled", payment_id=payment_id, reason=reason)
        return failed

    # --------------------------------------------------------------- watchdog

    async def find_stuck_payments(self, now: Optional[datetime] = None) -> list[Payment]:
        """Processing payments older than the maximum settlement window."""
        cutoff = (now or utcnow()) - self.max_settlement_window
        stuck = await self.retry_policy.call(
            "list_payments_by_status",
            self.store.list_payments_by_status,
            PaymentStatus.PROCESSING,
            created_before=cutoff,
        )
        metrics.set_stuck_payments(len(stuck))
        return stuck
