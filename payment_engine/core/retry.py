"""
Bounded exponential backoff for ledger store calls.

Only StorageUnavailable is retried; every other error propagates on the
first attempt.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from payment_engine.config import Settings
from payment_engine.core.errors import StorageUnavailable
from payment_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 8.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.storage_retry_max_attempts,
            base_delay=settings.storage_retry_base_delay,
            max_delay=settings.storage_retry_max_delay,
        )

    def retrying(self, operation: str) -> AsyncRetrying:
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "storage_call_retrying",
                operation=operation,
                attempt=retry_state.attempt_number,
                max_attempts=self.max_attempts,
                error=str(error),
            )
            metrics.record_storage_retry(operation)

        return AsyncRetrying(
            retry=retry_if_exception_type(StorageUnavailable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            before_sleep=before_sleep,
            reraise=True,
        )

    async def call(
        self,
        operation: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Await ``func(*args, **kwargs)``, retrying on StorageUnavailable."""
        async for attempt in self.retrying(operation):
            with attempt:
                return await func(*args, **kwargs)
        raise AssertionError("unreachable")  # AsyncRetrying either returns or reraises
