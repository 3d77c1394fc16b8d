"""Core payment processing logic."""
from .aggregator import StatsAggregator
from .engine import PaymentEngine
from .errors import (
    ConflictError,
    DuplicatePayment,
    InvalidInput,
    InvalidTransition,
    NotFound,
    PaymentEngineError,
    SettlementExhausted,
    StorageUnavailable,
    ValidationFailed,
)
from .scheduler import (
    FixedDelay,
    ForcedOutcome,
    RandomDelay,
    SettlementScheduler,
    ValidatorOutcome,
)
from .store import InMemoryLedgerStore, LedgerStore

__all__ = [
    "PaymentEngine",
    "SettlementScheduler",
    "StatsAggregator",
    "LedgerStore",
    "InMemoryLedgerStore",
    "ValidatorOutcome",
    "ForcedOutcome",
    "RandomDelay",
    "FixedDelay",
    "PaymentEngineError",
    "InvalidInput",
    "ValidationFailed",
    "NotFound",
    "DuplicatePayment",
    "InvalidTransition",
    "StorageUnavailable",
    "SettlementExhausted",
    "ConflictError",
]
