"""Database module for the SQL-backed ledger."""
from payment_engine.database.connection import (
    create_engine_from_settings,
    init_db,
    make_session_factory,
    open_sql_ledger,
)
from payment_engine.database.models import (
    Base,
    OrderRecord,
    PaymentEventRecord,
    PaymentRecord,
    RefundRecord,
)
from payment_engine.database.store import SQLAlchemyLedgerStore

__all__ = [
    "Base",
    "OrderRecord",
    "PaymentRecord",
    "RefundRecord",
    "PaymentEventRecord",
    "SQLAlchemyLedgerStore",
    "create_engine_from_settings",
    "make_session_factory",
    "init_db",
    "open_sql_ledger",
]
