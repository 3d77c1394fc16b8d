"""Database engine and session setup for the SQL ledger."""
from typing import Tuple

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from payment_engine.config import Settings
from payment_engine.database.models import Base
from payment_engine.database.store import SQLAlchemyLedgerStore

logger = structlog.get_logger(__name__)


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    Build an async engine for the configured URL.

    Pool sizing only applies to server databases; SQLite uses the driver's
    own pool.
    """
    if settings.is_sqlite:
        return create_async_engine(settings.database_url, echo=settings.database_echo)
    return create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Entities are converted to domain objects before the session closes
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create the ledger tables if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def open_sql_ledger(settings: Settings) -> Tuple[AsyncEngine, SQLAlchemyLedgerStore]:
    """
    Create the engine, ensure the schema and wrap it in a ledger store.

    The caller owns the engine and must dispose of it.
    """
    engine = create_engine_from_settings(settings)
    try:
        await init_db(engine)
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        await engine.dispose()
        raise
    logger.info("database_initialized", url=engine.url.render_as_string(hide_password=True))
    return engine, SQLAlchemyLedgerStore(make_session_factory(engine))
