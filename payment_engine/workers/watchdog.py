"""
Settlement watchdog worker.

Periodically scans for payments that have been in processing longer than
the maximum settlement window. This happens when a settlement task ran out
of store retries, or when the process that owned the task restarted (raw
instruments are held in memory only, so the task cannot be rebuilt).

Stuck payments are always logged and counted. With ``--expire`` they are
also failed through the scheduler's guarded cancel path, which frees the
order for a new payment attempt.
"""
import argparse
import asyncio
import signal
from datetime import datetime
from typing import Any, List, Optional

import structlog

from payment_engine.config import Settings, get_settings
from payment_engine.core.errors import ConflictError, StorageUnavailable
from payment_engine.core.models import Payment, utcnow
from payment_engine.core.scheduler import SettlementScheduler
from payment_engine.database.connection import open_sql_ledger
from payment_engine.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)

EXPIRY_REASON = "settlement_timeout"


async def scan_once(
    scheduler: SettlementScheduler, expire: bool = False, now: Optional[datetime] = None
) -> List[Payment]:
    """
    Run one scan.

    Returns the stuck payments found. When ``expire`` is set, each one is
    failed unless it settled in the meantime.
    """
    now = now or utcnow()
    stuck = await scheduler.find_stuck_payments(now)
    expired = 0

    for payment in stuck:
        logger.warning(
            "settlement_stuck",
            payment_id=payment.id,
            order_id=payment.order_id,
            merchant_id=payment.merchant_id,
            age_seconds=round((now - payment.created_at).total_seconds(), 1),
            exhausted=payment.id in scheduler.exhausted,
        )
        if not expire:
            continue
        try:
            await scheduler.cancel(payment.id, reason=EXPIRY_REASON)
            expired += 1
            logger.info("stuck_payment_expired", payment_id=payment.id)
        except ConflictError:
            logger.info("stuck_payment_settled_concurrently", payment_id=payment.id)

    logger.info("watchdog_scan_completed", stuck=len(stuck), expired=expired)
    return stuck


async def start_watchdog(
    settings: Optional[Settings] = None,
    interval: Optional[float] = None,
    expire: Optional[bool] = None,
    once: bool = False,
) -> None:
    """
    Start the watchdog against the configured SQL ledger.

    Args:
        settings: Settings to use (default: environment)
        interval: Seconds between scans (default: watchdog_interval_seconds)
        expire: Fail stuck payments (default: watchdog_expire_stuck)
        once: Run a single scan and exit
    """
    settings = settings or get_settings()
    setup_logging(settings)
    interval = interval if interval is not None else settings.watchdog_interval_seconds
    expire = expire if expire is not None else settings.watchdog_expire_stuck

    db_engine, store = await open_sql_ledger(settings)
    scheduler = SettlementScheduler.from_settings(store, settings)

    logger.info("watchdog_starting", interval_seconds=interval, expire=expire, once=once)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("watchdog_shutdown_signal_received", signal=sig)
        running = False

    previous = {sig: signal.signal(sig, signal_handler) for sig in (signal.SIGINT, signal.SIGTERM)}

    try:
        while running:
            try:
                await scan_once(scheduler, expire=expire)
            except StorageUnavailable as e:
                # Keep running; the next scan retries
                logger.error("watchdog_scan_failed", error=str(e))

            if once:
                break

            remaining = interval
            while remaining > 0 and running:
                step = min(remaining, 1.0)
                await asyncio.sleep(step)
                remaining -= step
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        await db_engine.dispose()
        logger.info("watchdog_stopped")


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Settlement watchdog")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between scans")
    parser.add_argument(
        "--expire", action="store_true", default=None, help="Fail stuck payments"
    )
    parser.add_argument("--once", action="store_true", help="Run a single scan and exit")
    args = parser.parse_args(argv)

    asyncio.run(start_watchdog(interval=args.interval, expire=args.expire, once=args.once))


if __name__ == "__main__":
    main()
