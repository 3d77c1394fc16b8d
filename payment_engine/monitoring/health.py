"""
Health checks for liveness/readiness probes.

Checks:
- Ledger store connectivity
- Settlement backlog (processing payments past the settlement window)
"""
from typing import Any, Dict, Optional

import structlog

from payment_engine.core.errors import StorageUnavailable
from payment_engine.core.scheduler import SettlementScheduler
from payment_engine.core.store import LedgerStore

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for the ledger and the settlement scheduler.

    A stuck payment does not make the service unhealthy; it is reported so
    operators can act on it.
    """

    def __init__(self, store: LedgerStore, scheduler: Optional[SettlementScheduler] = None):
        self.store = store
        self.scheduler = scheduler

    async def check_ledger(self) -> Dict[str, Any]:
        """
        Check ledger store connectivity.

        Raises:
            HealthCheckError: If the store cannot be reached
        """
        try:
            await self.store.ping()
        except StorageUnavailable as e:
            logger.error("ledger_health_check_failed", error=str(e))
            raise HealthCheckError(f"Ledger health check failed: {e.message}") from e

        return {
            "status": "healthy",
            "service": "ledger",
            "message": "Ledger store reachable",
        }

    async def check_settlement(self) -> Dict[str, Any]:
        if self.scheduler is None:
            return {"status": "healthy", "service": "settlement", "pending": 0, "stuck": 0}

        try:
            stuck = await self.scheduler.find_stuck_payments()
        except StorageUnavailable as e:
            logger.error("settlement_health_check_failed", error=str(e))
            raise HealthCheckError(f"Settlement health check failed: {e.message}") from e

        return {
            "status": "degraded" if stuck else "healthy",
            "service": "settlement",
            "pending": self.scheduler.pending,
            "stuck": len(stuck),
            "stuck_payment_ids": [p.id for p in stuck][:20],
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status. Unhealthy if any check
            failed, degraded if any check reported degraded, else healthy.
        """
        checks: Dict[str, Any] = {}

        try:
            checks["ledger"] = await self.check_ledger()
        except HealthCheckError as e:
            checks["ledger"] = {"status": "unhealthy", "service": "ledger", "error": str(e)}

        try:
            checks["settlement"] = await self.check_settlement()
        except HealthCheckError as e:
            checks["settlement"] = {
                "status": "unhealthy",
                "service": "settlement",
                "error": str(e),
            }

        statuses = {check["status"] for check in checks.values()}
        if "unhealthy" in statuses:
            overall = "unhealthy"
        elif "degraded" in statuses:
            overall = "degraded"
        else:
            overall = "healthy"

        return {
            "status": overall,
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Application is running. Does not touch dependencies."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
