"""
Main FastAPI application.

Payment processing API with:
- Merchant-scoped order, payment and refund routes
- Engine error envelope with per-error status codes
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from payment_engine import __version__
from payment_engine.config import Settings, get_settings
from payment_engine.core.aggregator import StatsAggregator
from payment_engine.core.engine import PaymentEngine
from payment_engine.core.errors import InvalidInput, PaymentEngineError
from payment_engine.core.retry import RetryPolicy
from payment_engine.core.store import LedgerStore
from payment_engine.database.connection import open_sql_ledger
from payment_engine.monitoring.health import HealthCheck
from payment_engine.monitoring.logging import setup_logging

from .routes import (
    monitoring_router,
    order_router,
    payment_router,
    refund_router,
    reporting_router,
)

logger = structlog.get_logger(__name__)


def _wire_services(app: FastAPI, store: LedgerStore, settings: Settings) -> None:
    engine = PaymentEngine.from_settings(store, settings)
    app.state.store = store
    app.state.engine = engine
    app.state.scheduler = engine.scheduler
    app.state.aggregator = StatsAggregator(store, RetryPolicy.from_settings(settings))
    app.state.health_check = HealthCheck(store, engine.scheduler)


def create_app(settings: Optional[Settings] = None, store: Optional[LedgerStore] = None) -> FastAPI:
    """
    Build the application.

    With an explicit ``store`` the services are wired immediately (tests,
    embedding). Without one, the SQL ledger is created on startup from
    ``settings.database_url``.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            deterministic_mode=settings.deterministic_mode,
        )

        db_engine = None
        if not hasattr(app.state, "engine"):
            db_engine, sql_store = await open_sql_ledger(settings)
            _wire_services(app, sql_store, settings)

        yield

        # Shutdown
        logger.info("application_shutdown", pending_settlements=app.state.scheduler.pending)
        await app.state.scheduler.shutdown()
        if db_engine is not None:
            await db_engine.dispose()
            logger.info("database_connections_closed")

    app = FastAPI(
        title="Payment Processing Engine",
        description=(
            "Order, payment and refund ledger with asynchronous settlement. "
            "Features: single in-flight payment per order, guarded state "
            "transitions, refund bounds, and merchant statistics."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings
    if store is not None:
        _wire_services(app, store, settings)

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            duration = time.time() - start_time
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=duration,
            )
            return response

        except Exception as e:
            duration = time.time() - start_time
            logger.error("request_failed", error=str(e), duration_seconds=duration)
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(PaymentEngineError)
    async def engine_error_handler(request: Request, exc: PaymentEngineError) -> JSONResponse:
        log = logger.error if exc.http_status >= 500 else logger.info
        log(
            "engine_error",
            error_code=exc.error_code,
            error=exc.message,
            path=request.url.path,
            **{k: v for k, v in exc.metadata.items() if v is not None},
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        error = InvalidInput(
            f"{location}: {first.get('msg', 'invalid request')}" if location else "Invalid request",
            field=location or None,
        )
        return JSONResponse(status_code=error.http_status, content=error.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled exceptions.
        """
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                    "type": "InternalError",
                }
            },
        )

    # Include routers
    app.include_router(order_router)
    app.include_router(payment_router)
    app.include_router(refund_router)
    app.include_router(reporting_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "deterministic_mode": settings.deterministic_mode,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "payment_engine.api.main:app",
        host=_settings.api_host,
        port=_settings.api_port,
        reload=_settings.debug,
        log_level=_settings.log_level.lower(),
    )
