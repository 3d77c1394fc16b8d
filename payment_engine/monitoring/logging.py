"""
Structured logging configuration.

structlog renders every event as one JSON line through the stdlib root
logger. Request handlers bind ``request_id`` and ``merchant_id`` as context
variables, so every event emitted while serving a request carries them.

Card data never reaches a log line: instrument fields that could hold a
PAN or CVV are masked by ``redact_instrument_fields`` before rendering.
"""
import logging
import sys
from typing import Any, Callable, Optional

import structlog
from pythonjsonlogger import jsonlogger

from payment_engine.config import Settings, get_settings

SENSITIVE_FIELDS = frozenset({"number", "card_number", "cvv", "instrument"})

NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "uvicorn.access")

EventDict = dict[str, Any]


def app_context(settings: Settings) -> Callable[[Any, str, EventDict], EventDict]:
    """Processor stamping the service name and environment on each event."""

    def processor(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", settings.app_name)
        event_dict.setdefault("env", settings.app_env)
        return event_dict

    return processor


def redact_instrument_fields(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Mask raw instrument values.

    A card number keeps its last four digits; anything else is replaced
    outright.
    """
    for key in SENSITIVE_FIELDS.intersection(event_dict):
        value = event_dict[key]
        if key in ("number", "card_number") and isinstance(value, str) and len(value) > 4:
            event_dict[key] = "*" * (len(value) - 4) + value[-4:]
        else:
            event_dict[key] = "[redacted]"
    return event_dict


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Safe to call more than once; the root handler is replaced each time.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            app_context(settings),
            redact_instrument_fields,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # structlog already produced JSON; the formatter only wraps stdlib records
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        deterministic_mode=settings.deterministic_mode,
    )
