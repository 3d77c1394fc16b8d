"""
Monitoring and observability package.

Health checks depend on the settlement scheduler; import them from
``payment_engine.monitoring.health`` directly.
"""
from .logging import setup_logging
from .metrics import metrics

__all__ = ["metrics", "setup_logging"]
