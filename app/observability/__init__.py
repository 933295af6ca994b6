"""
Observability module - Logging, Metrics, and Tracing.
"""

from app.observability.logging import get_logger, setup_logging, token_fingerprint
from app.observability.metrics import metrics, start_metrics_server
from app.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "setup_logging",
    "token_fingerprint",
    "metrics",
    "start_metrics_server",
    "setup_tracing",
]
