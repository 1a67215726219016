"""
Observability module - Logging, Metrics, and Tracing.
"""

from echo_ledger.observability.logging import get_logger, log_context, setup_logging
from echo_ledger.observability.metrics import metrics
from echo_ledger.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
