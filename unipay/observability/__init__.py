"""
Observability module - Logging and Metrics.
"""

from unipay.observability.logging import get_logger, log_context, setup_logging
from unipay.observability.metrics import metrics

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
]
