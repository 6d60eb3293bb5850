"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from pdfqueue.observability.logging import (
    bind_context,
    clear_context,
    setup_logging,
)
from pdfqueue.observability.metrics import (
    MetricsCollector,
    get_metrics,
    serve_metrics,
    setup_metrics,
)
from pdfqueue.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "bind_context",
    "clear_context",
    "setup_metrics",
    "get_metrics",
    "serve_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
