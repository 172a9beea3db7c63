"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from buildqueue.observability.logging import clear_context, setup_logging
from buildqueue.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from buildqueue.observability.tracing import create_span, get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "clear_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "create_span",
]
