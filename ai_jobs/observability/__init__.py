"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from ai_jobs.observability.logging import bind_context, clear_context, setup_logging
from ai_jobs.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from ai_jobs.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "bind_context",
    "clear_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
