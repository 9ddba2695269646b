"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from jobengine.observability.logging import (
    bind_context,
    job_log_context,
    setup_logging,
    unbind_context,
)
from jobengine.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from jobengine.observability.tracing import get_tracer, setup_tracing, start_span

__all__ = [
    "setup_logging",
    "bind_context",
    "unbind_context",
    "job_log_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "start_span",
]
