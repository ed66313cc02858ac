"""Observability utilities for logging, metrics, and tracing."""

from .exposition import CONTENT_TYPE, register_metrics_endpoint, render
from .logging import bind_correlation_id, configure_logging, reset_correlation_id
from .metrics import Counter, Histogram, HttpMetrics, MetricRegistry, Timer
from .middleware import InstrumentationMiddleware
from .routes import UNMATCHED_ROUTE, RouteTable
from .tracing import SpanLifecycleManager, SpanRecord, SpanStatus, setup_tracing

__all__ = [
    "CONTENT_TYPE",
    "Counter",
    "Histogram",
    "HttpMetrics",
    "InstrumentationMiddleware",
    "MetricRegistry",
    "RouteTable",
    "SpanLifecycleManager",
    "SpanRecord",
    "SpanStatus",
    "Timer",
    "UNMATCHED_ROUTE",
    "bind_correlation_id",
    "configure_logging",
    "register_metrics_endpoint",
    "render",
    "reset_correlation_id",
    "setup_tracing",
]
