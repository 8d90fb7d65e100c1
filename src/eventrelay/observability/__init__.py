"""
Observability

Tracing, metrics and structured logging built on OpenTelemetry.
"""

from .tracing import (
    init_tracing,
    get_tracer,
    get_trace_id,
    create_span,
    traced,
)
from .metrics import (
    init_metrics,
    get_meter,
    record_counter,
    record_histogram,
)
from .logging import configure_logging, StructuredFormatter

__all__ = [
    # Tracing
    "init_tracing",
    "get_tracer",
    "get_trace_id",
    "create_span",
    "traced",
    # Metrics
    "init_metrics",
    "get_meter",
    "record_counter",
    "record_histogram",
    # Logging
    "configure_logging",
    "StructuredFormatter",
]
