"""
ai_billing - Observability Module

- Prometheus metrics for charges, reports and gate decisions
- OpenTelemetry spans around charging and reporting
- Structured JSON logging with billing context injection

Usage:
    from ai_billing.observability import get_logger, get_metrics, get_tracer

    logger = get_logger(__name__)
"""

from .metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
    metrics_endpoint,
)
from .tracing import (
    get_tracer,
    setup_tracing,
    shutdown_tracing,
)
from .logging import (
    StructuredLogger,
    TimedOperation,
    get_logger,
    setup_logging,
    LogContext,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "setup_metrics",
    "metrics_endpoint",
    # Tracing
    "get_tracer",
    "setup_tracing",
    "shutdown_tracing",
    # Logging
    "StructuredLogger",
    "TimedOperation",
    "get_logger",
    "setup_logging",
    "LogContext",
]
