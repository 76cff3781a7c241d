"""
Observability Module for the Billing Core

Provides:
- Structured logging with correlation IDs
- Metrics collection (numbering, reconciliation, activities, processing times)
"""

from core.observability.metrics import (
    MetricsCollector,
    get_metrics,
    record_activity_started,
    record_activity_completed,
    record_activity_failed,
    record_processing_time,
)

from core.observability.logging import (
    get_logger,
    configure_logging,
    CorrelationContext,
    with_correlation,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "record_activity_started",
    "record_activity_completed",
    "record_activity_failed",
    "record_processing_time",
    # Logging
    "get_logger",
    "configure_logging",
    "CorrelationContext",
    "with_correlation",
]
