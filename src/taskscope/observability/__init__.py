"""Public observability primitives: structured logging and metrics."""

from taskscope.observability.logging import (
    LoggingConfig,
    LoggingHandle,
    configure_logging,
    correlation_scope,
    flush_logging,
    get_active_logging_handle,
    get_logger,
    shutdown_logging,
)
from taskscope.observability.metrics import GroupMetrics, MetricsRegistry

__all__ = [
    "GroupMetrics",
    "LoggingConfig",
    "LoggingHandle",
    "MetricsRegistry",
    "configure_logging",
    "correlation_scope",
    "flush_logging",
    "get_active_logging_handle",
    "get_logger",
    "shutdown_logging",
]
