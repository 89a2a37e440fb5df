"""dbtelemetry structured logging.

Classes:
    StructuredLogger: Main structured logging interface
    PerformanceLogger: Operation timing and aggregates
    LoggerFactory: Logger creation and configuration

Example:
    >>> from dbtelemetry.logging import get_logger, get_performance_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Connection target changed", server="db01")
    >>>
    >>> perf_logger = get_performance_logger("monitoring")
    >>> with perf_logger.measure("get_database_health"):
    ...     pass
"""

from .factory import (
    LoggerFactory,
    configure_logging,
    get_factory,
    get_logger,
    get_performance_logger,
    shutdown_logging,
)
from .performance import PerformanceLogger, PerformanceMetrics, TimingContext, TimingMetrics
from .structured import ContextFilter, LogContext, StructuredLogger

__all__ = [
    # Factory and configuration
    "LoggerFactory",
    "configure_logging",
    "get_factory",
    "get_logger",
    "get_performance_logger",
    "shutdown_logging",

    # Performance logging
    "PerformanceLogger",
    "PerformanceMetrics",
    "TimingContext",
    "TimingMetrics",

    # Structured logging
    "StructuredLogger",
    "LogContext",
    "ContextFilter",
]
