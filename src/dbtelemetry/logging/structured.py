"""Structured logging for dbtelemetry.

Classes:
    StructuredLogger: Main structured logging interface
    LogContext: Thread-local context for log correlation
    ContextFilter: Filter for adding context to stdlib log records

Example:
    >>> logger = StructuredLogger("dbtelemetry.connection")
    >>> with logger.context(server="db01", database="sales"):
    ...     logger.info("Target changed", connected=True)
"""

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Generator, Optional

import structlog

from ..core.exceptions import ErrorCodes, ValidationError


class LogContext:
    """Thread-local context that is merged into every log event.

    Example:
        >>> context = LogContext()
        >>> context.set("operation", "get_top_queries")
        >>> context.get_all()
        {'operation': 'get_top_queries'}
    """

    def __init__(self) -> None:
        self._local = threading.local()

    def _data(self) -> Dict[str, Any]:
        if not hasattr(self._local, "context"):
            self._local.context = {}
        return self._local.context

    def set(self, key: str, value: Any) -> None:
        self._data()[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        return self._data().get(key, default)

    def get_all(self) -> Dict[str, Any]:
        return self._data().copy()

    def clear(self) -> None:
        self._data().clear()

    def update(self, context: Dict[str, Any]) -> None:
        self._data().update(context)


class ContextFilter(logging.Filter):
    """Logging filter that copies thread-local context onto log records."""

    def __init__(self, context: LogContext) -> None:
        super().__init__()
        self._context = context

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self._context.get_all().items():
            if not hasattr(record, key):
                setattr(record, key, value)

        if not hasattr(record, "correlation_id"):
            record.correlation_id = self._context.get("correlation_id", "unknown")

        if not hasattr(record, "timestamp_iso"):
            record.timestamp_iso = datetime.fromtimestamp(record.created).isoformat()

        return True


class StructuredLogger:
    """Structured logger with context management and correlation IDs.

    Attributes:
        name: Logger name

    Example:
        >>> logger = StructuredLogger("dbtelemetry.monitoring.postgresql")
        >>> monitor_logger = logger.bind(platform="PostgreSQL")
        >>> monitor_logger.info("Top queries fetched", count=50)
    """

    def __init__(
        self,
        name: str,
        *,
        level: str = "INFO",
        enable_correlation: bool = True,
        auto_correlation: bool = True,
    ) -> None:
        """Initialize structured logger.

        Args:
            name: Logger name (typically module name)
            level: Initial log level
            enable_correlation: Whether to attach correlation IDs
            auto_correlation: Whether to generate a correlation ID up front
        """
        self.name = name
        self._enable_correlation = enable_correlation
        self._auto_correlation = auto_correlation

        self._logger = structlog.get_logger(name)
        self._context = LogContext()

        self._stdlib_logger = logging.getLogger(name)
        self._stdlib_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
        if not any(isinstance(f, ContextFilter) for f in self._stdlib_logger.filters):
            self._stdlib_logger.addFilter(ContextFilter(self._context))

        if self._enable_correlation and self._auto_correlation:
            self._ensure_correlation_id()

    def _ensure_correlation_id(self) -> str:
        correlation_id = self._context.get("correlation_id")
        if not correlation_id:
            correlation_id = str(uuid.uuid4())
            self._context.set("correlation_id", correlation_id)
        return correlation_id

    def _prepare_event_dict(self, **kwargs: Any) -> Dict[str, Any]:
        event_dict: Dict[str, Any] = {"timestamp": time.time()}
        event_dict.update(self._context.get_all())

        if self._enable_correlation:
            event_dict["correlation_id"] = self._ensure_correlation_id()

        event_dict.update(kwargs)
        return event_dict

    @contextmanager
    def context(self, **context_data: Any) -> Generator[None, None, None]:
        """Add context data for the duration of the block.

        Example:
            >>> with logger.context(operation="capture_plan"):
            ...     logger.debug("Plan mode enabled")
        """
        old_context = self._context.get_all()
        try:
            self._context.update(context_data)
            yield
        finally:
            self._context.clear()
            self._context.update(old_context)

    def bind(self, **context_data: Any) -> "StructuredLogger":
        """Create a new logger carrying the current context plus ``context_data``."""
        bound_logger = StructuredLogger(
            self.name,
            level=self.get_level(),
            enable_correlation=self._enable_correlation,
            auto_correlation=False,
        )
        current_context = self._context.get_all()
        current_context.update(context_data)
        bound_logger._context.update(current_context)
        return bound_logger

    def set_level(self, level: str) -> None:
        """Set logging level.

        Raises:
            ValidationError: If the level name is unknown
        """
        log_level = getattr(logging, str(level).upper(), None)
        if not isinstance(log_level, int):
            raise ValidationError(
                f"Unknown log level: {level}",
                code=ErrorCodes.INVALID_ARGUMENT,
                context={"level": level},
            )
        self._stdlib_logger.setLevel(log_level)

    def get_level(self) -> str:
        return logging.getLevelName(self._stdlib_logger.getEffectiveLevel())

    def debug(self, message: str, **kwargs: Any) -> None:
        self._logger.debug(message, **self._prepare_event_dict(**kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        self._logger.info(message, **self._prepare_event_dict(**kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self._logger.warning(message, **self._prepare_event_dict(**kwargs))

    def error(self, message: str, **kwargs: Any) -> None:
        self._logger.error(message, **self._prepare_event_dict(**kwargs))

    def critical(self, message: str, **kwargs: Any) -> None:
        self._logger.critical(message, **self._prepare_event_dict(**kwargs))

    def exception(self, message: str, exc_info: bool = True, **kwargs: Any) -> None:
        """Log an error together with the active exception's traceback."""
        self._logger.error(message, exc_info=exc_info, **self._prepare_event_dict(**kwargs))

    def log(self, level: str, message: str, **kwargs: Any) -> None:
        getattr(self, level.lower(), self.info)(message, **kwargs)

    def set_correlation_id(self, correlation_id: str) -> None:
        if self._enable_correlation:
            self._context.set("correlation_id", correlation_id)

    def get_correlation_id(self) -> Optional[str]:
        if not self._enable_correlation:
            return None
        return self._context.get("correlation_id")

    def clear_context(self) -> None:
        """Clear all context data, regenerating the correlation ID if enabled."""
        self._context.clear()
        if self._enable_correlation and self._auto_correlation:
            self._ensure_correlation_id()

    def get_context(self) -> Dict[str, Any]:
        return self._context.get_all()

    def __repr__(self) -> str:
        return (
            f"StructuredLogger("
            f"name={self.name!r}, "
            f"level={self.get_level()!r}, "
            f"correlation={self._enable_correlation})"
        )
