"""Logger factory and configuration for dbtelemetry.

Classes:
    LoggerFactory: Logger creation and configuration manager

Functions:
    configure_logging: Configure logging globally
    get_logger: Get a structured logger from the global factory
    get_performance_logger: Get a performance logger from the global factory

Example:
    >>> from dbtelemetry.logging import configure_logging, get_logger
    >>> configure_logging(level="DEBUG", format="text")
    >>> logger = get_logger(__name__)
    >>> logger.info("Monitor created", platform="PostgreSQL")
"""

import logging
import sys
from typing import Any, Dict, List, Optional

import structlog

from ..config.models import LoggingConfig
from ..core.exceptions import ErrorCodes, ValidationError
from .performance import PerformanceLogger
from .structured import StructuredLogger


class LoggerFactory:
    """Factory for creating and configuring dbtelemetry loggers.

    Routes structlog through the standard library so that host applications
    keep control of handlers. Renders JSON or console output depending on
    the configured format.

    Example:
        >>> factory = LoggerFactory()
        >>> factory.configure_from_config(LoggingConfig(level="DEBUG"))
        >>> logger = factory.get_logger("dbtelemetry.plans")
    """

    def __init__(self, config: Optional[LoggingConfig] = None) -> None:
        self.config = config or LoggingConfig()
        self.initialized = False
        self._loggers: Dict[str, StructuredLogger] = {}
        self._performance_loggers: Dict[str, PerformanceLogger] = {}
        self._handlers: List[logging.Handler] = []

    def configure_from_config(self, logging_config: LoggingConfig) -> None:
        """(Re)configure the logging system from a LoggingConfig."""
        self.config = logging_config
        self.initialized = False
        self._loggers.clear()
        self._performance_loggers.clear()
        self._configure_logging_system()

    def configure_from_dict(self, config_dict: Dict[str, Any]) -> None:
        """(Re)configure from a dictionary; unknown keys are ignored."""
        valid_keys = set(LoggingConfig.model_fields)
        merged = self.config.model_dump()
        merged.update({k: v for k, v in config_dict.items() if k in valid_keys})
        self.configure_from_config(LoggingConfig(**merged))

    def _configure_logging_system(self) -> None:
        if self.initialized:
            return
        self._configure_stdlib_logging()
        self._configure_structlog()
        self.initialized = True

    def _configure_stdlib_logging(self) -> None:
        level = getattr(logging, self.config.level.upper(), logging.INFO)
        package_logger = logging.getLogger("dbtelemetry")
        package_logger.setLevel(level)

        for handler in self._handlers:
            package_logger.removeHandler(handler)
        self._handlers.clear()

        if self.config.console_output:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(level)
            # structlog renders the final line
            console_handler.setFormatter(logging.Formatter("%(message)s"))
            package_logger.addHandler(console_handler)
            self._handlers.append(console_handler)

    def _configure_structlog(self) -> None:
        processors: List[Any] = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
        ]

        if self.config.format == "json":
            processors.append(structlog.processors.JSONRenderer(default=str))
        else:
            processors.append(structlog.dev.ConsoleRenderer(colors=False))

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.stdlib.BoundLogger,
            logger_factory=structlog.stdlib.LoggerFactory(),
            context_class=dict,
            cache_logger_on_first_use=True,
        )

    def get_logger(
        self,
        name: str,
        *,
        level: Optional[str] = None,
        enable_correlation: Optional[bool] = None,
    ) -> StructuredLogger:
        """Get or create a structured logger."""
        if not self.initialized:
            self._configure_logging_system()

        cache_key = f"{name}_{level}_{enable_correlation}"
        if cache_key in self._loggers:
            return self._loggers[cache_key]

        logger = StructuredLogger(
            name=name,
            level=level or self.config.level,
            enable_correlation=(
                enable_correlation if enable_correlation is not None else self.config.correlation_ids
            ),
        )
        self._loggers[cache_key] = logger
        return logger

    def get_performance_logger(
        self,
        name: str,
        *,
        auto_log: Optional[bool] = None,
        track_metrics: bool = True,
    ) -> PerformanceLogger:
        """Get or create a performance logger."""
        if not self.initialized:
            self._configure_logging_system()

        cache_key = f"{name}_{auto_log}_{track_metrics}"
        if cache_key in self._performance_loggers:
            return self._performance_loggers[cache_key]

        perf_logger = PerformanceLogger(
            name=name,
            auto_log=auto_log if auto_log is not None else True,
            track_metrics=track_metrics,
            logger=self.get_logger(f"dbtelemetry.perf.{name}"),
            window=self.config.metrics_window,
        )
        self._performance_loggers[cache_key] = perf_logger
        return perf_logger

    def set_level(self, level: str, logger_name: Optional[str] = None) -> None:
        """Set log level for one logger or for every logger this factory made.

        Raises:
            ValidationError: If the level name is unknown
        """
        if not isinstance(getattr(logging, str(level).upper(), None), int):
            raise ValidationError(
                f"Invalid log level: {level}",
                code=ErrorCodes.INVALID_ARGUMENT,
                context={"level": level},
            )

        if logger_name:
            logging.getLogger(logger_name).setLevel(getattr(logging, level.upper()))
            return

        for logger in self._loggers.values():
            logger.set_level(level)
        logging.getLogger("dbtelemetry").setLevel(getattr(logging, level.upper()))

    def shutdown(self) -> None:
        """Detach handlers and clear logger caches."""
        package_logger = logging.getLogger("dbtelemetry")
        for handler in self._handlers:
            package_logger.removeHandler(handler)
            handler.close()
        self._handlers.clear()
        self._loggers.clear()
        self._performance_loggers.clear()
        self.initialized = False

    def __repr__(self) -> str:
        return (
            f"LoggerFactory("
            f"level={self.config.level!r}, "
            f"format={self.config.format!r}, "
            f"initialized={self.initialized})"
        )


# Global logger factory instance
_global_factory = LoggerFactory()


def configure_logging(
    *,
    level: str = "INFO",
    format: str = "json",
    console_output: bool = True,
    **kwargs: Any,
) -> None:
    """Configure dbtelemetry logging globally.

    Example:
        >>> configure_logging(level="DEBUG", format="text")
    """
    _global_factory.configure_from_dict(
        {"level": level, "format": format, "console_output": console_output, **kwargs}
    )


def get_logger(
    name: str,
    *,
    level: Optional[str] = None,
    enable_correlation: Optional[bool] = None,
) -> StructuredLogger:
    """Get or create a structured logger using the global factory."""
    return _global_factory.get_logger(name=name, level=level, enable_correlation=enable_correlation)


def get_performance_logger(
    name: str,
    *,
    auto_log: Optional[bool] = None,
    track_metrics: bool = True,
) -> PerformanceLogger:
    """Get or create a performance logger using the global factory."""
    return _global_factory.get_performance_logger(
        name=name, auto_log=auto_log, track_metrics=track_metrics
    )


def get_factory() -> LoggerFactory:
    return _global_factory


def shutdown_logging() -> None:
    """Shutdown the global logging configuration."""
    _global_factory.shutdown()
