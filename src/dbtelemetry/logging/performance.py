"""Performance logging for telemetry operations.

Times each engine round trip (snapshot reads, plan captures, health probes)
and keeps per-operation aggregates that callers can inspect or log.

Classes:
    TimingMetrics: A single timing measurement
    PerformanceMetrics: Aggregated metrics for one operation
    TimingContext: Context manager for operation timing
    PerformanceLogger: Main performance logging interface

Example:
    >>> perf_logger = PerformanceLogger("monitoring.postgresql")
    >>> with perf_logger.measure("get_top_queries", limit=50) as timer:
    ...     rows = await connection.fetch(statement)
    >>> timer.duration_ms
    12.7
"""

import statistics
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Generator, Optional, Union

from ..core.exceptions import ErrorCodes, ValidationError
from .structured import StructuredLogger

DEFAULT_METRICS_WINDOW = 1000


@dataclass
class TimingMetrics:
    """Metrics for a single timing measurement.

    Attributes:
        operation: Operation name
        start_time: ``perf_counter`` value at start
        end_time: ``perf_counter`` value at completion
        duration: Duration in seconds
        metadata: Additional metadata
        success: Whether operation succeeded
        error: Error information if failed
    """
    operation: str
    start_time: float
    end_time: Optional[float] = None
    duration: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    success: bool = True
    error: Optional[str] = None

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        self.end_time = time.perf_counter()
        self.duration = self.end_time - self.start_time
        self.success = success
        self.error = error

    @property
    def duration_ms(self) -> Optional[float]:
        return self.duration * 1000 if self.duration is not None else None

    @property
    def is_complete(self) -> bool:
        return self.end_time is not None


@dataclass
class PerformanceMetrics:
    """Aggregated performance metrics for an operation.

    Counts, totals, min, max and mean cover every call. Median, p95 and the
    error messages cover only the most recent ``window`` calls, so a
    long-running poller keeps a fixed amount of history per operation.
    """
    operation: str
    window: int = DEFAULT_METRICS_WINDOW
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    total_duration: float = 0.0
    min_duration: Optional[float] = None
    max_duration: Optional[float] = None
    avg_duration: Optional[float] = None
    median_duration: Optional[float] = None
    p95_duration: Optional[float] = None
    errors: Deque[str] = field(init=False)
    _durations: Deque[float] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.window < 1:
            raise ValidationError(
                f"Metrics window must be at least 1, got {self.window}",
                code=ErrorCodes.INVALID_ARGUMENT,
                context={"window": self.window},
            )
        self.errors = deque(maxlen=self.window)
        self._durations = deque(maxlen=self.window)

    def add_timing(self, timing: TimingMetrics) -> None:
        """Fold a completed timing into the aggregates. Incomplete timings are ignored."""
        if not timing.is_complete or timing.duration is None:
            return

        self.total_calls += 1
        if timing.success:
            self.successful_calls += 1
        else:
            self.failed_calls += 1
            if timing.error:
                self.errors.append(timing.error)

        duration = timing.duration
        self.total_duration += duration
        self._durations.append(duration)

        if self.min_duration is None or duration < self.min_duration:
            self.min_duration = duration
        if self.max_duration is None or duration > self.max_duration:
            self.max_duration = duration

        self.avg_duration = self.total_duration / self.total_calls
        self.median_duration = statistics.median(self._durations)

        # Percentiles are noise below 20 samples
        if len(self._durations) >= 20:
            sorted_durations = sorted(self._durations)
            self.p95_duration = sorted_durations[int(len(sorted_durations) * 0.95)]

    @property
    def success_rate(self) -> float:
        if self.total_calls == 0:
            return 0.0
        return (self.successful_calls / self.total_calls) * 100

    @property
    def error_rate(self) -> float:
        if self.total_calls == 0:
            return 0.0
        return (self.failed_calls / self.total_calls) * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "success_rate": self.success_rate,
            "error_rate": self.error_rate,
            "total_duration": self.total_duration,
            "min_duration": self.min_duration,
            "max_duration": self.max_duration,
            "avg_duration": self.avg_duration,
            "median_duration": self.median_duration,
            "p95_duration": self.p95_duration,
            "error_count": self.failed_calls,
        }


class TimingContext:
    """Context manager for measuring operation timing.

    Works around ``await`` expressions as well as blocking code; only wall
    time between enter and exit is measured.
    """

    def __init__(
        self,
        operation: str,
        logger: Optional[StructuredLogger] = None,
        metadata: Optional[Dict[str, Any]] = None,
        auto_log: bool = True,
    ) -> None:
        self.operation = operation
        self.logger = logger
        self.metadata = metadata or {}
        self.auto_log = auto_log
        self._timing: Optional[TimingMetrics] = None

    @property
    def timing(self) -> Optional[TimingMetrics]:
        return self._timing

    @property
    def duration(self) -> Optional[float]:
        return self._timing.duration if self._timing else None

    @property
    def duration_ms(self) -> Optional[float]:
        return self._timing.duration_ms if self._timing else None

    def __enter__(self) -> "TimingContext":
        self._timing = TimingMetrics(
            operation=self.operation,
            start_time=time.perf_counter(),
            metadata=self.metadata,
        )

        if self.logger and self.auto_log:
            self.logger.debug("Operation started", operation=self.operation, **self.metadata)

        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._timing is None:
            return

        success = exc_type is None
        error = (str(exc_val) or exc_type.__name__) if exc_type is not None else None
        self._timing.complete(success=success, error=error)

        if self.logger and self.auto_log:
            if success:
                self.logger.debug(
                    "Operation completed",
                    operation=self.operation,
                    duration_ms=self._timing.duration_ms,
                    success=True,
                    **self.metadata,
                )
            else:
                self.logger.warning(
                    "Operation failed",
                    operation=self.operation,
                    duration_ms=self._timing.duration_ms,
                    success=False,
                    error=error,
                    error_type=exc_type.__name__,
                    **self.metadata,
                )


class PerformanceLogger:
    """Performance logger for timing telemetry operations.

    Example:
        >>> perf_logger = PerformanceLogger("plans.capture")
        >>> with perf_logger.measure("capture_estimated_plan", platform="SqlServer"):
        ...     plan = await service.capture_estimated_plan(sql)
        >>> perf_logger.get_metrics("capture_estimated_plan").total_calls
        1
    """

    def __init__(
        self,
        name: str,
        *,
        auto_log: bool = True,
        track_metrics: bool = True,
        logger: Optional[StructuredLogger] = None,
        window: int = DEFAULT_METRICS_WINDOW,
    ) -> None:
        self.name = name
        self.auto_log = auto_log
        self.track_metrics = track_metrics
        self.window = window
        self.logger = logger or StructuredLogger(f"perf.{name}")
        self._metrics: Dict[str, PerformanceMetrics] = defaultdict(
            lambda: PerformanceMetrics(operation="unknown")
        )

    @contextmanager
    def measure(self, operation: str, **metadata: Any) -> Generator[TimingContext, None, None]:
        """Context manager for measuring operation performance.

        The timing is recorded whether the block completes or raises; the
        exception itself propagates unchanged.
        """
        timing_context = TimingContext(
            operation=operation,
            logger=self.logger if self.auto_log else None,
            metadata=metadata,
            auto_log=self.auto_log,
        )

        try:
            with timing_context as ctx:
                yield ctx
        finally:
            if self.track_metrics and timing_context.timing:
                self._add_timing_to_metrics(timing_context.timing)

    def _add_timing_to_metrics(self, timing: TimingMetrics) -> None:
        if timing.operation not in self._metrics:
            self._metrics[timing.operation] = PerformanceMetrics(
                operation=timing.operation, window=self.window
            )
        self._metrics[timing.operation].add_timing(timing)

    def record_timing(
        self,
        operation: str,
        duration: float,
        success: bool = True,
        error: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        """Record a timing measured elsewhere (duration in seconds)."""
        timing = TimingMetrics(
            operation=operation,
            start_time=time.perf_counter() - duration,
            metadata=metadata,
        )
        timing.complete(success=success, error=error)
        timing.duration = duration

        if self.auto_log:
            self.logger.log(
                "debug" if success else "warning",
                f"Timing recorded: {operation}",
                operation=operation,
                duration_ms=timing.duration_ms,
                success=success,
                error=error,
                **metadata,
            )

        if self.track_metrics:
            self._add_timing_to_metrics(timing)

    def get_metrics(
        self, operation: Optional[str] = None
    ) -> Union[PerformanceMetrics, Dict[str, PerformanceMetrics]]:
        """Metrics for one operation, or a dict of all of them."""
        if operation:
            return self._metrics.get(operation, PerformanceMetrics(operation=operation))
        return dict(self._metrics)

    def reset_metrics(self, operation: Optional[str] = None) -> None:
        if operation:
            self._metrics.pop(operation, None)
        else:
            self._metrics.clear()

    def get_summary(self) -> Dict[str, Any]:
        """Summary across all operations."""
        total_calls = sum(m.total_calls for m in self._metrics.values())
        total_successful = sum(m.successful_calls for m in self._metrics.values())
        total_duration = sum(m.total_duration for m in self._metrics.values())

        return {
            "total_operations": len(self._metrics),
            "total_calls": total_calls,
            "total_duration": total_duration,
            "overall_success_rate": (total_successful / total_calls * 100) if total_calls > 0 else 0.0,
            "operations": {name: metrics.to_dict() for name, metrics in self._metrics.items()},
        }

    def __repr__(self) -> str:
        return (
            f"PerformanceLogger("
            f"name={self.name!r}, "
            f"operations={len(self._metrics)}, "
            f"auto_log={self.auto_log})"
        )
