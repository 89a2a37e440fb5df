"""Tests for performance logging module."""

import asyncio
import time
from unittest.mock import Mock

import pytest

from dbtelemetry.core.exceptions import ErrorCodes, ValidationError
from dbtelemetry.logging.performance import (
    DEFAULT_METRICS_WINDOW,
    PerformanceLogger,
    PerformanceMetrics,
    TimingContext,
    TimingMetrics,
)


class TestTimingMetrics:
    """Test cases for TimingMetrics class."""

    def test_timing_metrics_initialization(self):
        """Test TimingMetrics initializes correctly."""
        start_time = time.perf_counter()
        metrics = TimingMetrics(
            operation="get_top_queries",
            start_time=start_time,
            metadata={"limit": 50},
        )

        assert metrics.operation == "get_top_queries"
        assert metrics.start_time == start_time
        assert metrics.end_time is None
        assert metrics.duration is None
        assert metrics.duration_ms is None
        assert metrics.success is True
        assert not metrics.is_complete

    def test_timing_metrics_completion(self):
        """Test completing timing metrics."""
        metrics = TimingMetrics("get_health", time.perf_counter())
        time.sleep(0.01)

        metrics.complete(success=True)

        assert metrics.is_complete
        assert metrics.duration >= 0.01
        assert metrics.duration_ms == pytest.approx(metrics.duration * 1000)

    def test_timing_metrics_failure(self):
        """Test completing timing metrics with failure."""
        metrics = TimingMetrics("get_health", time.perf_counter())

        metrics.complete(success=False, error="engine fault")

        assert metrics.success is False
        assert metrics.error == "engine fault"


class TestPerformanceMetrics:
    """Test cases for PerformanceMetrics class."""

    def _timing(self, duration, success=True, error=None):
        timing = TimingMetrics("op", 0.0)
        timing.complete(success=success, error=error)
        timing.duration = duration
        return timing

    def test_empty_metrics(self):
        """Test rates of an operation that never ran."""
        metrics = PerformanceMetrics(operation="op")

        assert metrics.success_rate == 0.0
        assert metrics.error_rate == 0.0

    def test_add_timings(self):
        """Test aggregation of successful and failed timings."""
        metrics = PerformanceMetrics(operation="op")

        metrics.add_timing(self._timing(0.1))
        metrics.add_timing(self._timing(0.3))
        metrics.add_timing(self._timing(0.2, success=False, error="boom"))

        assert metrics.total_calls == 3
        assert metrics.successful_calls == 2
        assert metrics.failed_calls == 1
        assert metrics.min_duration == 0.1
        assert metrics.max_duration == 0.3
        assert metrics.avg_duration == pytest.approx(0.2)
        assert metrics.median_duration == pytest.approx(0.2)
        assert list(metrics.errors) == ["boom"]
        assert metrics.error_rate == pytest.approx(100 / 3)
        assert metrics.p95_duration is None

    def test_incomplete_timing_is_ignored(self):
        """Test that a timing that never completed is not counted."""
        metrics = PerformanceMetrics(operation="op")

        metrics.add_timing(TimingMetrics("op", time.perf_counter()))

        assert metrics.total_calls == 0

    def test_p95_after_twenty_samples(self):
        """Test that p95 is computed once enough samples exist."""
        metrics = PerformanceMetrics(operation="op")

        for i in range(1, 21):
            metrics.add_timing(self._timing(i / 100))

        assert metrics.p95_duration == pytest.approx(0.20)

    def test_history_is_bounded(self):
        """Test that a long run keeps only the most recent window of samples."""
        metrics = PerformanceMetrics(operation="op", window=100)

        for i in range(5000):
            metrics.add_timing(self._timing(0.5 if i < 4900 else 0.1, success=False, error=f"e{i}"))

        assert len(metrics._durations) == 100
        assert len(metrics.errors) == 100
        assert metrics.errors[0] == "e4900"
        assert metrics.total_calls == 5000
        assert metrics.failed_calls == 5000
        assert metrics.avg_duration == pytest.approx((4900 * 0.5 + 100 * 0.1) / 5000)
        assert metrics.median_duration == pytest.approx(0.1)
        assert metrics.max_duration == 0.5
        assert metrics.to_dict()["error_count"] == 5000

    def test_default_window(self):
        metrics = PerformanceMetrics(operation="op")

        for _ in range(DEFAULT_METRICS_WINDOW + 10):
            metrics.add_timing(self._timing(0.01))

        assert len(metrics._durations) == DEFAULT_METRICS_WINDOW

    def test_invalid_window(self):
        with pytest.raises(ValidationError) as exc_info:
            PerformanceMetrics(operation="op", window=0)

        assert exc_info.value.code == ErrorCodes.INVALID_ARGUMENT

    def test_to_dict(self):
        metrics = PerformanceMetrics(operation="op")
        metrics.add_timing(self._timing(0.5))

        data = metrics.to_dict()

        assert data["operation"] == "op"
        assert data["total_calls"] == 1
        assert data["success_rate"] == 100.0
        assert data["error_count"] == 0


class TestTimingContext:
    """Test cases for TimingContext class."""

    def test_successful_block_logs_start_and_completion(self):
        """Test that a successful block logs at debug."""
        logger = Mock()

        with TimingContext("get_health", logger=logger, metadata={"platform": "MySQL"}) as ctx:
            pass

        assert ctx.timing.success is True
        assert ctx.duration_ms is not None
        messages = [call.args[0] for call in logger.debug.call_args_list]
        assert messages == ["Operation started", "Operation completed"]
        logger.warning.assert_not_called()

    def test_failed_block_logs_warning(self):
        """Test that a raising block records the error and logs a warning."""
        logger = Mock()
        ctx = TimingContext("capture_estimated_plan", logger=logger)

        with pytest.raises(RuntimeError):
            with ctx:
                raise RuntimeError("plan mode failed")

        assert ctx.timing.success is False
        assert ctx.timing.error == "plan mode failed"
        _, kwargs = logger.warning.call_args
        assert kwargs["error_type"] == "RuntimeError"
        assert kwargs["success"] is False

    def test_auto_log_disabled(self):
        logger = Mock()

        with TimingContext("op", logger=logger, auto_log=False):
            pass

        logger.debug.assert_not_called()

    def test_durations_before_enter(self):
        ctx = TimingContext("op")

        assert ctx.timing is None
        assert ctx.duration is None
        assert ctx.duration_ms is None


class TestPerformanceLogger:
    """Test cases for PerformanceLogger class."""

    def test_window_applies_to_each_operation(self):
        perf_logger = PerformanceLogger("monitoring.test", logger=Mock(), window=3)

        for _ in range(5):
            perf_logger.record_timing("get_health", 0.01)

        metrics = perf_logger.get_metrics("get_health")
        assert metrics.window == 3
        assert len(metrics._durations) == 3
        assert metrics.total_calls == 5

    def test_measure_tracks_metrics(self):
        """Test that measure() folds timings into per-operation metrics."""
        perf_logger = PerformanceLogger("monitoring.test", logger=Mock())

        with perf_logger.measure("get_top_queries", limit=10):
            pass
        with perf_logger.measure("get_top_queries", limit=20):
            pass

        metrics = perf_logger.get_metrics("get_top_queries")
        assert metrics.total_calls == 2
        assert metrics.successful_calls == 2

    def test_measure_records_failure_and_reraises(self):
        """Test that measure() records a failed call and lets the error through."""
        perf_logger = PerformanceLogger("monitoring.test", logger=Mock())

        with pytest.raises(ValueError):
            with perf_logger.measure("get_query_details"):
                raise ValueError("bad id")

        metrics = perf_logger.get_metrics("get_query_details")
        assert metrics.failed_calls == 1
        assert list(metrics.errors) == ["bad id"]

    @pytest.mark.asyncio
    async def test_measure_around_await(self):
        """Test timing a block that awaits."""
        perf_logger = PerformanceLogger("monitoring.test", logger=Mock())

        with perf_logger.measure("get_health") as timer:
            await asyncio.sleep(0.01)

        assert timer.duration >= 0.01

    def test_track_metrics_disabled(self):
        perf_logger = PerformanceLogger("monitoring.test", track_metrics=False, logger=Mock())

        with perf_logger.measure("op"):
            pass

        assert perf_logger.get_metrics() == {}

    def test_record_timing(self):
        """Test recording a timing measured elsewhere."""
        logger = Mock()
        perf_logger = PerformanceLogger("monitoring.test", logger=logger)

        perf_logger.record_timing("probe", 0.25, success=False, error="refused")

        metrics = perf_logger.get_metrics("probe")
        assert metrics.total_duration == pytest.approx(0.25)
        assert metrics.failed_calls == 1
        assert logger.log.call_args.args[0] == "warning"

    def test_unknown_operation_returns_empty_metrics(self):
        perf_logger = PerformanceLogger("monitoring.test", logger=Mock())

        metrics = perf_logger.get_metrics("never_ran")

        assert metrics.operation == "never_ran"
        assert metrics.total_calls == 0

    def test_reset_and_summary(self):
        """Test summary across operations and resetting them."""
        perf_logger = PerformanceLogger("monitoring.test", logger=Mock())
        perf_logger.record_timing("a", 0.1)
        perf_logger.record_timing("b", 0.2, success=False)

        summary = perf_logger.get_summary()
        assert summary["total_operations"] == 2
        assert summary["total_calls"] == 2
        assert summary["overall_success_rate"] == 50.0
        assert set(summary["operations"]) == {"a", "b"}

        perf_logger.reset_metrics("a")
        assert set(perf_logger.get_metrics()) == {"b"}

        perf_logger.reset_metrics()
        assert perf_logger.get_metrics() == {}
