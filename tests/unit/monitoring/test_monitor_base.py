"""Unit tests for the monitor template base classes.

A small adapter whose hooks read plain rows through ``_fetch`` exercises the
shared behaviour: argument validation, limit clamping, ordering, range
filtering, error translation and connection scoping.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from dbtelemetry.config.models import TelemetryConfig
from dbtelemetry.connection.manager import ConnectionStateManager
from dbtelemetry.core.exceptions import (
    ConfigurationError,
    EngineError,
    ErrorCodes,
    NotFoundError,
    TimeoutError,
    ValidationError,
)
from dbtelemetry.monitoring.base import BaseQueryMonitor, as_utc
from dbtelemetry.telemetry.models import (
    ExecutionPlan,
    PlatformType,
    QueryDetails,
    QueryMetric,
    QueryStatistic,
    RunningQuery,
)

from tests.fakes import PG_TARGET, FakeEngineError

TOP_SQL = "SELECT metrics LIMIT $1"
DETAILS_SQL = "SELECT details WHERE id = $1"
PLAN_SQL = "SELECT plan WHERE id = $1"
SAMPLES_SQL = "SELECT samples BETWEEN $1 AND $2"
RUNNING_SQL = "SELECT running"

JAN_1 = datetime(2026, 1, 1, tzinfo=timezone.utc)
JAN_2 = datetime(2026, 1, 2, tzinfo=timezone.utc)


def metric_row(query_id, total, count=1):
    return {
        "query_id": query_id,
        "query_text": f"SELECT {query_id}",
        "execution_count": count,
        "total_time_ms": total,
        "average_time_ms": total / count,
        "min_time_ms": total / count,
        "max_time_ms": total / count,
    }


class RowQueryMonitor(BaseQueryMonitor):
    """Adapter whose rows map one to one onto the telemetry records."""

    platform = PlatformType.POSTGRESQL

    async def _fetch_top_queries(self, connection, limit) -> List[QueryMetric]:
        rows = await self._fetch(connection, TOP_SQL, limit)
        return [QueryMetric(**row) for row in rows]

    async def _fetch_query_details(self, connection, query_id) -> Optional[QueryDetails]:
        rows = await self._fetch(connection, DETAILS_SQL, query_id)
        return QueryDetails(**rows[0]) if rows else None

    async def _fetch_execution_plan(self, connection, query_id) -> Optional[ExecutionPlan]:
        text = await self._fetch_value(connection, PLAN_SQL, query_id)
        return ExecutionPlan(platform=self.platform, plan_text=text) if text else None

    async def _fetch_query_statistics(self, connection, start, end) -> List[QueryStatistic]:
        rows = await self._fetch(connection, SAMPLES_SQL, start, end)
        return [QueryStatistic(**row) for row in rows]

    async def _fetch_running_queries(self, connection) -> List[RunningQuery]:
        rows = await self._fetch(connection, RUNNING_SQL)
        return [RunningQuery(**row) for row in rows]


@pytest.fixture
def monitor(pg_manager) -> RowQueryMonitor:
    return RowQueryMonitor(pg_manager)


def make_manager(driver_registry, **monitor_settings) -> ConnectionStateManager:
    config = TelemetryConfig.from_dict({"monitor": monitor_settings})
    manager = ConnectionStateManager(config, drivers=driver_registry)
    manager.set_target(PG_TARGET)
    return manager


class TestAsUtc:
    def test_naive_is_taken_as_utc(self):
        assert as_utc(datetime(2026, 1, 1)) == JAN_1
        assert as_utc(datetime(2026, 1, 1)).tzinfo is timezone.utc

    def test_aware_is_converted(self):
        plus_two = timezone(timedelta(hours=2))

        assert as_utc(datetime(2026, 1, 1, 2, tzinfo=plus_two)) == JAN_1


class TestEffectiveLimit:
    """Test limit defaulting and clamping."""

    def test_none_uses_default(self, monitor):
        assert monitor.effective_limit(None) == 50

    @pytest.mark.parametrize("limit,expected", [(0, 1), (-5, 1), (1, 1), (25, 25), (1000, 1000), (5000, 1000)])
    def test_clamped_to_range(self, monitor, limit, expected):
        assert monitor.effective_limit(limit) == expected

    def test_configured_bounds(self, driver_registry):
        monitor = RowQueryMonitor(make_manager(driver_registry, default_top_queries=5, max_top_queries=10))

        assert monitor.effective_limit(None) == 5
        assert monitor.effective_limit(11) == 10

    @pytest.mark.parametrize("limit", [True, 2.5, "10"])
    def test_non_integer_rejected(self, monitor, limit):
        with pytest.raises(ValidationError) as exc_info:
            monitor.effective_limit(limit)

        assert exc_info.value.code == ErrorCodes.INVALID_ARGUMENT


class TestGetTopQueries:
    """Test top query retrieval."""

    @pytest.mark.asyncio
    async def test_ordered_by_total_then_count_then_id(self, monitor, fake_driver):
        fake_driver.respond(TOP_SQL, [
            metric_row("c", 100.0, count=2),
            metric_row("a", 300.0),
            metric_row("b", 100.0, count=2),
            metric_row("d", 100.0, count=5),
        ])

        metrics = await monitor.get_top_queries(limit=10)

        assert [m.query_id for m in metrics] == ["a", "d", "b", "c"]

    @pytest.mark.asyncio
    async def test_truncated_to_effective_limit(self, monitor, fake_driver):
        fake_driver.respond(TOP_SQL, [metric_row(str(i), float(i)) for i in range(10)])

        metrics = await monitor.get_top_queries(limit=3)

        assert [m.query_id for m in metrics] == ["9", "8", "7"]
        assert fake_driver.last.statements == [(TOP_SQL, (3,))]

    @pytest.mark.asyncio
    async def test_default_limit_sent_to_engine(self, monitor, fake_driver):
        await monitor.get_top_queries()

        assert fake_driver.last.statements[0][1] == (50,)

    @pytest.mark.asyncio
    async def test_no_tracked_statements(self, monitor):
        assert await monitor.get_top_queries() == []

    @pytest.mark.asyncio
    async def test_invalid_limit_opens_no_connection(self, monitor, fake_driver):
        with pytest.raises(ValidationError):
            await monitor.get_top_queries(limit="ten")

        assert fake_driver.connections == []


class TestQueryLookup:
    """Test details and plan lookups by query id."""

    @pytest.mark.asyncio
    async def test_details_found(self, monitor, fake_driver):
        fake_driver.respond(DETAILS_SQL, [
            {"query_id": "42", "query_text": "SELECT 1", "normalized_query": "SELECT 1"}
        ])

        details = await monitor.get_query_details("  42 ")

        assert details.query_id == "42"
        assert fake_driver.last.statements[0][1] == ("42",)

    @pytest.mark.asyncio
    async def test_details_unknown_id(self, monitor):
        with pytest.raises(NotFoundError) as exc_info:
            await monitor.get_query_details("404")

        assert exc_info.value.code == ErrorCodes.QUERY_NOT_FOUND
        assert exc_info.value.context["query_id"] == "404"

    @pytest.mark.asyncio
    async def test_plan_unknown_id(self, monitor):
        with pytest.raises(NotFoundError):
            await monitor.get_execution_plan("404")

    @pytest.mark.asyncio
    async def test_plan_found(self, monitor, fake_driver):
        fake_driver.respond(PLAN_SQL, [{"plan": "Seq Scan on orders"}])

        plan = await monitor.get_execution_plan("7")

        assert plan.plan_text == "Seq Scan on orders"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query_id", ["", "   ", None, 42])
    async def test_invalid_id_rejected(self, monitor, fake_driver, query_id):
        with pytest.raises(ValidationError) as exc_info:
            await monitor.get_query_details(query_id)

        assert exc_info.value.code == ErrorCodes.INVALID_ARGUMENT
        assert fake_driver.connections == []


class TestGetQueryStatistics:
    """Test time-range filtering of statistic samples."""

    @pytest.mark.asyncio
    async def test_inclusive_range_filter_and_ordering(self, monitor, fake_driver):
        fake_driver.respond(SAMPLES_SQL, [
            {"timestamp": datetime(2026, 1, 3), "query_id": "late", "execution_time_ms": 1.0},
            {"timestamp": JAN_2, "query_id": "b", "execution_time_ms": 2.0},
            {"timestamp": datetime(2026, 1, 1), "query_id": "start", "execution_time_ms": 3.0},
            {"timestamp": JAN_2, "query_id": "a", "execution_time_ms": 4.0},
            {"timestamp": datetime(2025, 12, 31, 23, 59), "query_id": "early", "execution_time_ms": 5.0},
        ])

        samples = await monitor.get_query_statistics(JAN_1, JAN_2)

        assert [(s.timestamp, s.query_id) for s in samples] == [
            (JAN_1, "start"),
            (JAN_2, "a"),
            (JAN_2, "b"),
        ]
        assert all(s.timestamp.tzinfo is not None for s in samples)

    @pytest.mark.asyncio
    async def test_naive_bounds_are_utc(self, monitor, fake_driver):
        await monitor.get_query_statistics(datetime(2026, 1, 1), datetime(2026, 1, 2))

        assert fake_driver.last.statements[0][1] == (JAN_1, JAN_2)

    @pytest.mark.asyncio
    async def test_equal_bounds_allowed(self, monitor, fake_driver):
        fake_driver.respond(SAMPLES_SQL, [
            {"timestamp": JAN_1, "query_id": "x", "execution_time_ms": 1.0},
        ])

        samples = await monitor.get_query_statistics(JAN_1, JAN_1)

        assert len(samples) == 1

    @pytest.mark.asyncio
    async def test_inverted_range(self, monitor, fake_driver):
        with pytest.raises(ValidationError) as exc_info:
            await monitor.get_query_statistics(JAN_2, JAN_1)

        assert exc_info.value.code == ErrorCodes.INVALID_TIME_RANGE
        assert fake_driver.connections == []

    @pytest.mark.asyncio
    async def test_non_datetime_rejected(self, monitor):
        with pytest.raises(ValidationError) as exc_info:
            await monitor.get_query_statistics("2026-01-01", JAN_2)

        assert exc_info.value.code == ErrorCodes.INVALID_ARGUMENT


class TestSessionScoping:
    """Test connection handling and error translation around each operation."""

    @pytest.mark.asyncio
    async def test_each_operation_uses_its_own_connection(self, monitor, fake_driver):
        await monitor.get_top_queries()
        await monitor.get_running_queries()

        assert len(fake_driver.connections) == 2
        assert all(c.closed for c in fake_driver.connections)

    @pytest.mark.asyncio
    async def test_no_target(self, manager, fake_driver):
        monitor = RowQueryMonitor(manager)

        with pytest.raises(ConfigurationError) as exc_info:
            await monitor.get_running_queries()

        assert exc_info.value.code == ErrorCodes.TARGET_NOT_CONFIGURED
        assert fake_driver.connections == []

    @pytest.mark.asyncio
    async def test_platform_mismatch(self, mysql_manager, fake_driver):
        monitor = RowQueryMonitor(mysql_manager)

        with pytest.raises(ConfigurationError) as exc_info:
            await monitor.get_running_queries()

        assert exc_info.value.code == ErrorCodes.PLATFORM_UNSUPPORTED
        assert exc_info.value.context["target_platform"] == "MySQL"
        assert fake_driver.last.closed
        assert fake_driver.last.statements == []

    @pytest.mark.asyncio
    async def test_engine_fault_keeps_engine_text(self, monitor, fake_driver):
        fake_driver.respond(RUNNING_SQL, FakeEngineError("permission denied for view pg_stat_activity", 42501))

        with pytest.raises(EngineError) as exc_info:
            await monitor.get_running_queries()

        assert "permission denied for view pg_stat_activity" in exc_info.value.message
        assert exc_info.value.context["engine_error"] == 42501
        assert fake_driver.last.closed

    @pytest.mark.asyncio
    async def test_unexpected_failure_wrapped(self, monitor, fake_driver):
        fake_driver.respond(RUNNING_SQL, RuntimeError("socket reset"))

        with pytest.raises(EngineError) as exc_info:
            await monitor.get_running_queries()

        assert exc_info.value.code == ErrorCodes.QUERY_EXECUTION_FAILED
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert exc_info.value.context["operation"] == "get_running_queries"
        assert fake_driver.last.closed

    @pytest.mark.asyncio
    async def test_statement_timeout(self, driver_registry, fake_driver):
        monitor = RowQueryMonitor(make_manager(driver_registry, command_timeout_seconds=0.05))
        fake_driver.statement_delay = 1.0

        with pytest.raises(TimeoutError) as exc_info:
            await monitor.get_running_queries()

        assert exc_info.value.code == ErrorCodes.QUERY_TIMEOUT
        assert fake_driver.last.closed

    @pytest.mark.asyncio
    async def test_operations_are_timed(self, monitor, fake_driver):
        await monitor.get_top_queries()
        fake_driver.respond(RUNNING_SQL, RuntimeError("boom"))
        with pytest.raises(EngineError):
            await monitor.get_running_queries()

        assert monitor.perf_logger.get_metrics("get_top_queries").successful_calls >= 1
        assert monitor.perf_logger.get_metrics("get_running_queries").failed_calls >= 1
