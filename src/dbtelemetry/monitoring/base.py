"""Platform-neutral monitor contracts and their template base classes.

``QueryMonitor`` and ``HealthMonitor`` define what every engine adapter
offers. ``BaseQueryMonitor`` and ``BaseHealthMonitor`` implement those public
operations once: argument validation, limit clamping, result ordering, error
translation and timing all happen here. Adapters only implement the
``_fetch_*`` hooks, each of which receives a live connection to the
configured target.

Every operation opens its own connection. Failures are never masked with
zeroed snapshots: a missing target raises ``ConfigurationError`` and any
engine fault raises ``EngineError`` carrying the engine's diagnostic text.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from ..config.models import TelemetryConfig
from ..connection.manager import ConnectionStateManager
from ..core.exceptions import (
    ConfigurationError,
    EngineError,
    ErrorCodes,
    NotFoundError,
    TelemetryException,
    ValidationError,
    create_error_from_exception,
)
from ..core.utils import SqlTextUtils, clamp
from ..drivers.base import DriverConnection
from ..logging import get_logger, get_performance_logger
from ..plans.capture import ExecutionPlanCaptureService, PlanCaptureSession
from ..plans.parsers import build_execution_plan
from ..telemetry.health import DatabaseHealth
from ..telemetry.models import (
    ConnectionStatistics,
    DatabaseSize,
    ExecutionPlan,
    PlatformType,
    QueryDetails,
    QueryMetric,
    QueryStatistic,
    ResourceUtilization,
    RunningQuery,
    snapshot_settings,
    sort_statistics,
    sort_top_queries,
)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class QueryMonitor(ABC):
    """Query-level telemetry contract."""

    @abstractmethod
    async def get_top_queries(self, limit: Optional[int] = None) -> List[QueryMetric]:
        """Most expensive tracked statements, most expensive first."""

    @abstractmethod
    async def get_query_details(self, query_id: str) -> QueryDetails:
        """Full detail for one tracked statement."""

    @abstractmethod
    async def get_execution_plan(self, query_id: str) -> ExecutionPlan:
        """Plan for a statement the engine already tracks."""

    @abstractmethod
    async def get_query_statistics(self, start: datetime, end: datetime) -> List[QueryStatistic]:
        """Samples with ``start <= timestamp <= end``."""

    @abstractmethod
    async def get_running_queries(self) -> List[RunningQuery]:
        """Statements executing right now."""


class HealthMonitor(ABC):
    """Database health and resource telemetry contract."""

    @abstractmethod
    async def get_health(self) -> DatabaseHealth: ...

    @abstractmethod
    async def get_database_size(self) -> DatabaseSize: ...

    @abstractmethod
    async def get_connection_stats(self) -> ConnectionStatistics: ...

    @abstractmethod
    async def get_resource_utilization(self) -> ResourceUtilization: ...

    @abstractmethod
    async def get_configuration(self) -> Dict[str, str]: ...


class MonitorSupport:
    """Connection scoping and error translation shared by both monitor bases.

    Attributes:
        manager: Source of connections
        config: Telemetry configuration
        platform: Engine the adapter speaks to
    """

    platform: PlatformType

    def __init__(
        self,
        manager: ConnectionStateManager,
        config: Optional[TelemetryConfig] = None,
        *,
        capture_service: Optional[ExecutionPlanCaptureService] = None,
    ) -> None:
        self.manager = manager
        self.config = config or manager.config
        self.capture_service = capture_service or ExecutionPlanCaptureService(
            manager, self.config.capture
        )
        component = self.platform.name.lower()
        self.logger = get_logger(f"dbtelemetry.monitoring.{component}").bind(
            platform=self.platform.value
        )
        self.perf_logger = get_performance_logger(f"monitoring.{component}")

    @property
    def command_timeout(self) -> float:
        return self.config.monitor.command_timeout_seconds

    @asynccontextmanager
    async def _session(self, operation: str, **metadata: Any) -> AsyncIterator[DriverConnection]:
        """Connection for one operation, with timing and error translation."""
        with self.perf_logger.measure(operation, **metadata):
            try:
                async with self.manager.acquire_connection() as connection:
                    if connection.platform is not self.platform:
                        raise ConfigurationError(
                            f"{type(self).__name__} cannot monitor a {connection.platform.value} target",
                            code=ErrorCodes.PLATFORM_UNSUPPORTED,
                            context={
                                "monitor_platform": self.platform.value,
                                "target_platform": connection.platform.value,
                            },
                        )
                    yield connection
            except TelemetryException as e:
                self.logger.warning(
                    "Telemetry operation failed",
                    operation=operation,
                    error_code=e.code,
                    error=e.message,
                )
                raise
            except asyncio.TimeoutError as e:
                raise create_error_from_exception(
                    e,
                    f"{operation} timed out",
                    code=ErrorCodes.QUERY_TIMEOUT,
                    context={"operation": operation, "platform": self.platform.value},
                ) from e
            except Exception as e:
                self.logger.error(
                    "Unexpected telemetry failure",
                    operation=operation,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise EngineError(
                    f"{operation} failed on {self.platform.value}: {e}",
                    code=ErrorCodes.QUERY_EXECUTION_FAILED,
                    context={"operation": operation, "platform": self.platform.value},
                    cause=e,
                ) from e

    async def _fetch(self, connection: DriverConnection, statement: str, *params: Any) -> List[Dict[str, Any]]:
        return await connection.fetch(statement, *params, timeout=self.command_timeout)

    async def _fetch_one(
        self, connection: DriverConnection, statement: str, *params: Any
    ) -> Dict[str, Any]:
        """First row of a statement that must return one.

        Raises:
            EngineError: If the statement returns no rows
        """
        rows = await self._fetch(connection, statement, *params)
        if not rows:
            raise EngineError(
                f"{self.platform.value} returned no rows for a telemetry snapshot",
                code=ErrorCodes.TELEMETRY_UNAVAILABLE,
                context={"statement": SqlTextUtils.truncate(statement)},
            )
        return rows[0]

    async def _fetch_value(self, connection: DriverConnection, statement: str, *params: Any) -> Any:
        return await connection.fetch_first_value(statement, *params, timeout=self.command_timeout)


class BaseQueryMonitor(MonitorSupport, QueryMonitor):
    """Template implementation of ``QueryMonitor``."""

    @staticmethod
    def _require_query_id(query_id: str) -> str:
        if not isinstance(query_id, str) or SqlTextUtils.is_blank(query_id):
            raise ValidationError(
                "query_id must be a non-empty string",
                code=ErrorCodes.INVALID_ARGUMENT,
                context={"query_id": query_id},
            )
        return query_id.strip()

    def _not_found(self, query_id: str) -> NotFoundError:
        return NotFoundError(
            f"Query {query_id} is not tracked by {self.platform.value}",
            code=ErrorCodes.QUERY_NOT_FOUND,
            context={"query_id": query_id, "platform": self.platform.value},
        )

    def effective_limit(self, limit: Optional[int]) -> int:
        """Resolve ``limit`` to the default and clamp it to ``[1, max_top_queries]``."""
        if limit is None:
            limit = self.config.monitor.default_top_queries
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValidationError(
                f"limit must be an integer, got {limit!r}",
                code=ErrorCodes.INVALID_ARGUMENT,
                context={"limit": limit},
            )
        return clamp(limit, 1, self.config.monitor.max_top_queries)

    async def get_top_queries(self, limit: Optional[int] = None) -> List[QueryMetric]:
        """Top statements by total time.

        Ordered by ``total_time_ms`` descending, then ``execution_count``
        descending, then ``query_id`` ascending. At most the clamped limit.
        """
        effective = self.effective_limit(limit)
        async with self._session("get_top_queries", limit=effective) as connection:
            metrics = await self._fetch_top_queries(connection, effective)
        ordered = list(sort_top_queries(metrics)[:effective])
        self.logger.debug("Top queries retrieved", requested=limit, returned=len(ordered))
        return ordered

    async def get_query_details(self, query_id: str) -> QueryDetails:
        """Raises ``NotFoundError`` when the engine does not track ``query_id``."""
        query_id = self._require_query_id(query_id)
        async with self._session("get_query_details", query_id=query_id) as connection:
            details = await self._fetch_query_details(connection, query_id)
        if details is None:
            raise self._not_found(query_id)
        return details

    async def get_execution_plan(self, query_id: str) -> ExecutionPlan:
        """Raises ``NotFoundError`` when the engine has no plan for ``query_id``."""
        query_id = self._require_query_id(query_id)
        async with self._session("get_execution_plan", query_id=query_id) as connection:
            plan = await self._fetch_execution_plan(connection, query_id)
        if plan is None:
            raise self._not_found(query_id)
        return plan

    async def get_query_statistics(self, start: datetime, end: datetime) -> List[QueryStatistic]:
        """Samples within ``[start, end]`` ordered by timestamp, then query id.

        Naive datetimes are taken as UTC.

        Raises:
            ValidationError: If ``start`` is after ``end``
        """
        if not isinstance(start, datetime) or not isinstance(end, datetime):
            raise ValidationError(
                "start and end must be datetimes",
                code=ErrorCodes.INVALID_ARGUMENT,
            )
        start_utc, end_utc = as_utc(start), as_utc(end)
        if start_utc > end_utc:
            raise ValidationError(
                f"start ({start.isoformat()}) is after end ({end.isoformat()})",
                code=ErrorCodes.INVALID_TIME_RANGE,
                context={"start": start.isoformat(), "end": end.isoformat()},
            )

        async with self._session("get_query_statistics") as connection:
            samples = await self._fetch_query_statistics(connection, start_utc, end_utc)

        normalized = [replace(s, timestamp=as_utc(s.timestamp)) for s in samples]
        in_range = [s for s in normalized if start_utc <= s.timestamp <= end_utc]
        return list(sort_statistics(in_range))

    async def get_running_queries(self) -> List[RunningQuery]:
        async with self._session("get_running_queries") as connection:
            return list(await self._fetch_running_queries(connection))

    async def explain_on(self, connection: DriverConnection, sql_text: str) -> Optional[ExecutionPlan]:
        """Capture an estimated plan for ``sql_text`` on an already open connection."""
        script = self.capture_service.modes.get(self.platform).script(sql_text)
        session = PlanCaptureSession(connection, script, self.logger)
        async with session.plan_mode():
            payload = await session.fetch_payload()
        return build_execution_plan(self.platform, payload)

    @abstractmethod
    async def _fetch_top_queries(self, connection: DriverConnection, limit: int) -> List[QueryMetric]:
        """At least the ``limit`` most expensive statements; ordering is applied by the caller."""

    @abstractmethod
    async def _fetch_query_details(
        self, connection: DriverConnection, query_id: str
    ) -> Optional[QueryDetails]:
        """Details, or None when the id is unknown."""

    @abstractmethod
    async def _fetch_execution_plan(
        self, connection: DriverConnection, query_id: str
    ) -> Optional[ExecutionPlan]:
        """Plan, or None when the id is unknown."""

    @abstractmethod
    async def _fetch_query_statistics(
        self, connection: DriverConnection, start: datetime, end: datetime
    ) -> List[QueryStatistic]:
        """Samples; out-of-range ones are filtered by the caller."""

    @abstractmethod
    async def _fetch_running_queries(self, connection: DriverConnection) -> List[RunningQuery]: ...


class BaseHealthMonitor(MonitorSupport, HealthMonitor):
    """Template implementation of ``HealthMonitor``."""

    async def get_health(self) -> DatabaseHealth:
        async with self._session("get_health") as connection:
            health = await self._fetch_health(connection)
        self.logger.info(
            "Health check complete",
            status=health.status.value,
            issues=len(health.issues),
        )
        return health

    async def get_database_size(self) -> DatabaseSize:
        async with self._session("get_database_size") as connection:
            return await self._fetch_database_size(connection)

    async def get_connection_stats(self) -> ConnectionStatistics:
        async with self._session("get_connection_stats") as connection:
            return await self._fetch_connection_stats(connection)

    async def get_resource_utilization(self) -> ResourceUtilization:
        async with self._session("get_resource_utilization") as connection:
            return await self._fetch_resource_utilization(connection)

    async def get_configuration(self) -> Dict[str, str]:
        """Engine settings as ``name -> value`` strings."""
        async with self._session("get_configuration") as connection:
            settings = await self._fetch_configuration(connection)
        return snapshot_settings(settings)

    @abstractmethod
    async def _fetch_health(self, connection: DriverConnection) -> DatabaseHealth: ...

    @abstractmethod
    async def _fetch_database_size(self, connection: DriverConnection) -> DatabaseSize: ...

    @abstractmethod
    async def _fetch_connection_stats(self, connection: DriverConnection) -> ConnectionStatistics: ...

    @abstractmethod
    async def _fetch_resource_utilization(self, connection: DriverConnection) -> ResourceUtilization: ...

    @abstractmethod
    async def _fetch_configuration(self, connection: DriverConnection) -> Dict[str, Any]: ...
