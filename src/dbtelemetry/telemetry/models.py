"""Telemetry data model shared by every monitor adapter.

All values are immutable snapshots. Sequence fields are stored as tuples and
mapping fields as read-only views over a private copy, so nothing handed to a
caller aliases adapter state.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from ..core.exceptions import ErrorCodes, ValidationError

# Rounding slack allowed when sibling plan node percentages are summed
COST_PERCENTAGE_TOLERANCE = 0.5


def _freeze_mapping(instance: Any, name: str) -> None:
    value = getattr(instance, name)
    object.__setattr__(instance, name, MappingProxyType(dict(value or {})))


def _freeze_sequence(instance: Any, name: str) -> None:
    value = getattr(instance, name)
    object.__setattr__(instance, name, tuple(value or ()))


class PlatformType(Enum):
    """Supported database engines."""

    SQL_SERVER = "SqlServer"
    POSTGRESQL = "PostgreSQL"
    MYSQL = "MySQL"
    ORACLE = "Oracle"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class QueryMetric:
    """Aggregate execution statistics for one tracked statement."""
    query_id: str
    query_text: str
    execution_count: int
    total_time_ms: float
    average_time_ms: float
    min_time_ms: float
    max_time_ms: float
    rows_returned: int = 0
    last_executed_at: Optional[datetime] = None
    database_name: str = ""

    def __post_init__(self) -> None:
        if self.execution_count < 0:
            raise ValidationError(
                f"execution_count must be >= 0, got {self.execution_count}",
                code=ErrorCodes.INVARIANT_VIOLATED,
                context={"query_id": self.query_id},
            )
        if self.execution_count > 0 and not (
            self.min_time_ms <= self.average_time_ms <= self.max_time_ms
        ):
            raise ValidationError(
                f"Query {self.query_id}: expected min <= avg <= max, got "
                f"{self.min_time_ms} / {self.average_time_ms} / {self.max_time_ms}",
                code=ErrorCodes.INVARIANT_VIOLATED,
                context={"query_id": self.query_id},
            )

    @classmethod
    def from_aggregates(
        cls,
        *,
        query_id: str,
        query_text: str,
        execution_count: int,
        total_time_ms: float,
        average_time_ms: float,
        min_time_ms: float,
        max_time_ms: float,
        rows_returned: int = 0,
        last_executed_at: Optional[datetime] = None,
        database_name: str = "",
    ) -> "QueryMetric":
        """Build a metric from engine aggregates.

        Engines compute the mean and the extremes separately and round each
        on its own, so the mean can land a hair outside ``[min, max]``. It is
        clamped back before construction. Min and max are swapped if the
        engine reports them inverted.
        """
        low, high = sorted((min_time_ms, max_time_ms))
        average = max(low, min(average_time_ms, high)) if execution_count > 0 else average_time_ms
        return cls(
            query_id=query_id,
            query_text=query_text,
            execution_count=execution_count,
            total_time_ms=total_time_ms,
            average_time_ms=average,
            min_time_ms=low,
            max_time_ms=high,
            rows_returned=rows_returned,
            last_executed_at=last_executed_at,
            database_name=database_name,
        )


@dataclass(frozen=True)
class ExecutionPlanNode:
    """One operator in a plan tree."""
    operation_type: str
    description: str = ""
    cost: float = 0.0
    cost_percentage: float = 0.0
    rows_estimated: int = 0
    rows_actual: int = 0
    children: Tuple["ExecutionPlanNode", ...] = ()

    def __post_init__(self) -> None:
        _freeze_sequence(self, "children")
        total = sum(child.cost_percentage for child in self.children)
        if total > 100.0 + COST_PERCENTAGE_TOLERANCE:
            raise ValidationError(
                f"Child cost percentages of {self.operation_type!r} sum to {total:.2f}",
                code=ErrorCodes.INVARIANT_VIOLATED,
                context={"operation_type": self.operation_type, "total": total},
            )


@dataclass(frozen=True)
class ExecutionPlan:
    """An execution plan in up to three textual encodings plus its node tree."""
    platform: PlatformType
    plan_text: Optional[str] = None
    plan_xml: Optional[str] = None
    plan_json: Optional[str] = None
    nodes: Tuple[ExecutionPlanNode, ...] = ()
    estimated_cost: float = 0.0
    actual_cost: Optional[float] = None

    def __post_init__(self) -> None:
        _freeze_sequence(self, "nodes")

    def walk(self) -> Iterator[ExecutionPlanNode]:
        """Yield every node depth-first, parents before children."""
        stack = list(reversed(self.nodes))
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))


@dataclass(frozen=True)
class QueryDetails:
    """Full detail for one tracked statement."""
    query_id: str
    query_text: str
    normalized_query: str
    statistics: Mapping[str, Any] = field(default_factory=dict)
    tables_accessed: Tuple[str, ...] = ()
    indexes_used: Tuple[str, ...] = ()
    estimated_cost: float = 0.0
    execution_plan: Optional[ExecutionPlan] = None

    def __post_init__(self) -> None:
        _freeze_mapping(self, "statistics")
        _freeze_sequence(self, "tables_accessed")
        _freeze_sequence(self, "indexes_used")


@dataclass(frozen=True)
class QueryStatistic:
    """One time-series sample for a statement."""
    timestamp: datetime
    query_id: str
    execution_time_ms: float
    rows_returned: int = 0
    cpu_time_ms: float = 0.0
    logical_reads: int = 0
    physical_reads: int = 0


@dataclass(frozen=True)
class RunningQuery:
    """A live session snapshot, valid only at observation time."""
    session_id: int
    query_text: str
    start_time: Optional[datetime]
    duration: timedelta
    status: str
    user_name: str = ""
    database_name: str = ""
    cpu_time_ms: Optional[float] = None
    memory_usage_kb: Optional[float] = None


@dataclass(frozen=True)
class DatabaseSize:
    """Storage footprint of the current database."""
    database_name: str
    total_size_bytes: int
    data_size_bytes: int = 0
    log_size_bytes: int = 0
    index_size_bytes: int = 0
    free_space_bytes: Optional[int] = None
    growth_rate_bytes_per_day: Optional[float] = None
    last_measured: Optional[datetime] = None
    previous_measurement: Optional[datetime] = None

    def projected_size(self, days: int) -> Optional[int]:
        """Linear projection from the growth rate; None when the rate is unknown."""
        if self.growth_rate_bytes_per_day is None:
            return None
        return int(self.total_size_bytes + self.growth_rate_bytes_per_day * days)

    @property
    def projected_size_in_30_days(self) -> Optional[int]:
        return self.projected_size(30)

    @property
    def projected_size_in_90_days(self) -> Optional[int]:
        return self.projected_size(90)


@dataclass(frozen=True)
class ConnectionStatistics:
    """Connection counts at one point in time."""
    measured_at: datetime
    total_connections: int
    active_connections: int = 0
    idle_connections: int = 0
    sleeping_connections: int = 0
    max_connections: int = 0
    connections_by_database: Mapping[str, int] = field(default_factory=dict)
    connections_by_user: Mapping[str, int] = field(default_factory=dict)
    peak_connections_24h: Optional[int] = None
    peak_connections_time: Optional[datetime] = None

    def __post_init__(self) -> None:
        _freeze_mapping(self, "connections_by_database")
        _freeze_mapping(self, "connections_by_user")

    @property
    def usage_percent(self) -> float:
        if self.max_connections <= 0:
            return 0.0
        return self.total_connections / self.max_connections * 100.0


@dataclass(frozen=True)
class WaitStatistic:
    """Accumulated waits of one type."""
    wait_type: str
    wait_count: int
    wait_time_ms: float
    average_wait_time_ms: float = 0.0
    percentage_of_total: float = 0.0


@dataclass(frozen=True)
class ResourceUtilization:
    """Host and engine resource usage. ``None`` marks a metric the engine does not expose."""
    measured_at: datetime
    cpu_usage_percent: Optional[float] = None
    cpu_usage_database_percent: Optional[float] = None
    cpu_usage_system_percent: Optional[float] = None
    total_memory_bytes: Optional[int] = None
    used_memory_bytes: Optional[int] = None
    free_memory_bytes: Optional[int] = None
    buffer_cache_bytes: Optional[int] = None
    procedure_cache_bytes: Optional[int] = None
    disk_reads_per_second: Optional[float] = None
    disk_writes_per_second: Optional[float] = None
    disk_read_latency_ms: Optional[float] = None
    disk_write_latency_ms: Optional[float] = None
    network_bytes_received_per_second: Optional[float] = None
    network_bytes_sent_per_second: Optional[float] = None
    top_waits: Mapping[str, WaitStatistic] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _freeze_mapping(self, "top_waits")

    @property
    def memory_usage_percent(self) -> Optional[float]:
        if not self.total_memory_bytes or self.used_memory_bytes is None:
            return None
        return self.used_memory_bytes / self.total_memory_bytes * 100.0


def sort_top_queries(metrics: Any) -> Tuple[QueryMetric, ...]:
    """Order metrics by total time desc, then execution count desc, then query id."""
    return tuple(
        sorted(metrics, key=lambda m: (-m.total_time_ms, -m.execution_count, m.query_id))
    )


def sort_statistics(samples: Any) -> Tuple[QueryStatistic, ...]:
    """Order samples by timestamp, then query id."""
    return tuple(sorted(samples, key=lambda s: (s.timestamp, s.query_id)))


def snapshot_settings(settings: Dict[str, Any]) -> Dict[str, str]:
    """Copy engine settings into a plain ``name -> str`` dict owned by the caller."""
    return {str(name): "" if value is None else str(value) for name, value in settings.items()}
