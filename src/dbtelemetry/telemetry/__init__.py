"""Telemetry data model.

Example:
    >>> from dbtelemetry.telemetry import QueryMetric
    >>> metric = QueryMetric.from_aggregates(
    ...     query_id="42", query_text="SELECT 1", execution_count=3,
    ...     total_time_ms=30.0, average_time_ms=10.0001, min_time_ms=9.0, max_time_ms=10.0,
    ... )
    >>> metric.average_time_ms
    10.0
"""

from .health import DatabaseHealth, HealthIssue, HealthStatus
from .models import (
    ConnectionStatistics,
    DatabaseSize,
    ExecutionPlan,
    ExecutionPlanNode,
    PlatformType,
    QueryDetails,
    QueryMetric,
    QueryStatistic,
    ResourceUtilization,
    RunningQuery,
    WaitStatistic,
)

__all__ = [
    "PlatformType",
    "QueryMetric",
    "QueryDetails",
    "QueryStatistic",
    "RunningQuery",
    "ExecutionPlan",
    "ExecutionPlanNode",
    "DatabaseHealth",
    "DatabaseSize",
    "HealthIssue",
    "HealthStatus",
    "ConnectionStatistics",
    "ResourceUtilization",
    "WaitStatistic",
]
