"""PostgreSQL monitors.

Query telemetry comes from the ``pg_stat_statements`` extension (PostgreSQL
13+ column names), sessions from ``pg_stat_activity`` and settings from
``pg_settings``. pg_stat_statements times are already in milliseconds.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..core.utils import NumberUtils, SqlTextUtils, utc_now
from ..drivers.base import DriverConnection
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
    WaitStatistic,
)
from .base import BaseHealthMonitor, BaseQueryMonitor

# Statements issued by monitoring tools, this one included
_EXCLUDE_MONITORING = "query NOT LIKE '%pg_stat%'"

_CURRENT_DB = "dbid = (SELECT oid FROM pg_database WHERE datname = current_database())"

TOP_QUERIES_SQL = f"""
SELECT
    queryid::text AS query_id,
    query,
    calls,
    total_exec_time,
    mean_exec_time,
    min_exec_time,
    max_exec_time,
    rows
FROM pg_stat_statements
WHERE {_CURRENT_DB}
  AND queryid IS NOT NULL
  AND {_EXCLUDE_MONITORING}
ORDER BY total_exec_time DESC, calls DESC, queryid
LIMIT $1
"""

QUERY_DETAILS_SQL = f"""
SELECT
    queryid::text AS query_id,
    query,
    calls,
    total_exec_time,
    mean_exec_time,
    stddev_exec_time,
    rows,
    shared_blks_hit,
    shared_blks_read,
    shared_blks_written,
    temp_blks_written
FROM pg_stat_statements
WHERE {_CURRENT_DB}
  AND queryid::text = $1
LIMIT 1
"""

QUERY_TEXT_SQL = f"""
SELECT query
FROM pg_stat_statements
WHERE {_CURRENT_DB}
  AND queryid::text = $1
LIMIT 1
"""

QUERY_STATISTICS_SQL = f"""
SELECT
    queryid::text AS query_id,
    now() AS sampled_at,
    mean_exec_time,
    rows / NULLIF(calls, 0) AS rows_per_call,
    (shared_blks_hit + shared_blks_read) / NULLIF(calls, 0) AS logical_reads,
    shared_blks_read / NULLIF(calls, 0) AS physical_reads
FROM pg_stat_statements
WHERE {_CURRENT_DB}
  AND queryid IS NOT NULL
  AND calls > 0
  AND now() BETWEEN $1 AND $2
"""

RUNNING_QUERIES_SQL = """
SELECT
    pid,
    query,
    query_start,
    EXTRACT(EPOCH FROM (now() - query_start)) AS duration_seconds,
    state,
    usename,
    datname
FROM pg_stat_activity
WHERE state = 'active'
  AND pid <> pg_backend_pid()
ORDER BY query_start
"""

CONNECTION_SUMMARY_SQL = """
SELECT
    count(*) AS total,
    count(*) FILTER (WHERE state = 'active') AS active,
    count(*) FILTER (WHERE state = 'idle') AS idle,
    count(*) FILTER (WHERE state LIKE 'idle in transaction%') AS sleeping,
    current_setting('max_connections')::int AS max_connections
FROM pg_stat_activity
WHERE backend_type = 'client backend'
"""

CONNECTIONS_BY_DATABASE_SQL = """
SELECT datname AS name, count(*) AS connections
FROM pg_stat_activity
WHERE backend_type = 'client backend' AND datname IS NOT NULL
GROUP BY datname
"""

CONNECTIONS_BY_USER_SQL = """
SELECT usename AS name, count(*) AS connections
FROM pg_stat_activity
WHERE backend_type = 'client backend' AND usename IS NOT NULL
GROUP BY usename
"""

UPTIME_SQL = "SELECT EXTRACT(EPOCH FROM (now() - pg_postmaster_start_time())) / 3600.0 AS uptime_hours"

HEALTH_QUERY_SQL = f"""
SELECT
    count(*) AS total_queries,
    avg(mean_exec_time) AS average_time_ms,
    count(*) FILTER (WHERE mean_exec_time > $1) AS slow_queries
FROM pg_stat_statements
WHERE {_CURRENT_DB}
"""

DATABASE_SIZE_SQL = """
SELECT
    current_database() AS database_name,
    pg_database_size(current_database()) AS total_size,
    COALESCE((SELECT sum(pg_relation_size(indexrelid)) FROM pg_stat_user_indexes), 0) AS index_size
"""

BUFFER_CACHE_SQL = """
SELECT
    (SELECT setting::bigint FROM pg_settings WHERE name = 'shared_buffers')
        * current_setting('block_size')::bigint AS buffer_cache_bytes
"""

WAIT_EVENTS_SQL = """
SELECT wait_event_type || ':' || wait_event AS wait_type, count(*) AS waits
FROM pg_stat_activity
WHERE wait_event IS NOT NULL
GROUP BY wait_event_type, wait_event
ORDER BY waits DESC
LIMIT 10
"""

SETTINGS_SQL = """
SELECT name, setting
FROM pg_settings
WHERE category LIKE '%Performance%'
   OR category LIKE '%Resource%'
   OR category LIKE '%Query Tuning%'
"""


class PostgreSQLQueryMonitor(BaseQueryMonitor):
    platform = PlatformType.POSTGRESQL

    def _metric(self, row: Dict[str, Any], database_name: str) -> QueryMetric:
        return QueryMetric.from_aggregates(
            query_id=row["query_id"],
            query_text=row["query"] or "",
            execution_count=NumberUtils.to_int(row["calls"]),
            total_time_ms=NumberUtils.to_float(row["total_exec_time"]),
            average_time_ms=NumberUtils.to_float(row["mean_exec_time"]),
            min_time_ms=NumberUtils.to_float(row["min_exec_time"]),
            max_time_ms=NumberUtils.to_float(row["max_exec_time"]),
            rows_returned=NumberUtils.to_int(row["rows"]),
            database_name=database_name,
        )

    async def _fetch_top_queries(self, connection: DriverConnection, limit: int) -> List[QueryMetric]:
        rows = await self._fetch(connection, TOP_QUERIES_SQL, limit)
        return [self._metric(row, connection.database_name) for row in rows]

    async def _fetch_query_details(
        self, connection: DriverConnection, query_id: str
    ) -> Optional[QueryDetails]:
        rows = await self._fetch(connection, QUERY_DETAILS_SQL, query_id)
        if not rows:
            return None
        row = rows[0]
        query_text = row["query"] or ""
        return QueryDetails(
            query_id=row["query_id"],
            query_text=query_text,
            normalized_query=SqlTextUtils.normalize_query(query_text),
            statistics={
                "calls": NumberUtils.to_int(row["calls"]),
                "total_time_ms": NumberUtils.to_float(row["total_exec_time"]),
                "average_time_ms": NumberUtils.to_float(row["mean_exec_time"]),
                "stddev_time_ms": NumberUtils.to_float(row["stddev_exec_time"]),
                "rows": NumberUtils.to_int(row["rows"]),
                "shared_blocks_hit": NumberUtils.to_int(row["shared_blks_hit"]),
                "shared_blocks_read": NumberUtils.to_int(row["shared_blks_read"]),
                "shared_blocks_written": NumberUtils.to_int(row["shared_blks_written"]),
                "temp_blocks_written": NumberUtils.to_int(row["temp_blks_written"]),
            },
            tables_accessed=SqlTextUtils.extract_tables(query_text),
        )

    async def _fetch_execution_plan(
        self, connection: DriverConnection, query_id: str
    ) -> Optional[ExecutionPlan]:
        query_text = await self._fetch_value(connection, QUERY_TEXT_SQL, query_id)
        if query_text is None:
            return None
        return await self.explain_on(connection, query_text)

    async def _fetch_query_statistics(
        self, connection: DriverConnection, start: datetime, end: datetime
    ) -> List[QueryStatistic]:
        # pg_stat_statements keeps no history; each call yields one sample per statement
        rows = await self._fetch(connection, QUERY_STATISTICS_SQL, start, end)
        return [
            QueryStatistic(
                timestamp=row["sampled_at"],
                query_id=row["query_id"],
                execution_time_ms=NumberUtils.to_float(row["mean_exec_time"]),
                rows_returned=NumberUtils.to_int(row["rows_per_call"]),
                logical_reads=NumberUtils.to_int(row["logical_reads"]),
                physical_reads=NumberUtils.to_int(row["physical_reads"]),
            )
            for row in rows
        ]

    async def _fetch_running_queries(self, connection: DriverConnection) -> List[RunningQuery]:
        rows = await self._fetch(connection, RUNNING_QUERIES_SQL)
        return [
            RunningQuery(
                session_id=NumberUtils.to_int(row["pid"]),
                query_text=row["query"] or "",
                start_time=row["query_start"],
                duration=timedelta(seconds=NumberUtils.to_float(row["duration_seconds"])),
                status=row["state"] or "",
                user_name=row["usename"] or "",
                database_name=row["datname"] or "",
            )
            for row in rows
        ]


class PostgreSQLHealthMonitor(BaseHealthMonitor):
    platform = PlatformType.POSTGRESQL

    async def _fetch_health(self, connection: DriverConnection) -> DatabaseHealth:
        thresholds = self.config.health
        version = await self._fetch_value(connection, "SHOW server_version")
        uptime = await self._fetch_value(connection, UPTIME_SQL)
        connections = await self._fetch_one(connection, CONNECTION_SUMMARY_SQL)
        queries = await self._fetch_one(
            connection, HEALTH_QUERY_SQL, float(thresholds.slow_query_threshold_ms)
        )

        # CPU, memory and disk usage are not visible from SQL
        return DatabaseHealth(
            database_name=connection.database_name,
            platform=self.platform,
            platform_version=str(version or ""),
            checked_at=utc_now(),
            uptime_hours=NumberUtils.to_optional_float(uptime),
            active_connections=NumberUtils.to_int(connections["total"]),
            max_connections=NumberUtils.to_int(connections["max_connections"]),
            average_query_time_ms=NumberUtils.to_float(queries["average_time_ms"]),
            total_queries=NumberUtils.to_int(queries["total_queries"]),
            slow_queries=NumberUtils.to_int(queries["slow_queries"]),
            thresholds=thresholds,
        )

    async def _fetch_database_size(self, connection: DriverConnection) -> DatabaseSize:
        row = await self._fetch_one(connection, DATABASE_SIZE_SQL)
        total = NumberUtils.to_int(row["total_size"])
        index = NumberUtils.to_int(row["index_size"])
        return DatabaseSize(
            database_name=row["database_name"] or connection.database_name,
            total_size_bytes=total,
            data_size_bytes=max(total - index, 0),
            index_size_bytes=index,
            last_measured=utc_now(),
        )

    async def _fetch_connection_stats(self, connection: DriverConnection) -> ConnectionStatistics:
        summary = await self._fetch_one(connection, CONNECTION_SUMMARY_SQL)
        by_database = await self._fetch(connection, CONNECTIONS_BY_DATABASE_SQL)
        by_user = await self._fetch(connection, CONNECTIONS_BY_USER_SQL)
        return ConnectionStatistics(
            measured_at=utc_now(),
            total_connections=NumberUtils.to_int(summary["total"]),
            active_connections=NumberUtils.to_int(summary["active"]),
            idle_connections=NumberUtils.to_int(summary["idle"]),
            sleeping_connections=NumberUtils.to_int(summary["sleeping"]),
            max_connections=NumberUtils.to_int(summary["max_connections"]),
            connections_by_database={r["name"]: NumberUtils.to_int(r["connections"]) for r in by_database},
            connections_by_user={r["name"]: NumberUtils.to_int(r["connections"]) for r in by_user},
        )

    async def _fetch_resource_utilization(self, connection: DriverConnection) -> ResourceUtilization:
        buffer_cache = await self._fetch_value(connection, BUFFER_CACHE_SQL)
        waits = await self._fetch(connection, WAIT_EVENTS_SQL)
        total_waits = sum(NumberUtils.to_int(row["waits"]) for row in waits)

        # pg_stat_activity only shows sessions waiting right now, so counts are samples
        top_waits = {
            row["wait_type"]: WaitStatistic(
                wait_type=row["wait_type"],
                wait_count=NumberUtils.to_int(row["waits"]),
                wait_time_ms=0.0,
                percentage_of_total=(
                    NumberUtils.to_int(row["waits"]) / total_waits * 100.0 if total_waits else 0.0
                ),
            )
            for row in waits
        }
        return ResourceUtilization(
            measured_at=utc_now(),
            buffer_cache_bytes=None if buffer_cache is None else NumberUtils.to_int(buffer_cache),
            top_waits=top_waits,
        )

    async def _fetch_configuration(self, connection: DriverConnection) -> Dict[str, Any]:
        rows = await self._fetch(connection, SETTINGS_SQL)
        return {row["name"]: row["setting"] for row in rows}
