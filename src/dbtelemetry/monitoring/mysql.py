"""MySQL monitors.

Query telemetry comes from ``performance_schema`` digest summaries (MySQL
8.0+), sessions from ``information_schema.PROCESSLIST``. Timer columns are in
picoseconds. Statements are identified by their digest.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

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

PICOSECONDS_PER_MS = 1_000_000_000

_DIGESTS = "performance_schema.events_statements_summary_by_digest"

TOP_QUERIES_SQL = f"""
SELECT
    DIGEST AS query_id,
    DIGEST_TEXT AS query_text,
    COUNT_STAR AS execution_count,
    SUM_TIMER_WAIT / {PICOSECONDS_PER_MS} AS total_time_ms,
    AVG_TIMER_WAIT / {PICOSECONDS_PER_MS} AS average_time_ms,
    MIN_TIMER_WAIT / {PICOSECONDS_PER_MS} AS min_time_ms,
    MAX_TIMER_WAIT / {PICOSECONDS_PER_MS} AS max_time_ms,
    SUM_ROWS_SENT AS rows_returned,
    LAST_SEEN AS last_seen
FROM {_DIGESTS}
WHERE SCHEMA_NAME = DATABASE()
  AND DIGEST IS NOT NULL
ORDER BY SUM_TIMER_WAIT DESC, COUNT_STAR DESC, DIGEST
LIMIT %s
"""

QUERY_DETAILS_SQL = f"""
SELECT
    DIGEST AS query_id,
    DIGEST_TEXT AS query_text,
    QUERY_SAMPLE_TEXT AS sample_text,
    COUNT_STAR AS execution_count,
    SUM_TIMER_WAIT / {PICOSECONDS_PER_MS} AS total_time_ms,
    AVG_TIMER_WAIT / {PICOSECONDS_PER_MS} AS average_time_ms,
    SUM_LOCK_TIME / {PICOSECONDS_PER_MS} AS lock_time_ms,
    SUM_ROWS_SENT AS rows_sent,
    SUM_ROWS_EXAMINED AS rows_examined,
    SUM_NO_INDEX_USED AS no_index_used,
    SUM_CREATED_TMP_DISK_TABLES AS tmp_disk_tables,
    SUM_SORT_ROWS AS sort_rows
FROM {_DIGESTS}
WHERE SCHEMA_NAME = DATABASE()
  AND DIGEST = %s
LIMIT 1
"""

QUERY_SAMPLE_SQL = f"""
SELECT QUERY_SAMPLE_TEXT AS sample_text
FROM {_DIGESTS}
WHERE SCHEMA_NAME = DATABASE()
  AND DIGEST = %s
LIMIT 1
"""

QUERY_STATISTICS_SQL = f"""
SELECT
    DIGEST AS query_id,
    LAST_SEEN AS last_seen,
    AVG_TIMER_WAIT / {PICOSECONDS_PER_MS} AS execution_time_ms,
    SUM_ROWS_SENT / NULLIF(COUNT_STAR, 0) AS rows_per_call
FROM {_DIGESTS}
WHERE SCHEMA_NAME = DATABASE()
  AND DIGEST IS NOT NULL
  AND LAST_SEEN BETWEEN %s AND %s
"""

RUNNING_QUERIES_SQL = """
SELECT ID AS session_id, INFO AS query_text, TIME AS seconds, STATE AS state, USER AS user_name, DB AS database_name
FROM information_schema.PROCESSLIST
WHERE COMMAND <> 'Sleep'
  AND ID <> CONNECTION_ID()
  AND INFO IS NOT NULL
ORDER BY TIME DESC
"""

GLOBAL_STATUS_SQL = """
SELECT VARIABLE_NAME AS name, VARIABLE_VALUE AS value
FROM performance_schema.global_status
WHERE VARIABLE_NAME IN ({placeholders})
"""

HEALTH_QUERY_SQL = f"""
SELECT
    COUNT(*) AS total_queries,
    AVG(AVG_TIMER_WAIT) / {PICOSECONDS_PER_MS} AS average_time_ms,
    SUM(AVG_TIMER_WAIT / {PICOSECONDS_PER_MS} > %s) AS slow_queries
FROM {_DIGESTS}
WHERE SCHEMA_NAME = DATABASE()
"""

DATABASE_SIZE_SQL = """
SELECT
    DATABASE() AS database_name,
    COALESCE(SUM(DATA_LENGTH), 0) AS data_bytes,
    COALESCE(SUM(INDEX_LENGTH), 0) AS index_bytes,
    SUM(DATA_FREE) AS free_bytes
FROM information_schema.TABLES
WHERE TABLE_SCHEMA = DATABASE()
"""

CONNECTION_SUMMARY_SQL = """
SELECT
    COUNT(*) AS total,
    SUM(COMMAND NOT IN ('Sleep', 'Daemon')) AS active,
    SUM(COMMAND = 'Sleep') AS idle
FROM information_schema.PROCESSLIST
"""

CONNECTIONS_BY_DATABASE_SQL = """
SELECT DB AS name, COUNT(*) AS connections
FROM information_schema.PROCESSLIST
WHERE DB IS NOT NULL
GROUP BY DB
"""

CONNECTIONS_BY_USER_SQL = """
SELECT USER AS name, COUNT(*) AS connections
FROM information_schema.PROCESSLIST
GROUP BY USER
"""

WAIT_EVENTS_SQL = f"""
SELECT
    EVENT_NAME AS wait_type,
    COUNT_STAR AS wait_count,
    SUM_TIMER_WAIT / {PICOSECONDS_PER_MS} AS wait_time_ms,
    AVG_TIMER_WAIT / {PICOSECONDS_PER_MS} AS average_wait_ms,
    100.0 * SUM_TIMER_WAIT / NULLIF(SUM(SUM_TIMER_WAIT) OVER (), 0) AS percentage
FROM performance_schema.events_waits_summary_global_by_event_name
WHERE COUNT_STAR > 0 AND EVENT_NAME <> 'idle'
ORDER BY SUM_TIMER_WAIT DESC
LIMIT 10
"""

VARIABLES_SQL = """
SELECT VARIABLE_NAME AS name, VARIABLE_VALUE AS value
FROM performance_schema.global_variables
"""


async def global_status(
    connection: DriverConnection, names: Sequence[str], *, timeout: Optional[float] = None
) -> Dict[str, str]:
    """Selected ``SHOW GLOBAL STATUS`` values keyed by variable name."""
    statement = GLOBAL_STATUS_SQL.format(placeholders=", ".join("%s" for _ in names))
    rows = await connection.fetch(statement, *names, timeout=timeout)
    return {row["name"]: row["value"] for row in rows}


def _naive_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


class MySQLQueryMonitor(BaseQueryMonitor):
    platform = PlatformType.MYSQL

    async def _fetch_top_queries(self, connection: DriverConnection, limit: int) -> List[QueryMetric]:
        rows = await self._fetch(connection, TOP_QUERIES_SQL, limit)
        return [
            QueryMetric.from_aggregates(
                query_id=row["query_id"],
                query_text=row["query_text"] or "",
                execution_count=NumberUtils.to_int(row["execution_count"]),
                total_time_ms=NumberUtils.to_float(row["total_time_ms"]),
                average_time_ms=NumberUtils.to_float(row["average_time_ms"]),
                min_time_ms=NumberUtils.to_float(row["min_time_ms"]),
                max_time_ms=NumberUtils.to_float(row["max_time_ms"]),
                rows_returned=NumberUtils.to_int(row["rows_returned"]),
                last_executed_at=row["last_seen"],
                database_name=connection.database_name,
            )
            for row in rows
        ]

    async def _fetch_query_details(
        self, connection: DriverConnection, query_id: str
    ) -> Optional[QueryDetails]:
        rows = await self._fetch(connection, QUERY_DETAILS_SQL, query_id)
        if not rows:
            return None
        row = rows[0]
        query_text = row["query_text"] or ""
        return QueryDetails(
            query_id=row["query_id"],
            query_text=query_text,
            normalized_query=SqlTextUtils.normalize_query(query_text),
            statistics={
                "execution_count": NumberUtils.to_int(row["execution_count"]),
                "total_time_ms": NumberUtils.to_float(row["total_time_ms"]),
                "average_time_ms": NumberUtils.to_float(row["average_time_ms"]),
                "lock_time_ms": NumberUtils.to_float(row["lock_time_ms"]),
                "rows_sent": NumberUtils.to_int(row["rows_sent"]),
                "rows_examined": NumberUtils.to_int(row["rows_examined"]),
                "no_index_used": NumberUtils.to_int(row["no_index_used"]),
                "tmp_disk_tables": NumberUtils.to_int(row["tmp_disk_tables"]),
                "sort_rows": NumberUtils.to_int(row["sort_rows"]),
            },
            tables_accessed=SqlTextUtils.extract_tables(row["sample_text"] or query_text),
        )

    async def _fetch_execution_plan(
        self, connection: DriverConnection, query_id: str
    ) -> Optional[ExecutionPlan]:
        # Digest text has its literals replaced by '?'; only the sample can be explained
        sample = await self._fetch_value(connection, QUERY_SAMPLE_SQL, query_id)
        if not sample:
            return None
        return await self.explain_on(connection, sample)

    async def _fetch_query_statistics(
        self, connection: DriverConnection, start: datetime, end: datetime
    ) -> List[QueryStatistic]:
        rows = await self._fetch(connection, QUERY_STATISTICS_SQL, _naive_utc(start), _naive_utc(end))
        return [
            QueryStatistic(
                timestamp=row["last_seen"],
                query_id=row["query_id"],
                execution_time_ms=NumberUtils.to_float(row["execution_time_ms"]),
                rows_returned=NumberUtils.to_int(row["rows_per_call"]),
            )
            for row in rows
        ]

    async def _fetch_running_queries(self, connection: DriverConnection) -> List[RunningQuery]:
        rows = await self._fetch(connection, RUNNING_QUERIES_SQL)
        now = utc_now()
        queries = []
        for row in rows:
            elapsed = timedelta(seconds=NumberUtils.to_float(row["seconds"]))
            queries.append(
                RunningQuery(
                    session_id=NumberUtils.to_int(row["session_id"]),
                    query_text=row["query_text"] or "",
                    start_time=now - elapsed,
                    duration=elapsed,
                    status=row["state"] or "",
                    user_name=row["user_name"] or "",
                    database_name=row["database_name"] or "",
                )
            )
        return queries


class MySQLHealthMonitor(BaseHealthMonitor):
    platform = PlatformType.MYSQL

    async def _fetch_health(self, connection: DriverConnection) -> DatabaseHealth:
        thresholds = self.config.health
        version = await self._fetch_value(connection, "SELECT VERSION()")
        max_connections = await self._fetch_value(connection, "SELECT @@max_connections")
        status = await global_status(
            connection, ("Uptime", "Threads_connected"), timeout=self.command_timeout
        )
        queries = await self._fetch_one(
            connection, HEALTH_QUERY_SQL, float(thresholds.slow_query_threshold_ms)
        )
        uptime = NumberUtils.to_optional_float(status.get("Uptime"))

        # Host CPU, memory and disk are not visible from SQL
        return DatabaseHealth(
            database_name=connection.database_name,
            platform=self.platform,
            platform_version=str(version or ""),
            checked_at=utc_now(),
            uptime_hours=uptime / 3600.0 if uptime is not None else None,
            active_connections=NumberUtils.to_optional_int(status.get("Threads_connected")),
            max_connections=NumberUtils.to_int(max_connections),
            average_query_time_ms=NumberUtils.to_float(queries["average_time_ms"]),
            total_queries=NumberUtils.to_int(queries["total_queries"]),
            slow_queries=NumberUtils.to_int(queries["slow_queries"]),
            thresholds=thresholds,
        )

    async def _fetch_database_size(self, connection: DriverConnection) -> DatabaseSize:
        row = await self._fetch_one(connection, DATABASE_SIZE_SQL)
        data = NumberUtils.to_int(row["data_bytes"])
        index = NumberUtils.to_int(row["index_bytes"])
        return DatabaseSize(
            database_name=row["database_name"] or connection.database_name,
            total_size_bytes=data + index,
            data_size_bytes=data,
            index_size_bytes=index,
            free_space_bytes=None if row["free_bytes"] is None else NumberUtils.to_int(row["free_bytes"]),
            last_measured=utc_now(),
        )

    async def _fetch_connection_stats(self, connection: DriverConnection) -> ConnectionStatistics:
        summary = await self._fetch_one(connection, CONNECTION_SUMMARY_SQL)
        max_connections = await self._fetch_value(connection, "SELECT @@max_connections")
        by_database = await self._fetch(connection, CONNECTIONS_BY_DATABASE_SQL)
        by_user = await self._fetch(connection, CONNECTIONS_BY_USER_SQL)
        peak = await global_status(
            connection, ("Max_used_connections",), timeout=self.command_timeout
        )
        return ConnectionStatistics(
            measured_at=utc_now(),
            total_connections=NumberUtils.to_int(summary["total"]),
            active_connections=NumberUtils.to_int(summary["active"]),
            idle_connections=NumberUtils.to_int(summary["idle"]),
            max_connections=NumberUtils.to_int(max_connections),
            connections_by_database={r["name"]: NumberUtils.to_int(r["connections"]) for r in by_database},
            connections_by_user={r["name"]: NumberUtils.to_int(r["connections"]) for r in by_user},
            # Peak since server start, not a rolling 24h window
            peak_connections_24h=(
                NumberUtils.to_int(peak["Max_used_connections"]) if "Max_used_connections" in peak else None
            ),
        )

    async def _fetch_resource_utilization(self, connection: DriverConnection) -> ResourceUtilization:
        buffer_pool = await self._fetch_value(connection, "SELECT @@innodb_buffer_pool_size")
        status = await global_status(
            connection,
            ("Uptime", "Innodb_data_reads", "Innodb_data_writes", "Bytes_received", "Bytes_sent"),
            timeout=self.command_timeout,
        )
        waits = await self._fetch(connection, WAIT_EVENTS_SQL)

        uptime = NumberUtils.to_float(status.get("Uptime"))

        def per_second(name: str) -> Optional[float]:
            if not uptime or name not in status:
                return None
            return NumberUtils.to_float(status[name]) / uptime

        return ResourceUtilization(
            measured_at=utc_now(),
            buffer_cache_bytes=None if buffer_pool is None else NumberUtils.to_int(buffer_pool),
            disk_reads_per_second=per_second("Innodb_data_reads"),
            disk_writes_per_second=per_second("Innodb_data_writes"),
            network_bytes_received_per_second=per_second("Bytes_received"),
            network_bytes_sent_per_second=per_second("Bytes_sent"),
            top_waits={
                row["wait_type"]: WaitStatistic(
                    wait_type=row["wait_type"],
                    wait_count=NumberUtils.to_int(row["wait_count"]),
                    wait_time_ms=NumberUtils.to_float(row["wait_time_ms"]),
                    average_wait_time_ms=NumberUtils.to_float(row["average_wait_ms"]),
                    percentage_of_total=NumberUtils.to_float(row["percentage"]),
                )
                for row in waits
            },
        )

    async def _fetch_configuration(self, connection: DriverConnection) -> Dict[str, Any]:
        rows = await self._fetch(connection, VARIABLES_SQL)
        return {row["name"]: row["value"] for row in rows}
