"""SQL Server monitors.

Built on the ``sys.dm_exec_*`` and ``sys.dm_os_*`` dynamic management views,
which require ``VIEW SERVER STATE``. Statements are identified by their
``query_hash`` rendered as ``0x``-prefixed hex; statistics from every cached
plan sharing a hash are aggregated. DMV timings are in microseconds and are
converted to milliseconds in SQL. Server-local timestamps are shifted to UTC
in SQL and returned naive, which the monitor bases read as UTC.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..core.utils import NumberUtils, SqlTextUtils, utc_now
from ..drivers.base import DriverConnection
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
    WaitStatistic,
)
from .base import BaseHealthMonitor, BaseQueryMonitor

_TO_UTC = "DATEADD(MINUTE, DATEDIFF(MINUTE, SYSDATETIME(), SYSUTCDATETIME()), {column})"
_LAST_EXECUTION_UTC = _TO_UTC.format(column="qs.last_execution_time")
_START_TIME_UTC = _TO_UTC.format(column="r.start_time")

_STATEMENT_TEXT = """SUBSTRING(st.text, (qs.statement_start_offset / 2) + 1,
        ((CASE qs.statement_end_offset
            WHEN -1 THEN DATALENGTH(st.text)
            ELSE qs.statement_end_offset
        END - qs.statement_start_offset) / 2) + 1)"""

_QUERY_ID = "CONVERT(varchar(20), qs.query_hash, 1)"

# Restrict to plans compiled in the current database
_CURRENT_DB_PLANS = """CROSS APPLY sys.dm_exec_plan_attributes(qs.plan_handle) AS pa
WHERE pa.attribute = 'dbid' AND CONVERT(int, pa.value) = DB_ID()"""

TOP_QUERIES_SQL = f"""
SELECT TOP (?)
    {_QUERY_ID} AS query_id,
    MAX({_STATEMENT_TEXT}) AS query_text,
    SUM(qs.execution_count) AS execution_count,
    SUM(qs.total_elapsed_time) / 1000.0 AS total_time_ms,
    MIN(qs.min_elapsed_time) / 1000.0 AS min_time_ms,
    MAX(qs.max_elapsed_time) / 1000.0 AS max_time_ms,
    SUM(qs.total_rows) AS rows_returned,
    MAX({_LAST_EXECUTION_UTC}) AS last_executed_at
FROM sys.dm_exec_query_stats AS qs
CROSS APPLY sys.dm_exec_sql_text(qs.sql_handle) AS st
{_CURRENT_DB_PLANS}
  AND st.text NOT LIKE '%sys.dm_exec%'
GROUP BY qs.query_hash
ORDER BY total_time_ms DESC, execution_count DESC, query_id ASC
"""

QUERY_DETAILS_SQL = f"""
SELECT
    {_QUERY_ID} AS query_id,
    MAX({_STATEMENT_TEXT}) AS query_text,
    SUM(qs.execution_count) AS execution_count,
    SUM(qs.total_elapsed_time) / 1000.0 AS total_time_ms,
    SUM(qs.total_worker_time) / 1000.0 AS total_cpu_time_ms,
    SUM(qs.total_logical_reads) AS total_logical_reads,
    SUM(qs.total_physical_reads) AS total_physical_reads,
    SUM(qs.total_logical_writes) AS total_logical_writes,
    SUM(qs.total_rows) AS total_rows,
    COUNT(*) AS cached_plans
FROM sys.dm_exec_query_stats AS qs
CROSS APPLY sys.dm_exec_sql_text(qs.sql_handle) AS st
WHERE {_QUERY_ID} = ?
GROUP BY qs.query_hash
"""

QUERY_PLAN_SQL = f"""
SELECT TOP 1 CAST(qp.query_plan AS nvarchar(max)) AS query_plan
FROM sys.dm_exec_query_stats AS qs
CROSS APPLY sys.dm_exec_query_plan(qs.plan_handle) AS qp
WHERE {_QUERY_ID} = ? AND qp.query_plan IS NOT NULL
ORDER BY qs.last_execution_time DESC
"""

QUERY_STATISTICS_SQL = f"""
SELECT
    {_QUERY_ID} AS query_id,
    {_LAST_EXECUTION_UTC} AS sampled_at,
    qs.last_elapsed_time / 1000.0 AS execution_time_ms,
    qs.last_rows AS rows_returned,
    qs.last_worker_time / 1000.0 AS cpu_time_ms,
    qs.last_logical_reads AS logical_reads,
    qs.last_physical_reads AS physical_reads
FROM sys.dm_exec_query_stats AS qs
{_CURRENT_DB_PLANS}
  AND {_LAST_EXECUTION_UTC} BETWEEN ? AND ?
"""

RUNNING_QUERIES_SQL = f"""
SELECT
    r.session_id,
    t.text AS query_text,
    {_START_TIME_UTC} AS start_time,
    r.total_elapsed_time AS elapsed_ms,
    r.status,
    s.login_name,
    DB_NAME(r.database_id) AS database_name,
    r.cpu_time,
    r.granted_query_memory * 8 AS memory_kb
FROM sys.dm_exec_requests AS r
JOIN sys.dm_exec_sessions AS s ON s.session_id = r.session_id
CROSS APPLY sys.dm_exec_sql_text(r.sql_handle) AS t
WHERE r.session_id <> @@SPID AND s.is_user_process = 1
ORDER BY r.start_time
"""

SERVER_INFO_SQL = """
SELECT
    CAST(SERVERPROPERTY('ProductVersion') AS nvarchar(128)) AS version,
    DATEDIFF(MINUTE, si.sqlserver_start_time, SYSDATETIME()) / 60.0 AS uptime_hours,
    @@MAX_CONNECTIONS AS max_connections,
    (SELECT COUNT(*) FROM sys.dm_exec_sessions WHERE is_user_process = 1) AS user_sessions
FROM sys.dm_os_sys_info AS si
"""

CPU_SQL = """
SELECT TOP 1
    record.value('(./Record/SchedulerMonitorEvent/SystemHealth/ProcessUtilization)[1]', 'int') AS sql_cpu,
    100 - record.value('(./Record/SchedulerMonitorEvent/SystemHealth/SystemIdle)[1]', 'int') AS total_cpu
FROM (
    SELECT [timestamp], CONVERT(xml, record) AS record
    FROM sys.dm_os_ring_buffers
    WHERE ring_buffer_type = N'RING_BUFFER_SCHEDULER_MONITOR'
      AND record LIKE '%<SystemHealth>%'
) AS rb
ORDER BY [timestamp] DESC
"""

MEMORY_SQL = """
SELECT
    total_physical_memory_kb * 1024 AS total_bytes,
    available_physical_memory_kb * 1024 AS available_bytes
FROM sys.dm_os_sys_memory
"""

DISK_USAGE_SQL = """
SELECT MAX(100.0 * (vs.total_bytes - vs.available_bytes) / NULLIF(vs.total_bytes, 0)) AS disk_usage_percent
FROM sys.database_files AS f
CROSS APPLY sys.dm_os_volume_stats(DB_ID(), f.file_id) AS vs
"""

HEALTH_QUERY_SQL = """
SELECT
    COUNT(*) AS total_queries,
    AVG(total_elapsed_time * 1.0 / execution_count) / 1000.0 AS average_time_ms,
    SUM(CASE WHEN total_elapsed_time * 1.0 / execution_count / 1000.0 > ? THEN 1 ELSE 0 END) AS slow_queries
FROM sys.dm_exec_query_stats
WHERE execution_count > 0
"""

DATABASE_SIZE_SQL = """
SELECT
    DB_NAME() AS database_name,
    SUM(CASE WHEN type_desc = 'ROWS' THEN CAST(size AS bigint) ELSE 0 END) * 8192 AS data_bytes,
    SUM(CASE WHEN type_desc = 'LOG' THEN CAST(size AS bigint) ELSE 0 END) * 8192 AS log_bytes,
    SUM(CAST(size AS bigint) - CAST(FILEPROPERTY(name, 'SpaceUsed') AS bigint)) * 8192 AS free_bytes,
    (SELECT SUM(used_page_count) * 8192 FROM sys.dm_db_partition_stats WHERE index_id > 1) AS index_bytes
FROM sys.database_files
"""

CONNECTION_SUMMARY_SQL = """
SELECT
    COUNT(*) AS total,
    SUM(CASE WHEN status IN ('running', 'runnable', 'suspended') THEN 1 ELSE 0 END) AS active,
    SUM(CASE WHEN status = 'sleeping' AND open_transaction_count = 0 THEN 1 ELSE 0 END) AS idle,
    SUM(CASE WHEN status = 'sleeping' AND open_transaction_count > 0 THEN 1 ELSE 0 END) AS sleeping,
    @@MAX_CONNECTIONS AS max_connections
FROM sys.dm_exec_sessions
WHERE is_user_process = 1
"""

CONNECTIONS_BY_DATABASE_SQL = """
SELECT DB_NAME(database_id) AS name, COUNT(*) AS connections
FROM sys.dm_exec_sessions
WHERE is_user_process = 1
GROUP BY database_id
"""

CONNECTIONS_BY_USER_SQL = """
SELECT login_name AS name, COUNT(*) AS connections
FROM sys.dm_exec_sessions
WHERE is_user_process = 1
GROUP BY login_name
"""

MEMORY_CLERKS_SQL = """
SELECT
    SUM(CASE WHEN type = 'MEMORYCLERK_SQLBUFFERPOOL' THEN pages_kb ELSE 0 END) * 1024 AS buffer_cache_bytes,
    SUM(CASE WHEN type IN ('CACHESTORE_SQLCP', 'CACHESTORE_OBJCP') THEN pages_kb ELSE 0 END) * 1024 AS procedure_cache_bytes
FROM sys.dm_os_memory_clerks
"""

FILE_IO_SQL = """
SELECT
    SUM(num_of_reads) * 1000.0 / NULLIF(MAX(sample_ms), 0) AS reads_per_second,
    SUM(num_of_writes) * 1000.0 / NULLIF(MAX(sample_ms), 0) AS writes_per_second,
    SUM(io_stall_read_ms) * 1.0 / NULLIF(SUM(num_of_reads), 0) AS read_latency_ms,
    SUM(io_stall_write_ms) * 1.0 / NULLIF(SUM(num_of_writes), 0) AS write_latency_ms
FROM sys.dm_io_virtual_file_stats(DB_ID(), NULL)
"""

# Idle and background waits that say nothing about workload
BENIGN_WAITS = (
    "BROKER_EVENTHANDLER", "BROKER_RECEIVE_WAITFOR", "BROKER_TASK_STOP",
    "BROKER_TO_FLUSH", "CHECKPOINT_QUEUE", "CLR_AUTO_EVENT", "CLR_MANUAL_EVENT",
    "DIRTY_PAGE_POLL", "DISPATCHER_QUEUE_SEMAPHORE", "FT_IFTS_SCHEDULER_IDLE_WAIT",
    "HADR_FILESTREAM_IOMGR_IOCOMPLETION", "LAZYWRITER_SLEEP", "LOGMGR_QUEUE",
    "ONDEMAND_TASK_QUEUE", "REQUEST_FOR_DEADLOCK_SEARCH", "SLEEP_TASK",
    "SP_SERVER_DIAGNOSTICS_SLEEP", "SQLTRACE_BUFFER_FLUSH",
    "SQLTRACE_INCREMENTAL_FLUSH_SLEEP", "WAITFOR", "XE_DISPATCHER_WAIT", "XE_TIMER_EVENT",
)

WAIT_STATS_SQL = """
SELECT TOP 10
    wait_type,
    waiting_tasks_count,
    wait_time_ms,
    wait_time_ms * 1.0 / NULLIF(waiting_tasks_count, 0) AS average_wait_ms,
    100.0 * wait_time_ms / NULLIF(SUM(wait_time_ms) OVER (), 0) AS percentage
FROM sys.dm_os_wait_stats
WHERE waiting_tasks_count > 0
  AND wait_type NOT IN ({placeholders})
ORDER BY wait_time_ms DESC
""".format(placeholders=", ".join("?" for _ in BENIGN_WAITS))

CONFIGURATION_SQL = """
SELECT name, CONVERT(nvarchar(256), value_in_use) AS value
FROM sys.configurations
"""


def _naive_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


class SqlServerQueryMonitor(BaseQueryMonitor):
    platform = PlatformType.SQL_SERVER

    async def _fetch_top_queries(self, connection: DriverConnection, limit: int) -> List[QueryMetric]:
        rows = await self._fetch(connection, TOP_QUERIES_SQL, limit)
        metrics = []
        for row in rows:
            count = NumberUtils.to_int(row["execution_count"])
            total = NumberUtils.to_float(row["total_time_ms"])
            metrics.append(
                QueryMetric.from_aggregates(
                    query_id=row["query_id"],
                    query_text=row["query_text"] or "",
                    execution_count=count,
                    total_time_ms=total,
                    average_time_ms=total / count if count else 0.0,
                    min_time_ms=NumberUtils.to_float(row["min_time_ms"]),
                    max_time_ms=NumberUtils.to_float(row["max_time_ms"]),
                    rows_returned=NumberUtils.to_int(row["rows_returned"]),
                    last_executed_at=row["last_executed_at"],
                    database_name=connection.database_name,
                )
            )
        return metrics

    async def _fetch_query_details(
        self, connection: DriverConnection, query_id: str
    ) -> Optional[QueryDetails]:
        rows = await self._fetch(connection, QUERY_DETAILS_SQL, query_id)
        if not rows:
            return None
        row = rows[0]
        query_text = row["query_text"] or ""
        count = NumberUtils.to_int(row["execution_count"])
        total = NumberUtils.to_float(row["total_time_ms"])
        return QueryDetails(
            query_id=row["query_id"],
            query_text=query_text,
            normalized_query=SqlTextUtils.normalize_query(query_text),
            statistics={
                "execution_count": count,
                "total_time_ms": total,
                "average_time_ms": total / count if count else 0.0,
                "total_cpu_time_ms": NumberUtils.to_float(row["total_cpu_time_ms"]),
                "total_logical_reads": NumberUtils.to_int(row["total_logical_reads"]),
                "total_physical_reads": NumberUtils.to_int(row["total_physical_reads"]),
                "total_logical_writes": NumberUtils.to_int(row["total_logical_writes"]),
                "total_rows": NumberUtils.to_int(row["total_rows"]),
                "cached_plans": NumberUtils.to_int(row["cached_plans"]),
            },
            tables_accessed=SqlTextUtils.extract_tables(query_text),
        )

    async def _fetch_execution_plan(
        self, connection: DriverConnection, query_id: str
    ) -> Optional[ExecutionPlan]:
        # The plan cache already holds the compiled plan; nothing is recompiled
        plan_xml = await self._fetch_value(connection, QUERY_PLAN_SQL, query_id)
        return build_execution_plan(self.platform, plan_xml)

    async def _fetch_query_statistics(
        self, connection: DriverConnection, start: datetime, end: datetime
    ) -> List[QueryStatistic]:
        rows = await self._fetch(connection, QUERY_STATISTICS_SQL, _naive_utc(start), _naive_utc(end))
        return [
            QueryStatistic(
                timestamp=row["sampled_at"],
                query_id=row["query_id"],
                execution_time_ms=NumberUtils.to_float(row["execution_time_ms"]),
                rows_returned=NumberUtils.to_int(row["rows_returned"]),
                cpu_time_ms=NumberUtils.to_float(row["cpu_time_ms"]),
                logical_reads=NumberUtils.to_int(row["logical_reads"]),
                physical_reads=NumberUtils.to_int(row["physical_reads"]),
            )
            for row in rows
        ]

    async def _fetch_running_queries(self, connection: DriverConnection) -> List[RunningQuery]:
        rows = await self._fetch(connection, RUNNING_QUERIES_SQL)
        return [
            RunningQuery(
                session_id=NumberUtils.to_int(row["session_id"]),
                query_text=row["query_text"] or "",
                start_time=row["start_time"],
                duration=timedelta(milliseconds=NumberUtils.to_float(row["elapsed_ms"])),
                status=row["status"] or "",
                user_name=row["login_name"] or "",
                database_name=row["database_name"] or "",
                cpu_time_ms=NumberUtils.to_optional_float(row["cpu_time"]),
                memory_usage_kb=NumberUtils.to_optional_float(row["memory_kb"]),
            )
            for row in rows
        ]


class SqlServerHealthMonitor(BaseHealthMonitor):
    platform = PlatformType.SQL_SERVER

    async def _fetch_health(self, connection: DriverConnection) -> DatabaseHealth:
        thresholds = self.config.health
        info = await self._fetch_one(connection, SERVER_INFO_SQL)
        cpu = await self._fetch(connection, CPU_SQL)
        memory = await self._fetch_one(connection, MEMORY_SQL)
        disk = await self._fetch_value(connection, DISK_USAGE_SQL)
        queries = await self._fetch_one(
            connection, HEALTH_QUERY_SQL, float(thresholds.slow_query_threshold_ms)
        )

        total_memory = NumberUtils.to_float(memory["total_bytes"])
        available_memory = NumberUtils.to_float(memory["available_bytes"])
        memory_percent = (
            (total_memory - available_memory) / total_memory * 100.0 if total_memory else None
        )

        return DatabaseHealth(
            database_name=connection.database_name,
            platform=self.platform,
            platform_version=info["version"] or "",
            checked_at=utc_now(),
            uptime_hours=NumberUtils.to_optional_float(info["uptime_hours"]),
            cpu_usage_percent=NumberUtils.to_optional_float(cpu[0]["total_cpu"]) if cpu else None,
            memory_usage_percent=memory_percent,
            disk_usage_percent=NumberUtils.to_optional_float(disk),
            active_connections=NumberUtils.to_int(info["user_sessions"]),
            max_connections=NumberUtils.to_int(info["max_connections"]),
            average_query_time_ms=NumberUtils.to_float(queries["average_time_ms"]),
            total_queries=NumberUtils.to_int(queries["total_queries"]),
            slow_queries=NumberUtils.to_int(queries["slow_queries"]),
            thresholds=thresholds,
        )

    async def _fetch_database_size(self, connection: DriverConnection) -> DatabaseSize:
        row = await self._fetch_one(connection, DATABASE_SIZE_SQL)
        data = NumberUtils.to_int(row["data_bytes"])
        log = NumberUtils.to_int(row["log_bytes"])
        return DatabaseSize(
            database_name=row["database_name"] or connection.database_name,
            total_size_bytes=data + log,
            data_size_bytes=data,
            log_size_bytes=log,
            index_size_bytes=NumberUtils.to_int(row["index_bytes"]),
            free_space_bytes=None if row["free_bytes"] is None else NumberUtils.to_int(row["free_bytes"]),
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
            connections_by_database={
                r["name"]: NumberUtils.to_int(r["connections"]) for r in by_database if r["name"]
            },
            connections_by_user={r["name"]: NumberUtils.to_int(r["connections"]) for r in by_user},
        )

    async def _fetch_resource_utilization(self, connection: DriverConnection) -> ResourceUtilization:
        cpu = await self._fetch(connection, CPU_SQL)
        memory = await self._fetch_one(connection, MEMORY_SQL)
        clerks = await self._fetch_one(connection, MEMORY_CLERKS_SQL)
        io = await self._fetch_one(connection, FILE_IO_SQL)
        waits = await self._fetch(connection, WAIT_STATS_SQL, *BENIGN_WAITS)

        total_cpu = NumberUtils.to_optional_float(cpu[0]["total_cpu"]) if cpu else None
        sql_cpu = NumberUtils.to_optional_float(cpu[0]["sql_cpu"]) if cpu else None
        total_memory = NumberUtils.to_int(memory["total_bytes"])
        available_memory = NumberUtils.to_int(memory["available_bytes"])

        return ResourceUtilization(
            measured_at=utc_now(),
            cpu_usage_percent=total_cpu,
            cpu_usage_database_percent=sql_cpu,
            cpu_usage_system_percent=(
                max(total_cpu - sql_cpu, 0.0) if total_cpu is not None and sql_cpu is not None else None
            ),
            total_memory_bytes=total_memory,
            used_memory_bytes=total_memory - available_memory,
            free_memory_bytes=available_memory,
            buffer_cache_bytes=NumberUtils.to_int(clerks["buffer_cache_bytes"]),
            procedure_cache_bytes=NumberUtils.to_int(clerks["procedure_cache_bytes"]),
            disk_reads_per_second=NumberUtils.to_optional_float(io["reads_per_second"]),
            disk_writes_per_second=NumberUtils.to_optional_float(io["writes_per_second"]),
            disk_read_latency_ms=NumberUtils.to_optional_float(io["read_latency_ms"]),
            disk_write_latency_ms=NumberUtils.to_optional_float(io["write_latency_ms"]),
            top_waits={
                row["wait_type"]: WaitStatistic(
                    wait_type=row["wait_type"],
                    wait_count=NumberUtils.to_int(row["waiting_tasks_count"]),
                    wait_time_ms=NumberUtils.to_float(row["wait_time_ms"]),
                    average_wait_time_ms=NumberUtils.to_float(row["average_wait_ms"]),
                    percentage_of_total=NumberUtils.to_float(row["percentage"]),
                )
                for row in waits
            },
        )

    async def _fetch_configuration(self, connection: DriverConnection) -> Dict[str, Any]:
        rows = await self._fetch(connection, CONFIGURATION_SQL)
        return {row["name"]: row["value"] for row in rows}
