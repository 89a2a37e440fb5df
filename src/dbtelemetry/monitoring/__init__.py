"""Query and health monitors for SQL Server, PostgreSQL and MySQL."""

from .base import (
    BaseHealthMonitor,
    BaseQueryMonitor,
    HealthMonitor,
    MonitorSupport,
    QueryMonitor,
)
from .mysql import MySQLHealthMonitor, MySQLQueryMonitor
from .postgresql import PostgreSQLHealthMonitor, PostgreSQLQueryMonitor
from .registry import MonitorRegistry, Monitors, create_monitors
from .sqlserver import SqlServerHealthMonitor, SqlServerQueryMonitor

__all__ = [
    "QueryMonitor",
    "HealthMonitor",
    "MonitorSupport",
    "BaseQueryMonitor",
    "BaseHealthMonitor",
    "PostgreSQLQueryMonitor",
    "PostgreSQLHealthMonitor",
    "SqlServerQueryMonitor",
    "SqlServerHealthMonitor",
    "MySQLQueryMonitor",
    "MySQLHealthMonitor",
    "MonitorRegistry",
    "Monitors",
    "create_monitors",
]
