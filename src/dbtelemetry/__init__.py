"""dbtelemetry - async telemetry for relational databases.

Collects query statistics, execution plans and health indicators from SQL
Server, PostgreSQL and MySQL (plus plan capture on Oracle) through one
platform-neutral interface.

Modules:
    core: Exceptions and utilities
    config: Configuration models
    logging: Structured logging framework
    telemetry: Telemetry data model
    connection: Connection target state
    drivers: Async database drivers
    plans: Execution plan capture
    monitoring: Query and health monitors

Example:
    >>> from dbtelemetry import ConnectionStateManager, TelemetryConfig, create_monitors
    >>> manager = ConnectionStateManager(TelemetryConfig.from_file("telemetry.yaml"))
    >>> monitors = create_monitors(manager)
    >>> top = await monitors.query.get_top_queries(limit=10)
    >>> health = await monitors.health.get_health()
    >>> health.status
    <HealthStatus.HEALTHY: 'Healthy'>
"""

from . import config, connection, core, drivers, logging, monitoring, plans, telemetry
from .config import TelemetryConfig
from .connection import ConnectionChangedEvent, ConnectionStateManager
from .monitoring import HealthMonitor, QueryMonitor, create_monitors
from .plans import ExecutionPlanCaptureService
from .telemetry import PlatformType

__version__ = "0.1.0"
__title__ = "dbtelemetry"
__description__ = "Async query, plan and health telemetry for relational databases"
__license__ = "MIT"

__all__ = [
    "core",
    "config",
    "logging",
    "telemetry",
    "connection",
    "drivers",
    "plans",
    "monitoring",
    "TelemetryConfig",
    "ConnectionStateManager",
    "ConnectionChangedEvent",
    "ExecutionPlanCaptureService",
    "QueryMonitor",
    "HealthMonitor",
    "create_monitors",
    "PlatformType",
    "__version__",
    "__title__",
    "__description__",
    "__license__",
]
