"""Execution plan capture.

Example:
    >>> from dbtelemetry.plans import ExecutionPlanCaptureService
    >>> service = ExecutionPlanCaptureService(manager)
    >>> plan = await service.capture_plan("SELECT * FROM orders WHERE id = 1")
    >>> [node.operation_type for node in plan.walk()]
    ['Index Scan']
"""

from .capture import CaptureState, ExecutionPlanCaptureService, PlanCaptureSession
from .modes import (
    MySQLPlanMode,
    OraclePlanMode,
    PlanMode,
    PlanModeRegistry,
    PlanScript,
    PostgreSQLPlanMode,
    SqlServerPlanMode,
)
from .parsers import build_execution_plan, parse_mysql_json, parse_postgres_json, parse_showplan_xml

__all__ = [
    "CaptureState",
    "ExecutionPlanCaptureService",
    "PlanCaptureSession",
    "PlanMode",
    "PlanModeRegistry",
    "PlanScript",
    "SqlServerPlanMode",
    "PostgreSQLPlanMode",
    "MySQLPlanMode",
    "OraclePlanMode",
    "build_execution_plan",
    "parse_showplan_xml",
    "parse_postgres_json",
    "parse_mysql_json",
]
