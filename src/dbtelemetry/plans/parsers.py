"""Structural plan parsers.

Turn an engine's plan payload into ``ExecutionPlanNode`` trees. Parsing is
purely structural: operator names, costs and row estimates are copied out,
nothing is interpreted. Each node's ``cost_percentage`` is its subtree cost
as a share of the whole plan's cost, which for a batch is the sum over all
of its statements.
"""

import json
import re
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..core.exceptions import CaptureError, ErrorCodes
from ..core.utils import NumberUtils
from ..telemetry.models import ExecutionPlan, ExecutionPlanNode, PlatformType

SHOWPLAN_NAMESPACE = "http://schemas.microsoft.com/sqlserver/2004/07/showplan"

# Drivers hand back decoded text that may still declare encoding="utf-16"
_XML_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>")

_MYSQL_OPERATIONS = (
    "ordering_operation",
    "grouping_operation",
    "duplicates_removal",
    "windowing",
    "materialized_from_subquery",
)


def _percentages(costs: Sequence[float], total: float) -> List[float]:
    """Share of ``total`` for each sibling cost, scaled down if the siblings overrun 100%."""
    if total <= 0:
        return [0.0 for _ in costs]
    shares = [max(cost, 0.0) / total * 100.0 for cost in costs]
    overrun = sum(shares)
    if overrun > 100.0:
        shares = [share * 100.0 / overrun for share in shares]
    return shares


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


# -- SQL Server showplan XML ---------------------------------------------------

def _child_relops(element: ET.Element) -> List[ET.Element]:
    """Nearest RelOp descendants, not looking inside other RelOps."""
    found: List[ET.Element] = []
    for child in element:
        if _local_name(child.tag) == "RelOp":
            found.append(child)
        else:
            found.extend(_child_relops(child))
    return found


def _showplan_node(relop: ET.Element, total: float, percentage: float) -> ExecutionPlanNode:
    children = _child_relops(relop)
    child_costs = [NumberUtils.to_float(c.get("EstimatedTotalSubtreeCost")) for c in children]
    physical_op = relop.get("PhysicalOp", "Unknown")
    logical_op = relop.get("LogicalOp", "")

    return ExecutionPlanNode(
        operation_type=physical_op,
        description=logical_op if logical_op and logical_op != physical_op else "",
        cost=NumberUtils.to_float(relop.get("EstimatedTotalSubtreeCost")),
        cost_percentage=percentage,
        rows_estimated=NumberUtils.to_int(relop.get("EstimateRows")),
        rows_actual=0,
        children=tuple(
            _showplan_node(child, total, share)
            for child, share in zip(children, _percentages(child_costs, total))
        ),
    )


def parse_showplan_xml(payload: str) -> Tuple[Tuple[ExecutionPlanNode, ...], float]:
    """Parse SHOWPLAN_XML output into one root node per statement.

    In a batch each root's share is its statement's cost over the batch cost.

    Returns:
        Tuple of (root nodes, total estimated cost)
    """
    root = ET.fromstring(_XML_DECLARATION.sub("", payload, count=1))
    statements: List[Tuple[float, List[ET.Element]]] = []

    for statement in root.iter():
        if _local_name(statement.tag) not in ("StmtSimple", "StmtCursor"):
            continue
        relops = [
            relop
            for query_plan in statement
            if _local_name(query_plan.tag) == "QueryPlan"
            for relop in _child_relops(query_plan)
        ]
        statements.append((NumberUtils.to_float(statement.get("StatementSubTreeCost")), relops))

    costs = [cost for cost, _ in statements]
    total_cost = sum(costs)
    nodes = [
        _showplan_node(relop, total_cost, share)
        for (_, relops), share in zip(statements, _percentages(costs, total_cost))
        for relop in relops
    ]
    return tuple(nodes), total_cost


# -- PostgreSQL EXPLAIN (FORMAT JSON) ------------------------------------------

def _postgres_node(plan: Dict[str, Any], total: float, percentage: float) -> ExecutionPlanNode:
    children = plan.get("Plans") or []
    child_costs = [NumberUtils.to_float(child.get("Total Cost")) for child in children]

    target = plan.get("Relation Name") or plan.get("Index Name") or plan.get("CTE Name")
    description = f"on {target}" if target else plan.get("Join Type", "") or ""

    return ExecutionPlanNode(
        operation_type=plan.get("Node Type", "Unknown"),
        description=description,
        cost=NumberUtils.to_float(plan.get("Total Cost")),
        cost_percentage=percentage,
        rows_estimated=NumberUtils.to_int(plan.get("Plan Rows")),
        rows_actual=NumberUtils.to_int(plan.get("Actual Rows")),
        children=tuple(
            _postgres_node(child, total, share)
            for child, share in zip(children, _percentages(child_costs, total))
        ),
    )


def parse_postgres_json(payload: Any) -> Tuple[Tuple[ExecutionPlanNode, ...], float]:
    """Parse ``EXPLAIN (FORMAT JSON)`` output.

    Returns:
        Tuple of (root nodes, total estimated cost)
    """
    document = json.loads(payload) if isinstance(payload, (str, bytes)) else payload
    if isinstance(document, dict):
        document = [document]

    plans = [
        entry["Plan"]
        for entry in document or []
        if isinstance(entry, dict) and entry.get("Plan")
    ]
    costs = [NumberUtils.to_float(plan.get("Total Cost")) for plan in plans]
    total_cost = sum(costs)
    nodes = [
        _postgres_node(plan, total_cost, share)
        for plan, share in zip(plans, _percentages(costs, total_cost))
    ]
    return tuple(nodes), total_cost


# -- MySQL EXPLAIN FORMAT=JSON -------------------------------------------------

def _mysql_table_cost(table: Dict[str, Any]) -> float:
    cost_info = table.get("cost_info") or {}
    if "prefix_cost" in cost_info:
        return NumberUtils.to_float(cost_info["prefix_cost"])
    return NumberUtils.to_float(cost_info.get("read_cost")) + NumberUtils.to_float(
        cost_info.get("eval_cost")
    )


def _mysql_children(block: Dict[str, Any]) -> List[Tuple[str, Dict[str, Any]]]:
    """(operation, body) pairs found directly under ``block``."""
    children: List[Tuple[str, Dict[str, Any]]] = []
    if isinstance(block.get("table"), dict):
        children.append(("table", block["table"]))
    for item in block.get("nested_loop") or []:
        if isinstance(item, dict) and isinstance(item.get("table"), dict):
            children.append(("table", item["table"]))
    for key in _MYSQL_OPERATIONS:
        if isinstance(block.get(key), dict):
            children.append((key, block[key]))
    return children


def _mysql_cost(operation: str, body: Dict[str, Any]) -> float:
    if operation == "table":
        return _mysql_table_cost(body)
    cost_info = body.get("cost_info") or {}
    if cost_info:
        return NumberUtils.to_float(cost_info.get("sort_cost") or cost_info.get("query_cost"))
    return sum(_mysql_cost(op, child) for op, child in _mysql_children(body))


def _mysql_node(operation: str, body: Dict[str, Any], total: float, percentage: float) -> ExecutionPlanNode:
    children = _mysql_children(body)
    child_costs = [_mysql_cost(op, child) for op, child in children]

    if operation == "table":
        operation_type = body.get("access_type", "table")
        description = f"on {body.get('table_name', '?')}"
        rows = NumberUtils.to_int(body.get("rows_examined_per_scan"))
    else:
        operation_type = operation
        description = "using filesort" if body.get("using_filesort") else ""
        rows = 0

    return ExecutionPlanNode(
        operation_type=operation_type,
        description=description,
        cost=_mysql_cost(operation, body),
        cost_percentage=percentage,
        rows_estimated=rows,
        rows_actual=0,
        children=tuple(
            _mysql_node(op, child, total, share)
            for (op, child), share in zip(children, _percentages(child_costs, total))
        ),
    )


def parse_mysql_json(payload: Any) -> Tuple[Tuple[ExecutionPlanNode, ...], float]:
    """Parse ``EXPLAIN FORMAT=JSON`` output.

    Returns:
        Tuple of (root nodes, total estimated cost)
    """
    document = json.loads(payload) if isinstance(payload, (str, bytes)) else payload
    block = (document or {}).get("query_block") or {}
    total_cost = NumberUtils.to_float((block.get("cost_info") or {}).get("query_cost"))
    if not block:
        return (), 0.0
    root = ExecutionPlanNode(
        operation_type="query_block",
        description=f"select #{block.get('select_id', 1)}",
        cost=total_cost,
        cost_percentage=100.0 if total_cost > 0 else 0.0,
        children=tuple(
            _mysql_node(op, child, total_cost, share)
            for (op, child), share in zip(
                _mysql_children(block),
                _percentages([_mysql_cost(op, c) for op, c in _mysql_children(block)], total_cost),
            )
        ),
    )
    return (root,), total_cost


def build_execution_plan(platform: PlatformType, payload: Optional[str]) -> Optional[ExecutionPlan]:
    """Wrap a captured payload into an ``ExecutionPlan`` for ``platform``.

    Raises:
        CaptureError: If the payload is not well-formed XML/JSON
    """
    if payload is None:
        return None

    try:
        if platform is PlatformType.SQL_SERVER:
            nodes, cost = parse_showplan_xml(payload)
            return ExecutionPlan(platform=platform, plan_xml=payload, nodes=nodes, estimated_cost=cost)
        if platform is PlatformType.POSTGRESQL:
            nodes, cost = parse_postgres_json(payload)
            return ExecutionPlan(platform=platform, plan_json=payload, nodes=nodes, estimated_cost=cost)
        if platform is PlatformType.MYSQL:
            nodes, cost = parse_mysql_json(payload)
            return ExecutionPlan(platform=platform, plan_json=payload, nodes=nodes, estimated_cost=cost)
    except (ET.ParseError, ValueError, AttributeError, TypeError) as e:
        raise CaptureError(
            f"Could not parse {platform.value} plan: {e}",
            code=ErrorCodes.PLAN_CAPTURE_FAILED,
            context={"platform": platform.value},
            cause=e,
        ) from e

    # DBMS_XPLAN output is a formatted text table
    return ExecutionPlan(platform=platform, plan_text=payload)
