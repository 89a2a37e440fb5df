"""Engine-specific plan-only mode directives.

Each ``PlanMode`` turns a caller's statement into a ``PlanScript``: the
statements that switch the connection into plan-only mode, the statements
that produce the plan, and the statements that restore normal mode.

=========== ========================= ====================================== ======================================
Platform    enable                    capture                                disable
=========== ========================= ====================================== ======================================
SQL Server  ``SET SHOWPLAN_XML ON``   statement as-is                        ``SET SHOWPLAN_XML OFF``
PostgreSQL  (none)                    ``EXPLAIN (FORMAT JSON) <sql>``        (none)
MySQL       (none)                    ``EXPLAIN FORMAT=JSON <sql>``          (none)
Oracle      (none)                    ``EXPLAIN PLAN ... FOR <sql>``, then   ``DELETE FROM plan_table ...``
                                      ``DBMS_XPLAN.DISPLAY``
=========== ========================= ====================================== ======================================
"""

import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from ..core.exceptions import ConfigurationError, ErrorCodes
from ..core.utils import SqlTextUtils
from ..telemetry.models import PlatformType

# (statement, params)
Directive = Tuple[str, Tuple[Any, ...]]


@dataclass(frozen=True)
class PlanScript:
    """Statements for one capture on one connection.

    Attributes:
        enable: Directives that enter plan-only mode
        prepare: Directives run in plan mode before the plan is read
        fetch: Directive whose rows carry the plan
        disable: Directives that restore normal mode
        join_rows: Plan is spread over rows (one line each) rather than held
            in the first column of the first row
    """
    enable: Tuple[Directive, ...]
    prepare: Tuple[Directive, ...]
    fetch: Directive
    disable: Tuple[Directive, ...]
    join_rows: bool = False


class PlanMode(ABC):
    """Turns statement text into the directives for one capture."""

    platform: PlatformType

    @abstractmethod
    def script(self, sql_text: str) -> PlanScript:
        """Directives that capture the estimated plan for ``sql_text``."""


class SqlServerPlanMode(PlanMode):
    """``SHOWPLAN_XML`` is a session setting; it stays on until turned off."""

    platform = PlatformType.SQL_SERVER

    def script(self, sql_text: str) -> PlanScript:
        return PlanScript(
            enable=(("SET SHOWPLAN_XML ON", ()),),
            prepare=(),
            fetch=(sql_text, ()),
            disable=(("SET SHOWPLAN_XML OFF", ()),),
        )


class PostgreSQLPlanMode(PlanMode):
    """Statements with ``$n`` placeholders, as recorded by pg_stat_statements,
    are explained as generic plans (PostgreSQL 16+).
    """

    platform = PlatformType.POSTGRESQL

    _PLACEHOLDER = re.compile(r"\$\d+")

    def script(self, sql_text: str) -> PlanScript:
        options = "GENERIC_PLAN, FORMAT JSON" if self._PLACEHOLDER.search(sql_text) else "FORMAT JSON"
        return PlanScript(
            enable=(),
            prepare=(),
            fetch=(f"EXPLAIN ({options}) {SqlTextUtils.strip_terminator(sql_text)}", ()),
            disable=(),
        )


class MySQLPlanMode(PlanMode):
    platform = PlatformType.MYSQL

    def script(self, sql_text: str) -> PlanScript:
        return PlanScript(
            enable=(),
            prepare=(),
            fetch=(f"EXPLAIN FORMAT=JSON {SqlTextUtils.strip_terminator(sql_text)}", ()),
            disable=(),
        )


class OraclePlanMode(PlanMode):
    """``EXPLAIN PLAN`` writes rows into ``PLAN_TABLE`` under a statement id.

    The rows are removed again by the disable directive.
    """

    platform = PlatformType.ORACLE

    def script(self, sql_text: str) -> PlanScript:
        # Oracle identifiers are limited to 30 characters on older releases
        statement_id = f"DBT_{uuid.uuid4().hex[:24].upper()}"
        statement = SqlTextUtils.strip_terminator(sql_text)
        return PlanScript(
            enable=(),
            prepare=((f"EXPLAIN PLAN SET STATEMENT_ID = '{statement_id}' FOR {statement}", ()),),
            fetch=(
                "SELECT plan_table_output FROM TABLE(DBMS_XPLAN.DISPLAY('PLAN_TABLE', :1, 'TYPICAL'))",
                (statement_id,),
            ),
            disable=(("DELETE FROM plan_table WHERE statement_id = :1", (statement_id,)),),
            join_rows=True,
        )


class PlanModeRegistry:
    """Maps platforms to their plan modes."""

    def __init__(self, modes: Optional[Dict[PlatformType, PlanMode]] = None) -> None:
        self._modes: Dict[PlatformType, PlanMode] = dict(modes) if modes else {
            mode.platform: mode
            for mode in (SqlServerPlanMode(), PostgreSQLPlanMode(), MySQLPlanMode(), OraclePlanMode())
        }

    def register(self, mode: PlanMode) -> None:
        self._modes[mode.platform] = mode

    def get(self, platform: PlatformType) -> PlanMode:
        """Plan mode for ``platform``.

        Raises:
            ConfigurationError: If the platform has no plan mode
        """
        try:
            return self._modes[platform]
        except KeyError:
            raise ConfigurationError(
                f"Plan capture is not supported for {platform.value}",
                code=ErrorCodes.PLATFORM_UNSUPPORTED,
                context={"platform": platform.value},
            ) from None
