"""Driver connection base class.

A ``DriverConnection`` wraps one physical connection opened by an async
database driver. Subclasses supply the raw ``_execute``/``_fetch``/``_close``
calls and describe how to read their driver's exceptions; this class applies
timeouts and turns every driver fault into a dbtelemetry exception.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

from ..core.exceptions import EngineError, ErrorCodes, TimeoutError
from ..core.utils import SqlTextUtils
from ..logging import get_logger
from ..telemetry.models import PlatformType

Row = Dict[str, Any]


class DriverConnection(ABC):
    """One live connection to a database engine.

    Attributes:
        platform: Engine served by this driver
        database_name: Database the connection is bound to
        command_timeout: Default per-statement timeout in seconds
    """

    platform: PlatformType
    ping_statement = "SELECT 1"

    # Driver exception types translated into EngineError
    error_types: Tuple[Type[BaseException], ...] = ()

    def __init__(self, database_name: str, *, command_timeout: Optional[float] = None) -> None:
        self.database_name = database_name
        self.command_timeout = command_timeout
        self.closed = False
        self.logger = get_logger(f"dbtelemetry.drivers.{self.platform.name.lower()}")

    @abstractmethod
    async def _execute(self, statement: str, params: Sequence[Any]) -> None:
        """Run a statement, discarding any result."""

    @abstractmethod
    async def _fetch(self, statement: str, params: Sequence[Any]) -> List[Row]:
        """Run a statement and return all rows as dicts keyed by lowercase column name."""

    @abstractmethod
    async def _close(self) -> None:
        """Release the physical connection."""

    def error_details(self, exc: BaseException) -> Dict[str, Any]:
        """Engine error number or SQLSTATE for ``exc``, kept in the error context."""
        return {}

    def error_code(self, exc: BaseException) -> str:
        return ErrorCodes.QUERY_EXECUTION_FAILED

    async def _run(self, coro: Any, statement: str, timeout: Optional[float]) -> Any:
        effective_timeout = timeout if timeout is not None else self.command_timeout
        context = {
            "platform": self.platform.value,
            "statement": SqlTextUtils.truncate(statement),
        }
        try:
            return await asyncio.wait_for(coro, timeout=effective_timeout)
        except asyncio.TimeoutError as e:
            raise TimeoutError(
                f"{self.platform.value} statement exceeded {effective_timeout}s",
                code=ErrorCodes.QUERY_TIMEOUT,
                context={**context, "timeout_seconds": effective_timeout},
                cause=e,
            ) from e
        except self.error_types as e:
            raise EngineError(
                f"{self.platform.value} engine error: {e}",
                code=self.error_code(e),
                context={**context, **self.error_details(e)},
                cause=e,
            ) from e

    async def execute(self, statement: str, *params: Any, timeout: Optional[float] = None) -> None:
        """Execute a statement without reading results.

        Raises:
            EngineError: If the engine rejects the statement
            TimeoutError: If the statement exceeds its timeout
        """
        self.logger.debug("Executing statement", statement=SqlTextUtils.truncate(statement))
        await self._run(self._execute(statement, params), statement, timeout)

    async def fetch(self, statement: str, *params: Any, timeout: Optional[float] = None) -> List[Row]:
        """Execute a statement and return all rows.

        Raises:
            EngineError: If the engine rejects the statement
            TimeoutError: If the statement exceeds its timeout
        """
        self.logger.debug("Fetching rows", statement=SqlTextUtils.truncate(statement))
        return await self._run(self._fetch(statement, params), statement, timeout)

    async def fetch_first_value(
        self, statement: str, *params: Any, timeout: Optional[float] = None
    ) -> Any:
        """First column of the first row, or None when the statement returns no rows."""
        rows = await self.fetch(statement, *params, timeout=timeout)
        if not rows:
            return None
        return next(iter(rows[0].values()), None)

    async def ping(self, timeout: Optional[float] = None) -> bool:
        """Run a trivial statement. Raises like ``fetch`` on failure."""
        value = await self.fetch_first_value(self.ping_statement, timeout=timeout)
        return value is not None

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        await self._close()

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"database={self.database_name!r}, "
            f"closed={self.closed})"
        )


def lowercase_row(columns: Sequence[str], values: Sequence[Any]) -> Row:
    """Pair column names (lowercased) with row values."""
    return {str(name).lower(): value for name, value in zip(columns, values)}
