"""SQL Server driver built on aioodbc."""

import asyncio
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

import aioodbc
import pyodbc

from ..core.exceptions import DatabaseConnectionError, ErrorCodes, TimeoutError
from ..telemetry.models import PlatformType
from .base import DriverConnection, Row, lowercase_row

if TYPE_CHECKING:
    from ..connection.descriptor import ConnectionDescriptor

DEFAULT_ODBC_DRIVER = "ODBC Driver 18 for SQL Server"

_LOGIN_FAILED_STATES = {"28000"}
_PERMISSION_STATES = {"42000"}


def build_odbc_dsn(descriptor: "ConnectionDescriptor") -> str:
    """Render an ODBC connection string for ``descriptor``.

    Example:
        >>> build_odbc_dsn(parse_connection_string("Server=db01;Database=sales;Trusted_Connection=yes"))
        'DRIVER={ODBC Driver 18 for SQL Server};SERVER=db01,1433;DATABASE=sales;Trusted_Connection=yes'
    """
    options = dict(descriptor.options)
    driver = options.pop("driver", DEFAULT_ODBC_DRIVER).strip("{}")

    parts = [f"DRIVER={{{driver}}}", f"SERVER={descriptor.server},{descriptor.port}"]
    if descriptor.database:
        parts.append(f"DATABASE={descriptor.database}")
    if descriptor.trusted:
        parts.append("Trusted_Connection=yes")
    else:
        if descriptor.username:
            parts.append(f"UID={descriptor.username}")
        if descriptor.password is not None:
            parts.append(f"PWD={{{descriptor.password_value}}}")
    parts.extend(f"{key}={value}" for key, value in options.items())
    return ";".join(parts)


class SqlServerConnection(DriverConnection):
    """aioodbc-backed connection. Placeholders are ``?``."""

    platform = PlatformType.SQL_SERVER
    error_types = (pyodbc.Error,)

    def __init__(self, connection: Any, database_name: str, **kwargs: Any) -> None:
        super().__init__(database_name, **kwargs)
        self._connection = connection

    async def _execute(self, statement: str, params: Sequence[Any]) -> None:
        async with self._connection.cursor() as cursor:
            await cursor.execute(statement, *params)

    async def _fetch(self, statement: str, params: Sequence[Any]) -> List[Row]:
        async with self._connection.cursor() as cursor:
            await cursor.execute(statement, *params)
            # SET statements and DDL produce no result set
            if cursor.description is None:
                return []
            columns = [column[0] for column in cursor.description]
            rows = await cursor.fetchall()
        return [lowercase_row(columns, row) for row in rows]

    async def _close(self) -> None:
        await self._connection.close()

    def error_details(self, exc: BaseException) -> Dict[str, Any]:
        if exc.args and isinstance(exc.args[0], str):
            return {"sqlstate": exc.args[0]}
        return {}

    def error_code(self, exc: BaseException) -> str:
        sqlstate = self.error_details(exc).get("sqlstate")
        if sqlstate in _PERMISSION_STATES and "permission" in str(exc).lower():
            return ErrorCodes.INSUFFICIENT_PERMISSIONS
        return ErrorCodes.QUERY_EXECUTION_FAILED


async def open_connection(
    descriptor: "ConnectionDescriptor",
    *,
    connect_timeout: float,
    command_timeout: Optional[float] = None,
) -> SqlServerConnection:
    """Open an aioodbc connection for ``descriptor``.

    Raises:
        DatabaseConnectionError: If the server refuses the connection or login
        TimeoutError: If connecting takes longer than ``connect_timeout``
    """
    context = {"host": descriptor.server, "port": descriptor.port, "database": descriptor.database}
    try:
        connection = await asyncio.wait_for(
            aioodbc.connect(
                dsn=build_odbc_dsn(descriptor),
                autocommit=True,
                timeout=int(connect_timeout),
            ),
            timeout=connect_timeout,
        )
    except asyncio.TimeoutError as e:
        raise TimeoutError(
            f"SQL Server connection timeout after {connect_timeout}s",
            code=ErrorCodes.CONNECTION_TIMEOUT,
            context=context,
            cause=e,
        ) from e
    except pyodbc.Error as e:
        sqlstate = e.args[0] if e.args else None
        raise DatabaseConnectionError(
            f"Failed to connect to SQL Server: {e}",
            code=ErrorCodes.AUTH_FAILED if sqlstate in _LOGIN_FAILED_STATES else ErrorCodes.CONNECTION_REFUSED,
            context={**context, "sqlstate": sqlstate},
            cause=e,
        ) from e

    return SqlServerConnection(connection, descriptor.database, command_timeout=command_timeout)
