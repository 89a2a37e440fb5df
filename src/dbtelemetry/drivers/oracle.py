"""Oracle driver built on python-oracledb's asyncio API (thin mode)."""

import asyncio
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

import oracledb

from ..core.exceptions import DatabaseConnectionError, ErrorCodes, TimeoutError
from ..telemetry.models import PlatformType
from .base import DriverConnection, Row, lowercase_row

if TYPE_CHECKING:
    from ..connection.descriptor import ConnectionDescriptor

_LOGIN_DENIED = {1017, 28000}
_PERMISSION_ERRORS = {1031, 942}


def _oracle_error_code(exc: BaseException) -> Optional[int]:
    error = exc.args[0] if exc.args else None
    return getattr(error, "code", None)


class OracleConnection(DriverConnection):
    """oracledb-backed connection. Placeholders are ``:1``, ``:2`` ..."""

    platform = PlatformType.ORACLE
    ping_statement = "SELECT 1 FROM DUAL"
    error_types = (oracledb.Error,)

    def __init__(self, connection: Any, database_name: str, **kwargs: Any) -> None:
        super().__init__(database_name, **kwargs)
        self._connection = connection

    async def _execute(self, statement: str, params: Sequence[Any]) -> None:
        with self._connection.cursor() as cursor:
            await cursor.execute(statement, list(params))

    async def _fetch(self, statement: str, params: Sequence[Any]) -> List[Row]:
        with self._connection.cursor() as cursor:
            await cursor.execute(statement, list(params))
            if cursor.description is None:
                return []
            columns = [column[0] for column in cursor.description]
            rows = await cursor.fetchall()
        return [lowercase_row(columns, row) for row in rows]

    async def _close(self) -> None:
        await self._connection.close()

    def error_details(self, exc: BaseException) -> Dict[str, Any]:
        code = _oracle_error_code(exc)
        return {"engine_error": f"ORA-{code:05d}"} if code else {}

    def error_code(self, exc: BaseException) -> str:
        # ORA-00942 also covers views the login cannot see
        if _oracle_error_code(exc) in _PERMISSION_ERRORS:
            return ErrorCodes.INSUFFICIENT_PERMISSIONS
        return ErrorCodes.QUERY_EXECUTION_FAILED


async def open_connection(
    descriptor: "ConnectionDescriptor",
    *,
    connect_timeout: float,
    command_timeout: Optional[float] = None,
) -> OracleConnection:
    """Open an async oracledb connection. ``database`` is the service name.

    Raises:
        DatabaseConnectionError: If the listener refuses the connection or login
        TimeoutError: If connecting takes longer than ``connect_timeout``
    """
    context = {"host": descriptor.server, "port": descriptor.port, "service": descriptor.database}
    dsn = f"{descriptor.server}:{descriptor.port}/{descriptor.database}"
    try:
        connection = await asyncio.wait_for(
            oracledb.connect_async(
                user=descriptor.username,
                password=descriptor.password_value,
                dsn=dsn,
            ),
            timeout=connect_timeout,
        )
    except asyncio.TimeoutError as e:
        raise TimeoutError(
            f"Oracle connection timeout after {connect_timeout}s",
            code=ErrorCodes.CONNECTION_TIMEOUT,
            context=context,
            cause=e,
        ) from e
    except oracledb.Error as e:
        code = _oracle_error_code(e)
        raise DatabaseConnectionError(
            f"Failed to connect to Oracle: {e}",
            code=ErrorCodes.AUTH_FAILED if code in _LOGIN_DENIED else ErrorCodes.CONNECTION_REFUSED,
            context=context,
            cause=e,
        ) from e

    connection.autocommit = True
    return OracleConnection(connection, descriptor.database, command_timeout=command_timeout)
