"""MySQL driver built on aiomysql."""

import asyncio
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

import aiomysql

from ..core.exceptions import DatabaseConnectionError, ErrorCodes, TimeoutError
from ..telemetry.models import PlatformType
from .base import DriverConnection, Row

if TYPE_CHECKING:
    from ..connection.descriptor import ConnectionDescriptor

_ACCESS_DENIED = 1045
_PERMISSION_ERRORS = {1142, 1143, 1227}
_TABLE_MISSING = 1146


class MySQLConnection(DriverConnection):
    """aiomysql-backed connection. Placeholders are ``%s``."""

    platform = PlatformType.MYSQL
    error_types = (aiomysql.Error,)

    def __init__(self, connection: Any, database_name: str, **kwargs: Any) -> None:
        super().__init__(database_name, **kwargs)
        self._connection = connection

    async def _execute(self, statement: str, params: Sequence[Any]) -> None:
        async with self._connection.cursor() as cursor:
            await cursor.execute(statement, tuple(params) or None)

    async def _fetch(self, statement: str, params: Sequence[Any]) -> List[Row]:
        async with self._connection.cursor(aiomysql.DictCursor) as cursor:
            await cursor.execute(statement, tuple(params) or None)
            rows = await cursor.fetchall()
        return [{str(key).lower(): value for key, value in row.items()} for row in rows or ()]

    async def _close(self) -> None:
        self._connection.close()

    def error_details(self, exc: BaseException) -> Dict[str, Any]:
        if exc.args and isinstance(exc.args[0], int):
            return {"engine_error": exc.args[0]}
        return {}

    def error_code(self, exc: BaseException) -> str:
        errno = self.error_details(exc).get("engine_error")
        if errno in _PERMISSION_ERRORS:
            return ErrorCodes.INSUFFICIENT_PERMISSIONS
        if errno == _TABLE_MISSING:
            return ErrorCodes.TELEMETRY_UNAVAILABLE
        return ErrorCodes.QUERY_EXECUTION_FAILED


async def open_connection(
    descriptor: "ConnectionDescriptor",
    *,
    connect_timeout: float,
    command_timeout: Optional[float] = None,
) -> MySQLConnection:
    """Open an aiomysql connection for ``descriptor``.

    Raises:
        DatabaseConnectionError: If the server refuses the connection or login
        TimeoutError: If connecting takes longer than ``connect_timeout``
    """
    context = {"host": descriptor.server, "port": descriptor.port, "database": descriptor.database}
    try:
        connection = await asyncio.wait_for(
            aiomysql.connect(
                host=descriptor.server,
                port=descriptor.port,
                user=descriptor.username or "",
                password=descriptor.password_value or "",
                db=descriptor.database or None,
                charset=descriptor.options.get("charset", "utf8mb4"),
                autocommit=True,
                # TIMESTAMP columns come back in UTC
                init_command="SET time_zone = '+00:00'",
                connect_timeout=connect_timeout,
            ),
            timeout=connect_timeout,
        )
    except asyncio.TimeoutError as e:
        raise TimeoutError(
            f"MySQL connection timeout after {connect_timeout}s",
            code=ErrorCodes.CONNECTION_TIMEOUT,
            context=context,
            cause=e,
        ) from e
    except aiomysql.OperationalError as e:
        error_code = e.args[0] if e.args else 0
        raise DatabaseConnectionError(
            f"Failed to connect to MySQL: {e}",
            code=ErrorCodes.AUTH_FAILED if error_code == _ACCESS_DENIED else ErrorCodes.CONNECTION_REFUSED,
            context={**context, "engine_error": error_code},
            cause=e,
        ) from e
    except (OSError, aiomysql.Error) as e:
        raise DatabaseConnectionError(
            f"Failed to connect to MySQL: {e}",
            code=ErrorCodes.CONNECTION_REFUSED,
            context=context,
            cause=e,
        ) from e

    return MySQLConnection(connection, descriptor.database, command_timeout=command_timeout)
