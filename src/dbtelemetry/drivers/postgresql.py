"""PostgreSQL driver built on asyncpg."""

import asyncio
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

import asyncpg

from ..core.exceptions import DatabaseConnectionError, ErrorCodes, TimeoutError
from ..telemetry.models import PlatformType
from .base import DriverConnection, Row

if TYPE_CHECKING:
    from ..connection.descriptor import ConnectionDescriptor

# SQLSTATEs that mean the statistics views are missing, not that the query is wrong
_TELEMETRY_UNAVAILABLE_STATES = {"42P01", "42704", "55000"}


class PostgreSQLConnection(DriverConnection):
    """asyncpg-backed connection. Placeholders are ``$1``, ``$2`` ..."""

    platform = PlatformType.POSTGRESQL
    error_types = (asyncpg.PostgresError, asyncpg.InterfaceError)

    def __init__(self, connection: "asyncpg.Connection", database_name: str, **kwargs: Any) -> None:
        super().__init__(database_name, **kwargs)
        self._connection = connection

    async def _execute(self, statement: str, params: Sequence[Any]) -> None:
        await self._connection.execute(statement, *params)

    async def _fetch(self, statement: str, params: Sequence[Any]) -> List[Row]:
        records = await self._connection.fetch(statement, *params)
        return [dict(record) for record in records]

    async def _close(self) -> None:
        await self._connection.close()

    def error_details(self, exc: BaseException) -> Dict[str, Any]:
        sqlstate = getattr(exc, "sqlstate", None)
        return {"sqlstate": sqlstate} if sqlstate else {}

    def error_code(self, exc: BaseException) -> str:
        if isinstance(exc, asyncpg.InsufficientPrivilegeError):
            return ErrorCodes.INSUFFICIENT_PERMISSIONS
        if getattr(exc, "sqlstate", None) in _TELEMETRY_UNAVAILABLE_STATES:
            return ErrorCodes.TELEMETRY_UNAVAILABLE
        return ErrorCodes.QUERY_EXECUTION_FAILED


async def open_connection(
    descriptor: "ConnectionDescriptor",
    *,
    connect_timeout: float,
    command_timeout: Optional[float] = None,
) -> PostgreSQLConnection:
    """Open an asyncpg connection for ``descriptor``.

    Raises:
        DatabaseConnectionError: If the server refuses the connection or login
        TimeoutError: If connecting takes longer than ``connect_timeout``
    """
    context = {"host": descriptor.server, "port": descriptor.port, "database": descriptor.database}
    options = dict(descriptor.options)
    ssl_mode = options.pop("sslmode", None) or options.pop("ssl", None)
    try:
        connection = await asyncpg.connect(
            host=descriptor.server,
            port=descriptor.port,
            user=descriptor.username,
            password=descriptor.password_value,
            database=descriptor.database or None,
            timeout=connect_timeout,
            command_timeout=command_timeout,
            ssl=ssl_mode,
            server_settings={"application_name": options.get("application_name", "dbtelemetry")},
        )
    except (asyncpg.InvalidAuthorizationSpecificationError, asyncpg.InvalidPasswordError) as e:
        raise DatabaseConnectionError(
            f"PostgreSQL authentication failed: {e}",
            code=ErrorCodes.AUTH_FAILED,
            context=context,
            cause=e,
        ) from e
    except asyncio.TimeoutError as e:
        raise TimeoutError(
            f"PostgreSQL connection timeout after {connect_timeout}s",
            code=ErrorCodes.CONNECTION_TIMEOUT,
            context=context,
            cause=e,
        ) from e
    except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
        raise DatabaseConnectionError(
            f"Failed to connect to PostgreSQL: {e}",
            code=ErrorCodes.CONNECTION_REFUSED,
            context=context,
            cause=e,
        ) from e

    database_name = descriptor.database or descriptor.username or ""
    return PostgreSQLConnection(connection, database_name, command_timeout=command_timeout)
