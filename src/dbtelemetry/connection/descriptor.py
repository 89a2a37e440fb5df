"""Connection descriptor parsing.

A descriptor is accepted in one of two forms:

* URL form: ``postgresql://user:pw@host:5432/db``, ``mysql://...``,
  ``mssql://...`` / ``sqlserver://...`` and ``oracle://...``. Query string
  parameters become driver options.
* Key/value form: ``Server=host,1433;Database=db;User Id=u;Password=p``.
  SQL Server is assumed unless a ``Platform=`` key says otherwise.

Example:
    >>> descriptor = parse_connection_string("postgresql://monitor@db01/sales")
    >>> descriptor.platform, descriptor.server, descriptor.port
    (<PlatformType.POSTGRESQL: 'PostgreSQL'>, 'db01', 5432)
"""

from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, unquote, urlsplit

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from ..core.exceptions import ErrorCodes, ValidationError
from ..core.utils import SqlTextUtils
from ..telemetry.models import PlatformType

DEFAULT_PORTS = {
    PlatformType.SQL_SERVER: 1433,
    PlatformType.POSTGRESQL: 5432,
    PlatformType.MYSQL: 3306,
    PlatformType.ORACLE: 1521,
}

_SCHEMES = {
    "postgresql": PlatformType.POSTGRESQL,
    "postgres": PlatformType.POSTGRESQL,
    "mysql": PlatformType.MYSQL,
    "mariadb": PlatformType.MYSQL,
    "mssql": PlatformType.SQL_SERVER,
    "sqlserver": PlatformType.SQL_SERVER,
    "oracle": PlatformType.ORACLE,
}

_PLATFORM_NAMES = {
    **_SCHEMES,
    "sql server": PlatformType.SQL_SERVER,
    "pg": PlatformType.POSTGRESQL,
}

_SERVER_KEYS = {"server", "data source", "host", "address", "addr", "network address"}
_DATABASE_KEYS = {"database", "initial catalog", "dbname", "service name", "service_name"}
_USER_KEYS = {"user id", "uid", "user", "username", "user name"}
_PASSWORD_KEYS = {"password", "pwd"}
_TRUSTED_KEYS = {"integrated security", "trusted_connection", "trusted connection"}
_TRUE_VALUES = {"true", "yes", "sspi", "1"}


class ConnectionDescriptor(BaseModel):
    """Parsed connection target.

    Attributes:
        platform: Database engine
        server: Host name or address
        port: TCP port
        database: Database (or Oracle service) name
        username: Login name
        password: Login password
        trusted: Use integrated authentication instead of a password
        options: Remaining driver options
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    platform: PlatformType
    server: str = Field(..., min_length=1)
    port: int = Field(..., gt=0, lt=65536)
    database: str = ""
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    trusted: bool = False
    options: Dict[str, str] = Field(default_factory=dict)

    @property
    def password_value(self) -> Optional[str]:
        return self.password.get_secret_value() if self.password is not None else None

    def display_name(self) -> str:
        """``server/database`` for log output; never includes credentials."""
        return f"{self.server}/{self.database}" if self.database else self.server


def _invalid(message: str, **context: Any) -> ValidationError:
    return ValidationError(message, code=ErrorCodes.DESCRIPTOR_INVALID, context=context)


def _parse_platform(name: str) -> PlatformType:
    key = name.strip().lower()
    if key in _PLATFORM_NAMES:
        return _PLATFORM_NAMES[key]
    for platform in PlatformType:
        if platform.value.lower() == key:
            return platform
    raise ValidationError(
        f"Unsupported platform: {name}",
        code=ErrorCodes.PLATFORM_UNSUPPORTED,
        context={"platform": name},
    )


def _parse_port(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise _invalid(f"Invalid port: {value!r}", port=value) from None
    if not 0 < port < 65536:
        raise _invalid(f"Port out of range: {port}", port=port)
    return port


def _parse_url(text: str) -> ConnectionDescriptor:
    parts = urlsplit(text)
    scheme = parts.scheme.lower().split("+", 1)[0]
    if scheme not in _SCHEMES:
        raise ValidationError(
            f"Unsupported connection scheme: {parts.scheme}",
            code=ErrorCodes.PLATFORM_UNSUPPORTED,
            context={"scheme": parts.scheme},
        )
    platform = _SCHEMES[scheme]

    try:
        port = parts.port
    except ValueError:
        raise _invalid("Invalid port in connection URL") from None

    if not parts.hostname:
        raise _invalid("Connection URL has no host")

    password = unquote(parts.password) if parts.password is not None else None
    return ConnectionDescriptor(
        platform=platform,
        server=unquote(parts.hostname),
        port=port or DEFAULT_PORTS[platform],
        database=unquote(parts.path.lstrip("/")),
        username=unquote(parts.username) if parts.username else None,
        password=SecretStr(password) if password is not None else None,
        options=dict(parse_qsl(parts.query)),
    )


def _parse_key_values(text: str) -> ConnectionDescriptor:
    pairs: Dict[str, str] = {}
    for segment in text.split(";"):
        if not segment.strip():
            continue
        if "=" not in segment:
            raise _invalid(f"Malformed connection string segment: {segment.strip()!r}")
        key, value = segment.split("=", 1)
        pairs[key.strip().lower()] = value.strip()

    platform = _parse_platform(pairs.pop("platform")) if "platform" in pairs else PlatformType.SQL_SERVER

    server = ""
    port: Optional[int] = None
    database = ""
    username = None
    password = None
    trusted = False
    options: Dict[str, str] = {}

    for key, value in pairs.items():
        if key in _SERVER_KEYS:
            server = value
        elif key in _DATABASE_KEYS:
            database = value
        elif key in _USER_KEYS:
            username = value or None
        elif key in _PASSWORD_KEYS:
            password = value
        elif key in _TRUSTED_KEYS:
            trusted = value.lower() in _TRUE_VALUES
        elif key == "port":
            port = _parse_port(value)
        else:
            options[key] = value

    if server.lower().startswith("tcp:"):
        server = server[4:]
    if "," in server:
        server, port_text = server.split(",", 1)
        port = _parse_port(port_text.strip())
    server = server.strip()

    if not server:
        raise _invalid("Connection string has no server")

    return ConnectionDescriptor(
        platform=platform,
        server=server,
        port=port or DEFAULT_PORTS[platform],
        database=database,
        username=username,
        password=SecretStr(password) if password is not None else None,
        trusted=trusted,
        options=options,
    )


def parse_connection_string(text: Optional[str]) -> ConnectionDescriptor:
    """Parse a connection string in URL or key/value form.

    Raises:
        ValidationError: If the text is blank, malformed or names an
            unsupported platform
    """
    if text is None or SqlTextUtils.is_blank(text):
        raise _invalid("Connection string is empty")

    clean = text.strip()
    if "://" in clean.split(";", 1)[0]:
        return _parse_url(clean)
    return _parse_key_values(clean)
