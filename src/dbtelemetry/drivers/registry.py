"""Driver registry.

Maps each ``PlatformType`` to the coroutine function that opens a
``DriverConnection``. Built-in drivers are registered by module path and
imported on first use, so a missing driver package only matters when its
platform is actually targeted.
"""

import importlib
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Optional, Union

from ..core.exceptions import ConfigurationError, ErrorCodes
from ..logging import get_logger
from ..telemetry.models import PlatformType
from .base import DriverConnection

if TYPE_CHECKING:
    from ..connection.descriptor import ConnectionDescriptor

Opener = Callable[..., Awaitable[DriverConnection]]

BUILTIN_DRIVERS: Dict[PlatformType, str] = {
    PlatformType.POSTGRESQL: "dbtelemetry.drivers.postgresql",
    PlatformType.MYSQL: "dbtelemetry.drivers.mysql",
    PlatformType.SQL_SERVER: "dbtelemetry.drivers.mssql",
    PlatformType.ORACLE: "dbtelemetry.drivers.oracle",
}


class DriverRegistry:
    """Registry of connection openers keyed by platform.

    Example:
        >>> registry = DriverRegistry()
        >>> connection = await registry.open(descriptor, connect_timeout=15.0)
    """

    def __init__(self, *, include_builtin: bool = True) -> None:
        self.logger = get_logger("dbtelemetry.drivers.registry")
        self._openers: Dict[PlatformType, Union[str, Opener]] = {}
        if include_builtin:
            self._openers.update(BUILTIN_DRIVERS)

    def register(self, platform: PlatformType, opener: Union[str, Opener]) -> None:
        """Register an opener (or the module path of one) for ``platform``."""
        if platform in self._openers:
            self.logger.debug("Overriding driver registration", platform=platform.value)
        self._openers[platform] = opener

    def unregister(self, platform: PlatformType) -> None:
        self._openers.pop(platform, None)

    def list_platforms(self) -> List[PlatformType]:
        return list(self._openers)

    def get_opener(self, platform: PlatformType) -> Opener:
        """Resolve the opener for ``platform``, importing its module if needed.

        Raises:
            ConfigurationError: If nothing is registered for the platform or the
                driver package is not installed
        """
        if platform not in self._openers:
            raise ConfigurationError(
                f"No driver registered for platform: {platform.value}",
                code=ErrorCodes.PLATFORM_UNSUPPORTED,
                context={
                    "platform": platform.value,
                    "available_platforms": [p.value for p in self._openers],
                },
            )

        opener = self._openers[platform]
        if isinstance(opener, str):
            try:
                module = importlib.import_module(opener)
            except ImportError as e:
                raise ConfigurationError(
                    f"Driver for {platform.value} is not installed: {e}",
                    code=ErrorCodes.DRIVER_UNAVAILABLE,
                    context={"platform": platform.value, "module": opener},
                    cause=e,
                ) from e
            opener = module.open_connection
            self._openers[platform] = opener
        return opener

    async def open(
        self,
        descriptor: "ConnectionDescriptor",
        *,
        connect_timeout: float,
        command_timeout: Optional[float] = None,
    ) -> DriverConnection:
        """Open a new physical connection for ``descriptor``."""
        opener = self.get_opener(descriptor.platform)
        self.logger.debug(
            "Opening connection",
            platform=descriptor.platform.value,
            target=descriptor.display_name(),
        )
        return await opener(
            descriptor,
            connect_timeout=connect_timeout,
            command_timeout=command_timeout,
        )
