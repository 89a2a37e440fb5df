"""Monitor adapter registry.

Maps each platform to its query/health monitor classes and builds the pair
for whatever engine a ``ConnectionStateManager`` currently targets.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Type

from ..config.models import TelemetryConfig
from ..connection.manager import ConnectionStateManager
from ..core.exceptions import ConfigurationError, ErrorCodes
from ..plans.capture import ExecutionPlanCaptureService
from ..telemetry.models import PlatformType
from .base import BaseHealthMonitor, BaseQueryMonitor
from .mysql import MySQLHealthMonitor, MySQLQueryMonitor
from .postgresql import PostgreSQLHealthMonitor, PostgreSQLQueryMonitor
from .sqlserver import SqlServerHealthMonitor, SqlServerQueryMonitor

AdapterPair = Tuple[Type[BaseQueryMonitor], Type[BaseHealthMonitor]]


@dataclass(frozen=True)
class Monitors:
    """Query and health monitors bound to one manager."""
    query: BaseQueryMonitor
    health: BaseHealthMonitor
    capture: ExecutionPlanCaptureService


class MonitorRegistry:
    """Platform to monitor adapter classes."""

    def __init__(self, *, include_builtin: bool = True) -> None:
        self._adapters: Dict[PlatformType, AdapterPair] = {}
        if include_builtin:
            self.register(PlatformType.SQL_SERVER, SqlServerQueryMonitor, SqlServerHealthMonitor)
            self.register(PlatformType.POSTGRESQL, PostgreSQLQueryMonitor, PostgreSQLHealthMonitor)
            self.register(PlatformType.MYSQL, MySQLQueryMonitor, MySQLHealthMonitor)

    def register(
        self,
        platform: PlatformType,
        query_monitor: Type[BaseQueryMonitor],
        health_monitor: Type[BaseHealthMonitor],
    ) -> None:
        self._adapters[platform] = (query_monitor, health_monitor)

    def list_platforms(self) -> List[PlatformType]:
        return list(self._adapters)

    def get(self, platform: PlatformType) -> AdapterPair:
        """Adapter classes for ``platform``.

        Raises:
            ConfigurationError: If no adapter is registered for the platform
        """
        try:
            return self._adapters[platform]
        except KeyError:
            raise ConfigurationError(
                f"No monitor adapter for {platform.value}",
                code=ErrorCodes.PLATFORM_UNSUPPORTED,
                context={
                    "platform": platform.value,
                    "supported": [p.value for p in self._adapters],
                },
            ) from None

    def create(
        self,
        manager: ConnectionStateManager,
        config: Optional[TelemetryConfig] = None,
    ) -> Monitors:
        """Build monitors for the manager's current platform.

        The monitors stay bound to that platform; after ``set_target`` switches
        engines, build a new pair.

        Raises:
            ConfigurationError: If no target is configured or the platform has
                no adapter
        """
        platform = manager.platform
        if platform is None:
            raise ConfigurationError(
                "No connection target configured",
                code=ErrorCodes.TARGET_NOT_CONFIGURED,
            )

        config = config or manager.config
        query_cls, health_cls = self.get(platform)
        capture = ExecutionPlanCaptureService(manager, config.capture)
        return Monitors(
            query=query_cls(manager, config, capture_service=capture),
            health=health_cls(manager, config, capture_service=capture),
            capture=capture,
        )


_default_registry = MonitorRegistry()


def create_monitors(
    manager: ConnectionStateManager,
    config: Optional[TelemetryConfig] = None,
    *,
    registry: Optional[MonitorRegistry] = None,
) -> Monitors:
    """Build the query/health monitor pair for ``manager``'s platform."""
    return (registry or _default_registry).create(manager, config)
