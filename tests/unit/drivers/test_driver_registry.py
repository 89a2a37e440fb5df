"""Unit tests for the driver registry."""

from unittest.mock import AsyncMock, patch

import pytest

from dbtelemetry.connection.descriptor import parse_connection_string
from dbtelemetry.core.exceptions import ConfigurationError, ErrorCodes
from dbtelemetry.drivers.registry import BUILTIN_DRIVERS, DriverRegistry
from dbtelemetry.telemetry.models import PlatformType

from tests.fakes import PG_TARGET


class TestDriverRegistry:
    """Test opener registration and lookup."""

    def test_builtin_platforms(self):
        registry = DriverRegistry()

        assert set(registry.list_platforms()) == set(PlatformType)
        assert set(BUILTIN_DRIVERS) == set(PlatformType)

    def test_empty_registry(self):
        registry = DriverRegistry(include_builtin=False)

        assert registry.list_platforms() == []

    def test_unregistered_platform(self):
        registry = DriverRegistry(include_builtin=False)

        with pytest.raises(ConfigurationError) as exc_info:
            registry.get_opener(PlatformType.MYSQL)

        assert exc_info.value.code == ErrorCodes.PLATFORM_UNSUPPORTED

    def test_register_and_unregister(self, fake_driver):
        registry = DriverRegistry(include_builtin=False)

        registry.register(PlatformType.MYSQL, fake_driver)
        assert registry.get_opener(PlatformType.MYSQL) is fake_driver

        registry.unregister(PlatformType.MYSQL)
        registry.unregister(PlatformType.MYSQL)
        assert registry.list_platforms() == []

    def test_module_path_resolved_lazily(self):
        """Test that a module path is imported on first lookup and cached."""
        registry = DriverRegistry(include_builtin=False)
        registry.register(PlatformType.POSTGRESQL, "dbtelemetry.drivers.postgresql")

        opener = registry.get_opener(PlatformType.POSTGRESQL)

        from dbtelemetry.drivers import postgresql
        assert opener is postgresql.open_connection
        assert registry.get_opener(PlatformType.POSTGRESQL) is opener

    def test_missing_driver_package(self):
        """Test that an unimportable driver module is reported as unavailable."""
        registry = DriverRegistry(include_builtin=False)
        registry.register(PlatformType.ORACLE, "dbtelemetry.drivers.does_not_exist")

        with pytest.raises(ConfigurationError) as exc_info:
            registry.get_opener(PlatformType.ORACLE)

        assert exc_info.value.code == ErrorCodes.DRIVER_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_open_forwards_timeouts(self):
        opener = AsyncMock(return_value="connection")
        registry = DriverRegistry(include_builtin=False)
        registry.register(PlatformType.POSTGRESQL, opener)
        descriptor = parse_connection_string(PG_TARGET)

        result = await registry.open(descriptor, connect_timeout=3.0, command_timeout=9.0)

        assert result == "connection"
        opener.assert_awaited_once_with(descriptor, connect_timeout=3.0, command_timeout=9.0)
