"""Unit tests for the monitor registry."""

import pytest

from dbtelemetry.config.models import TelemetryConfig
from dbtelemetry.core.exceptions import ConfigurationError, ErrorCodes
from dbtelemetry.monitoring import (
    MonitorRegistry,
    MySQLHealthMonitor,
    MySQLQueryMonitor,
    PostgreSQLHealthMonitor,
    PostgreSQLQueryMonitor,
    SqlServerHealthMonitor,
    SqlServerQueryMonitor,
    create_monitors,
)
from dbtelemetry.telemetry.models import PlatformType

from tests.fakes import ORACLE_TARGET


class TestMonitorRegistry:
    """Test adapter registration and lookup."""

    def test_builtin_platforms(self):
        registry = MonitorRegistry()

        assert set(registry.list_platforms()) == {
            PlatformType.SQL_SERVER,
            PlatformType.POSTGRESQL,
            PlatformType.MYSQL,
        }
        assert registry.get(PlatformType.MYSQL) == (MySQLQueryMonitor, MySQLHealthMonitor)

    def test_empty_registry(self):
        registry = MonitorRegistry(include_builtin=False)

        assert registry.list_platforms() == []
        with pytest.raises(ConfigurationError) as exc_info:
            registry.get(PlatformType.POSTGRESQL)

        assert exc_info.value.code == ErrorCodes.PLATFORM_UNSUPPORTED

    def test_register_replaces_adapter(self):
        registry = MonitorRegistry(include_builtin=False)

        registry.register(PlatformType.ORACLE, PostgreSQLQueryMonitor, PostgreSQLHealthMonitor)

        assert registry.get(PlatformType.ORACLE) == (PostgreSQLQueryMonitor, PostgreSQLHealthMonitor)

    def test_oracle_has_no_monitors(self):
        """Test that Oracle is limited to plan capture."""
        with pytest.raises(ConfigurationError) as exc_info:
            MonitorRegistry().get(PlatformType.ORACLE)

        assert "Oracle" in exc_info.value.message
        assert "PostgreSQL" in exc_info.value.context["supported"]


class TestCreateMonitors:
    """Test building monitors for a manager's current target."""

    def test_postgresql_target(self, pg_manager):
        monitors = create_monitors(pg_manager)

        assert isinstance(monitors.query, PostgreSQLQueryMonitor)
        assert isinstance(monitors.health, PostgreSQLHealthMonitor)
        assert monitors.query.manager is pg_manager
        assert monitors.query.config is pg_manager.config

    def test_sql_server_target(self, mssql_manager):
        monitors = create_monitors(mssql_manager)

        assert isinstance(monitors.query, SqlServerQueryMonitor)
        assert isinstance(monitors.health, SqlServerHealthMonitor)

    def test_capture_service_is_shared(self, mysql_manager):
        monitors = create_monitors(mysql_manager)

        assert monitors.query.capture_service is monitors.capture
        assert monitors.health.capture_service is monitors.capture
        assert monitors.capture.manager is mysql_manager

    def test_config_override(self, pg_manager):
        config = TelemetryConfig.from_dict({"monitor": {"default_top_queries": 5}})

        monitors = create_monitors(pg_manager, config)

        assert monitors.query.effective_limit(None) == 5
        assert monitors.health.config is config

    def test_no_target(self, manager):
        with pytest.raises(ConfigurationError) as exc_info:
            create_monitors(manager)

        assert exc_info.value.code == ErrorCodes.TARGET_NOT_CONFIGURED

    def test_unsupported_platform(self, manager):
        manager.set_target(ORACLE_TARGET)

        with pytest.raises(ConfigurationError) as exc_info:
            create_monitors(manager)

        assert exc_info.value.code == ErrorCodes.PLATFORM_UNSUPPORTED

    def test_custom_registry(self, pg_manager):
        registry = MonitorRegistry(include_builtin=False)
        registry.register(PlatformType.POSTGRESQL, PostgreSQLQueryMonitor, PostgreSQLHealthMonitor)

        monitors = create_monitors(pg_manager, registry=registry)

        assert isinstance(monitors.query, PostgreSQLQueryMonitor)
