"""Pytest configuration and shared fixtures.

This module provides pytest configuration and shared fixtures for all tests
in the dbtelemetry test suite. Engines are replaced by ``FakeConnection``, a
scripted in-memory ``DriverConnection`` from ``tests.fakes``.
"""

import tempfile
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock

import pytest
import structlog

from dbtelemetry.config.models import TelemetryConfig
from dbtelemetry.connection.manager import ConnectionStateManager
from dbtelemetry.drivers.registry import DriverRegistry
from dbtelemetry.telemetry.models import PlatformType

from .fakes import MSSQL_TARGET, MYSQL_TARGET, PG_TARGET, FakeDriver

# Configure test logging to suppress noise during tests
structlog.configure(
    processors=[structlog.testing.LogCapture()],
    wrapper_class=structlog.testing.ReturnLogger,
    logger_factory=structlog.testing.ReturnLoggerFactory(),
    cache_logger_on_first_use=True,
)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide temporary directory for test files."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def mock_logger():
    """Mock structured logger for testing."""
    logger = MagicMock()
    logger.bind.return_value = logger
    return logger


@pytest.fixture
def sample_config_data() -> dict:
    """Sample configuration data for testing."""
    return {
        "logging": {
            "level": "DEBUG",
            "format": "json",
            "console_output": False,
            "structured": True,
        },
        "capture": {"default_timeout_seconds": 5},
        "monitor": {
            "default_top_queries": 50,
            "max_top_queries": 1000,
            "command_timeout_seconds": 10,
            "connect_timeout_seconds": 5,
        },
        "health": {
            "connection_warning_percent": 70,
            "connection_critical_percent": 90,
        },
    }


@pytest.fixture
def config_file(temp_dir: Path, sample_config_data: dict) -> Path:
    """Create temporary configuration file."""
    import yaml

    config_path = temp_dir / "telemetry.yaml"
    with open(config_path, "w") as f:
        yaml.dump(sample_config_data, f)
    return config_path


@pytest.fixture
def telemetry_config() -> TelemetryConfig:
    return TelemetryConfig()


@pytest.fixture
def fake_driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def driver_registry(fake_driver: FakeDriver) -> DriverRegistry:
    """Registry routing every platform to the fake driver."""
    registry = DriverRegistry(include_builtin=False)
    for platform in PlatformType:
        registry.register(platform, fake_driver)
    return registry


@pytest.fixture
def manager(telemetry_config: TelemetryConfig, driver_registry: DriverRegistry) -> ConnectionStateManager:
    """Manager with no target configured."""
    return ConnectionStateManager(telemetry_config, drivers=driver_registry)


@pytest.fixture
def pg_manager(manager: ConnectionStateManager) -> ConnectionStateManager:
    manager.set_target(PG_TARGET)
    return manager


@pytest.fixture
def mssql_manager(manager: ConnectionStateManager) -> ConnectionStateManager:
    manager.set_target(MSSQL_TARGET)
    return manager


@pytest.fixture
def mysql_manager(manager: ConnectionStateManager) -> ConnectionStateManager:
    manager.set_target(MYSQL_TARGET)
    return manager


# Pytest markers for different test categories
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests (fast, isolated)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (real database engines)"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests that take > 1 second"
    )
    config.addinivalue_line(
        "markers", "database: marks tests requiring database connection"
    )


# Auto-mark tests based on their location
def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(config.rootdir) / "tests")

        if test_path.parts[0] == "unit":
            item.add_marker(pytest.mark.unit)
        elif test_path.parts[0] == "integration":
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.database)

        if not any(mark.name == "slow" for mark in item.iter_markers()):
            if any(mark.name == "integration" for mark in item.iter_markers()):
                item.add_marker(pytest.mark.slow)
