"""Logging-specific test configuration and fixtures."""

import logging

import pytest

from dbtelemetry.config.models import LoggingConfig
from dbtelemetry.logging.factory import LoggerFactory


@pytest.fixture
def sample_logging_config():
    """Create sample logging configuration."""
    return LoggingConfig(
        level="INFO",
        format="json",
        console_output=True,
        structured=True,
    )


@pytest.fixture
def logger_factory():
    """Create clean logger factory for testing."""
    factory = LoggerFactory()
    yield factory
    factory.shutdown()


@pytest.fixture(autouse=True)
def cleanup_global_logging():
    """Clean up global logging state after each test."""
    yield

    from dbtelemetry.logging.factory import _global_factory
    _global_factory.shutdown()

    logging.getLogger("dbtelemetry").setLevel(logging.NOTSET)
