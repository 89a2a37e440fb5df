"""dbtelemetry configuration management.

Example:
    >>> from dbtelemetry.config import TelemetryConfig
    >>> config = TelemetryConfig.from_file("telemetry.yaml")
    >>> config.monitor.max_top_queries
    1000
"""

from .models import (
    BaseConfig,
    CaptureConfig,
    HealthThresholds,
    LoggingConfig,
    MonitorConfig,
    TelemetryConfig,
)

__all__ = [
    "BaseConfig",
    "CaptureConfig",
    "HealthThresholds",
    "LoggingConfig",
    "MonitorConfig",
    "TelemetryConfig",
]
