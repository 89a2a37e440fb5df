"""dbtelemetry core infrastructure.

Modules:
    exceptions: Exception hierarchy
    utils: Utility functions

Example:
    >>> from dbtelemetry.core import ValidationError, SqlTextUtils
"""

from .exceptions import (
    CaptureError,
    ConfigurationError,
    DatabaseConnectionError,
    EngineError,
    ErrorCodes,
    NotFoundError,
    TelemetryException,
    TimeoutError,
    ValidationError,
    create_error_from_exception,
)
from .utils import (
    NumberUtils,
    SqlTextUtils,
    clamp,
    coalesce,
    safe_cast,
    utc_now,
)

__all__ = [
    # Exceptions
    "TelemetryException",
    "ConfigurationError",
    "DatabaseConnectionError",
    "ValidationError",
    "TimeoutError",
    "EngineError",
    "CaptureError",
    "NotFoundError",
    "ErrorCodes",
    "create_error_from_exception",

    # Utilities
    "SqlTextUtils",
    "NumberUtils",
    "safe_cast",
    "coalesce",
    "clamp",
    "utc_now",
]
