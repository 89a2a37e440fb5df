"""dbtelemetry exception hierarchy.

Every failure that leaves the telemetry layer is one of the typed exceptions
below, carrying an error code, context and the original cause so callers can
tell configuration problems, bad input, timeouts, engine faults and missing
entities apart.

Classes:
    TelemetryException: Base exception for all dbtelemetry operations
    ConfigurationError: No target, or an unusable one, is configured
    DatabaseConnectionError: The configured target could not be opened
    ValidationError: Bad caller input
    TimeoutError: An operation exceeded its time budget
    EngineError: The engine rejected an operation or returned a fault
    CaptureError: Execution plan capture failed
    NotFoundError: Referenced entity is unknown to the engine

Example:
    >>> try:
    ...     details = await monitor.get_query_details("42")
    ... except NotFoundError:
    ...     pass
    ... except EngineError as e:
    ...     logger.error("Engine fault", error_code=e.code, context=e.context)
"""

from typing import Any, Dict, Optional


class TelemetryException(Exception):
    """Base exception for all dbtelemetry operations.

    Attributes:
        code: Error code for categorization
        context: Additional context information about the error
        cause: Original exception that caused this error (if any)

    Example:
        >>> raise TelemetryException(
        ...     "Operation failed",
        ...     code="OPERATION_FAILED",
        ...     context={"operation": "get_health", "platform": "PostgreSQL"}
        ... )
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        """Initialize telemetry exception.

        Args:
            message: Human-readable error description
            code: Error code (defaults to class name)
            context: Additional context information
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message: str = message
        self.code: str = code or self.__class__.__name__
        self.context: Dict[str, Any] = context or {}
        self.cause: Optional[BaseException] = cause

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"context={self.context!r}, "
            f"cause={self.cause!r})"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
        }


class ConfigurationError(TelemetryException):
    """No target configured, or the configured target is unusable.

    Recoverable by the caller configuring a valid target.
    """
    pass


class DatabaseConnectionError(ConfigurationError):
    """The configured target could not be opened by its driver."""
    pass


class ValidationError(TelemetryException):
    """Caller input failed validation. Never retried automatically."""
    pass


class TimeoutError(TelemetryException):
    """Operation exceeded its time budget. Callers may retry with backoff."""
    pass


class EngineError(TelemetryException):
    """The database engine rejected an operation or returned a fault.

    The engine diagnostic text is part of the message; engine-specific error
    numbers or SQLSTATE values are kept in ``context``.
    """
    pass


class CaptureError(EngineError):
    """Execution plan capture failed."""
    pass


class NotFoundError(TelemetryException):
    """Referenced entity does not exist in the engine's telemetry store.

    Not exceptional for polling loops; kept distinct from transient faults.
    """
    pass


class ErrorCodes:
    """Common error codes for dbtelemetry exceptions."""

    # Configuration errors
    CONFIG_NOT_FOUND = "CONFIG_NOT_FOUND"
    CONFIG_INVALID = "CONFIG_INVALID"
    TARGET_NOT_CONFIGURED = "TARGET_NOT_CONFIGURED"
    DESCRIPTOR_INVALID = "DESCRIPTOR_INVALID"
    PLATFORM_UNSUPPORTED = "PLATFORM_UNSUPPORTED"
    DRIVER_UNAVAILABLE = "DRIVER_UNAVAILABLE"

    # Connection errors
    CONNECTION_TIMEOUT = "CONNECTION_TIMEOUT"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    AUTH_FAILED = "AUTH_FAILED"

    # Input errors
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    EMPTY_STATEMENT = "EMPTY_STATEMENT"
    INVALID_TIME_RANGE = "INVALID_TIME_RANGE"
    INVARIANT_VIOLATED = "INVARIANT_VIOLATED"

    # Engine errors
    QUERY_EXECUTION_FAILED = "QUERY_EXECUTION_FAILED"
    QUERY_TIMEOUT = "QUERY_TIMEOUT"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    TELEMETRY_UNAVAILABLE = "TELEMETRY_UNAVAILABLE"

    # Plan capture errors
    PLAN_MODE_ENABLE_FAILED = "PLAN_MODE_ENABLE_FAILED"
    PLAN_CAPTURE_FAILED = "PLAN_CAPTURE_FAILED"
    PLAN_MODE_RESTORE_FAILED = "PLAN_MODE_RESTORE_FAILED"

    # Lookup errors
    QUERY_NOT_FOUND = "QUERY_NOT_FOUND"


def create_error_from_exception(
    exc: BaseException,
    message: Optional[str] = None,
    code: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> TelemetryException:
    """Create a dbtelemetry exception from a generic exception.

    Args:
        exc: Original exception to convert
        message: Override message (uses original if not provided)
        code: Error code to assign
        context: Additional context information

    Returns:
        Appropriate dbtelemetry exception type

    Example:
        >>> try:
        ...     await connection.fetch("SELECT 1")
        ... except OSError as e:
        ...     raise create_error_from_exception(e, code=ErrorCodes.CONNECTION_REFUSED)
    """
    if isinstance(exc, TelemetryException):
        return exc

    import asyncio
    import builtins

    exception_mapping = [
        ((asyncio.TimeoutError, builtins.TimeoutError), TimeoutError),
        ((ConnectionRefusedError,), DatabaseConnectionError),
        ((KeyError, LookupError), NotFoundError),
        ((ValueError, TypeError), ValidationError),
    ]

    exception_class = EngineError
    for source_types, target in exception_mapping:
        if isinstance(exc, source_types):
            exception_class = target
            break

    return exception_class(
        message or str(exc) or type(exc).__name__,
        code=code,
        context=context or {},
        cause=exc,
    )
