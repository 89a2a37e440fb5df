"""Execution plan capture.

Produces the engine's estimated plan for arbitrary statement text without
running the statement for its side effects. Each capture opens its own
connection and walks it through ``IDLE -> PLAN_MODE_ENABLED -> IDLE``:

1. Enable plan-only mode. A failure here ends the capture; nothing needs
   restoring.
2. Run the statement; the first column of the first row is the plan.
3. Restore normal mode on every exit path, including errors and task
   cancellation. When step 2 failed its error is raised and a restore failure
   is only logged. When step 2 succeeded a restore failure is raised.

Example:
    >>> service = ExecutionPlanCaptureService(manager)
    >>> plan_xml = await service.capture_estimated_plan("SELECT * FROM dbo.Orders")
"""

import asyncio
import json
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, List, Optional, Tuple

from ..config.models import CaptureConfig
from ..connection.manager import ConnectionStateManager
from ..core.exceptions import (
    CaptureError,
    ErrorCodes,
    TelemetryException,
    TimeoutError,
    ValidationError,
)
from ..core.utils import SqlTextUtils
from ..drivers.base import DriverConnection
from ..logging import StructuredLogger, get_logger, get_performance_logger
from ..telemetry.models import ExecutionPlan, PlatformType
from .modes import Directive, PlanModeRegistry, PlanScript
from .parsers import build_execution_plan


class CaptureState(Enum):
    IDLE = "idle"
    PLAN_MODE_ENABLED = "plan_mode_enabled"


def _payload_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8")
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


class PlanCaptureSession:
    """Drives one connection through the plan-mode protocol.

    Attributes:
        connection: Connection the protocol runs on; nothing else may use it
            while plan mode is enabled
        script: Directives for this capture
        state: Current protocol state
    """

    def __init__(self, connection: DriverConnection, script: PlanScript, logger: StructuredLogger) -> None:
        self.connection = connection
        self.script = script
        self.logger = logger
        self.state = CaptureState.IDLE

    async def _run_directives(self, directives: Tuple[Directive, ...]) -> None:
        for statement, params in directives:
            await self.connection.execute(statement, *params)

    async def enable(self) -> None:
        try:
            await self._run_directives(self.script.enable)
        except TimeoutError:
            raise
        except TelemetryException as e:
            raise CaptureError(
                f"Could not enable plan-only mode: {e.message}",
                code=ErrorCodes.PLAN_MODE_ENABLE_FAILED,
                context={"platform": self.connection.platform.value, **e.context},
                cause=e,
            ) from e
        self.state = CaptureState.PLAN_MODE_ENABLED

    async def disable(self) -> None:
        try:
            await self._run_directives(self.script.disable)
        except TelemetryException as e:
            raise CaptureError(
                f"Could not restore normal mode after plan capture: {e.message}",
                code=ErrorCodes.PLAN_MODE_RESTORE_FAILED,
                context={"platform": self.connection.platform.value, **e.context},
                cause=e,
            ) from e
        self.state = CaptureState.IDLE

    @asynccontextmanager
    async def plan_mode(self) -> AsyncIterator["PlanCaptureSession"]:
        """Plan-only mode for the duration of the block, restored on every exit path."""
        await self.enable()
        try:
            yield self
        except BaseException as primary:
            try:
                await self.disable()
            except Exception as cleanup_error:
                self.logger.error(
                    "Plan mode restore failed after capture error",
                    primary_error=str(primary) or type(primary).__name__,
                    cleanup_error=str(cleanup_error),
                )
            raise
        await self.disable()

    async def fetch_payload(self) -> Optional[str]:
        """Run the capture directives and return the plan payload, or None for no rows."""
        try:
            await self._run_directives(self.script.prepare)
            statement, params = self.script.fetch
            rows = await self.connection.fetch(statement, *params)
        except TimeoutError:
            raise
        except TelemetryException as e:
            raise CaptureError(
                f"Plan capture failed: {e.message}",
                code=ErrorCodes.PLAN_CAPTURE_FAILED,
                context={"platform": self.connection.platform.value, **e.context},
                cause=e,
            ) from e

        if not rows:
            return None
        if self.script.join_rows:
            lines: List[str] = [
                _payload_text(next(iter(row.values()), None)) or "" for row in rows
            ]
            return "\n".join(lines)
        return _payload_text(next(iter(rows[0].values()), None))


class ExecutionPlanCaptureService:
    """Captures estimated execution plans for ad-hoc statements.

    Attributes:
        manager: Source of connections
        config: Capture settings
        modes: Plan modes by platform
    """

    def __init__(
        self,
        manager: ConnectionStateManager,
        config: Optional[CaptureConfig] = None,
        *,
        modes: Optional[PlanModeRegistry] = None,
    ) -> None:
        self.manager = manager
        self.config = config or manager.config.capture
        self.modes = modes or PlanModeRegistry()
        self.logger = get_logger("dbtelemetry.plans.capture")
        self.perf_logger = get_performance_logger("plans.capture")

    def _validate(self, sql_text: Optional[str], timeout: Optional[float]) -> float:
        if sql_text is None or SqlTextUtils.is_blank(sql_text):
            raise ValidationError(
                "Statement text is empty",
                code=ErrorCodes.EMPTY_STATEMENT,
            )
        effective = timeout if timeout is not None else self.config.default_timeout_seconds
        if effective <= 0:
            raise ValidationError(
                f"Timeout must be positive, got {effective}",
                code=ErrorCodes.INVALID_ARGUMENT,
                context={"timeout": effective},
            )
        return effective

    async def _capture(self, sql_text: str) -> Tuple[PlatformType, Optional[str]]:
        async with self.manager.acquire_connection() as connection:
            script = self.modes.get(connection.platform).script(sql_text)
            session = PlanCaptureSession(connection, script, self.logger)
            async with session.plan_mode():
                payload = await session.fetch_payload()
            return connection.platform, payload

    async def _timed_capture(
        self, sql_text: str, timeout: Optional[float]
    ) -> Tuple[PlatformType, Optional[str]]:
        effective_timeout = self._validate(sql_text, timeout)
        platform = self.manager.platform

        with self.perf_logger.measure(
            "capture_estimated_plan",
            platform=platform.value if platform else None,
        ):
            try:
                result = await asyncio.wait_for(self._capture(sql_text), timeout=effective_timeout)
            except asyncio.TimeoutError as e:
                raise TimeoutError(
                    f"Plan capture exceeded {effective_timeout}s",
                    code=ErrorCodes.QUERY_TIMEOUT,
                    context={"timeout_seconds": effective_timeout},
                    cause=e,
                ) from e

        self.logger.debug(
            "Plan captured",
            statement=SqlTextUtils.truncate(sql_text),
            has_plan=result[1] is not None,
        )
        return result

    async def capture_estimated_plan(
        self, sql_text: str, timeout: Optional[float] = None
    ) -> Optional[str]:
        """Return the engine's plan payload for ``sql_text``, or None if it yields no rows.

        Args:
            sql_text: Statement to explain
            timeout: Seconds for the whole capture, connect included; defaults
                to ``CaptureConfig.default_timeout_seconds``

        Raises:
            ValidationError: If ``sql_text`` is empty; no connection is opened
            ConfigurationError: If no target is configured or it cannot be opened
            CaptureError: If the engine rejects plan mode or the statement, or
                normal mode cannot be restored after a successful capture
            TimeoutError: If the capture exceeds ``timeout``
        """
        _, payload = await self._timed_capture(sql_text, timeout)
        return payload

    async def capture_plan(
        self, sql_text: str, timeout: Optional[float] = None
    ) -> Optional[ExecutionPlan]:
        """Capture a plan and parse it into an ``ExecutionPlan`` node tree.

        Returns None when the statement yields no plan rows.
        """
        platform, payload = await self._timed_capture(sql_text, timeout)
        return build_execution_plan(platform, payload)
