"""Unit tests for execution plan capture."""

import asyncio
from unittest.mock import Mock

import pytest

from dbtelemetry.config.models import CaptureConfig
from dbtelemetry.core.exceptions import (
    CaptureError,
    ConfigurationError,
    ErrorCodes,
    TimeoutError,
    ValidationError,
)
from dbtelemetry.plans.capture import CaptureState, ExecutionPlanCaptureService, PlanCaptureSession
from dbtelemetry.plans.modes import SqlServerPlanMode
from dbtelemetry.telemetry.models import PlatformType

from tests.fakes import ORACLE_TARGET, FakeConnection, FakeEngineError

from .plan_payloads import POSTGRES_PLAN_JSON, SHOWPLAN_XML

STATEMENT = "SELECT o.id FROM dbo.Orders o JOIN dbo.Customers c ON c.id = o.customer_id"


@pytest.fixture
def mssql_service(mssql_manager):
    return ExecutionPlanCaptureService(mssql_manager)


@pytest.fixture
def pg_service(pg_manager):
    return ExecutionPlanCaptureService(pg_manager)


class TestInputValidation:
    """Test argument checks that run before any connection is opened."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sql_text", [None, "", "  \n "])
    async def test_empty_statement(self, mssql_service, fake_driver, sql_text):
        with pytest.raises(ValidationError) as exc_info:
            await mssql_service.capture_estimated_plan(sql_text)

        assert exc_info.value.code == ErrorCodes.EMPTY_STATEMENT
        assert fake_driver.connections == []

    @pytest.mark.asyncio
    async def test_non_positive_timeout(self, mssql_service, fake_driver):
        with pytest.raises(ValidationError) as exc_info:
            await mssql_service.capture_estimated_plan(STATEMENT, timeout=0)

        assert exc_info.value.code == ErrorCodes.INVALID_ARGUMENT
        assert fake_driver.connections == []

    @pytest.mark.asyncio
    async def test_no_target(self, manager):
        service = ExecutionPlanCaptureService(manager)

        with pytest.raises(ConfigurationError) as exc_info:
            await service.capture_estimated_plan(STATEMENT)

        assert exc_info.value.code == ErrorCodes.TARGET_NOT_CONFIGURED


class TestSqlServerCapture:
    """Test the SHOWPLAN_XML protocol."""

    @pytest.mark.asyncio
    async def test_capture(self, mssql_service, fake_driver):
        """Test that the plan is returned and showplan is switched off again."""
        fake_driver.respond(STATEMENT, [{"microsoft sql server 2005 xml showplan": SHOWPLAN_XML}])

        payload = await mssql_service.capture_estimated_plan(STATEMENT)

        connection = fake_driver.last
        assert payload == SHOWPLAN_XML
        assert connection.executed() == ["SET SHOWPLAN_XML ON", STATEMENT, "SET SHOWPLAN_XML OFF"]
        assert connection.showplan is False
        assert connection.closed is True

    @pytest.mark.asyncio
    async def test_each_capture_uses_own_connection(self, mssql_service, fake_driver):
        fake_driver.respond(STATEMENT, [{"plan": SHOWPLAN_XML}])

        await asyncio.gather(
            mssql_service.capture_estimated_plan(STATEMENT),
            mssql_service.capture_estimated_plan(STATEMENT),
        )

        assert len(fake_driver.connections) == 2
        assert all(c.closed and not c.showplan for c in fake_driver.connections)

    @pytest.mark.asyncio
    async def test_no_rows(self, mssql_service, fake_driver):
        assert await mssql_service.capture_estimated_plan(STATEMENT) is None
        assert fake_driver.last.executed()[-1] == "SET SHOWPLAN_XML OFF"

    @pytest.mark.asyncio
    async def test_enable_failure(self, mssql_service, fake_driver):
        """Test that a failed enable ends the capture with nothing to restore."""
        fake_driver.respond("SHOWPLAN_XML ON", FakeEngineError("permission denied", number=262))

        with pytest.raises(CaptureError) as exc_info:
            await mssql_service.capture_estimated_plan(STATEMENT)

        assert exc_info.value.code == ErrorCodes.PLAN_MODE_ENABLE_FAILED
        assert exc_info.value.context["engine_error"] == 262
        assert fake_driver.last.executed() == ["SET SHOWPLAN_XML ON"]
        assert fake_driver.last.closed is True

    @pytest.mark.asyncio
    async def test_statement_failure_restores_mode(self, mssql_service, fake_driver):
        """Test that plan mode is switched off when the statement is rejected."""
        fake_driver.respond(STATEMENT, FakeEngineError("Invalid object name 'dbo.Orders'", number=208))

        with pytest.raises(CaptureError) as exc_info:
            await mssql_service.capture_estimated_plan(STATEMENT)

        assert exc_info.value.code == ErrorCodes.PLAN_CAPTURE_FAILED
        assert "Invalid object name" in exc_info.value.message
        assert fake_driver.last.executed()[-1] == "SET SHOWPLAN_XML OFF"
        assert fake_driver.last.showplan is False

    @pytest.mark.asyncio
    async def test_restore_failure_after_success(self, mssql_service, fake_driver):
        fake_driver.respond(STATEMENT, [{"plan": SHOWPLAN_XML}])
        fake_driver.respond("SHOWPLAN_XML OFF", FakeEngineError("connection broken"))

        with pytest.raises(CaptureError) as exc_info:
            await mssql_service.capture_estimated_plan(STATEMENT)

        assert exc_info.value.code == ErrorCodes.PLAN_MODE_RESTORE_FAILED

    @pytest.mark.asyncio
    async def test_restore_failure_after_statement_failure(self, mssql_service, fake_driver):
        """Test that the statement error wins over a restore error."""
        fake_driver.respond(STATEMENT, FakeEngineError("syntax error"))
        fake_driver.respond("SHOWPLAN_XML OFF", FakeEngineError("connection broken"))

        with pytest.raises(CaptureError) as exc_info:
            await mssql_service.capture_estimated_plan(STATEMENT)

        assert exc_info.value.code == ErrorCodes.PLAN_CAPTURE_FAILED

    @pytest.mark.asyncio
    async def test_timeout_while_statement_runs(self, mssql_manager, fake_driver):
        """Test that a capture timing out mid-statement still switches showplan off."""
        fake_driver.statement_delays = {STATEMENT: 1.0}
        service = ExecutionPlanCaptureService(mssql_manager, CaptureConfig(default_timeout_seconds=0.05))

        with pytest.raises(TimeoutError) as exc_info:
            await service.capture_estimated_plan(STATEMENT)

        connection = fake_driver.last
        assert exc_info.value.code == ErrorCodes.QUERY_TIMEOUT
        assert connection.executed() == ["SET SHOWPLAN_XML ON", STATEMENT, "SET SHOWPLAN_XML OFF"]
        assert connection.showplan is False
        assert connection.closed is True

    @pytest.mark.asyncio
    async def test_timeout_while_enabling(self, mssql_manager, fake_driver):
        fake_driver.statement_delays = {"SHOWPLAN_XML ON": 1.0}
        service = ExecutionPlanCaptureService(mssql_manager, CaptureConfig(default_timeout_seconds=0.05))

        with pytest.raises(TimeoutError) as exc_info:
            await service.capture_estimated_plan(STATEMENT)

        assert exc_info.value.code == ErrorCodes.QUERY_TIMEOUT
        assert fake_driver.last.executed() == ["SET SHOWPLAN_XML ON"]
        assert fake_driver.last.closed is True

    @pytest.mark.asyncio
    async def test_capture_plan_parses_tree(self, mssql_service, fake_driver):
        fake_driver.respond(STATEMENT, [{"plan": SHOWPLAN_XML}])

        plan = await mssql_service.capture_plan(STATEMENT)

        assert plan.platform is PlatformType.SQL_SERVER
        assert plan.plan_xml == SHOWPLAN_XML
        assert plan.nodes[0].operation_type == "Hash Match"

    @pytest.mark.asyncio
    async def test_capture_plan_no_rows(self, mssql_service):
        assert await mssql_service.capture_plan(STATEMENT) is None


class TestPlanCaptureSession:
    """Test the plan-mode protocol on a single connection."""

    @pytest.mark.asyncio
    async def test_cancellation_restores_mode(self):
        """Test that cancelling mid-capture still switches plan mode off."""
        connection = FakeConnection(PlatformType.SQL_SERVER, "erp")
        session = PlanCaptureSession(connection, SqlServerPlanMode().script("SELECT 1"), Mock())
        entered = asyncio.Event()

        async def capture():
            async with session.plan_mode():
                entered.set()
                await asyncio.sleep(10)

        task = asyncio.create_task(capture())
        await entered.wait()
        assert connection.showplan is True
        assert session.state is CaptureState.PLAN_MODE_ENABLED

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert connection.showplan is False
        assert session.state is CaptureState.IDLE

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "failure, command_timeout, expected",
        [
            (FakeEngineError("Invalid object name 'dbo.Orders'", number=208), None, CaptureError),
            (None, 0.05, TimeoutError),
        ],
    )
    async def test_connection_usable_after_failed_capture(self, failure, command_timeout, expected):
        """Test that statements after a failed capture run normally instead of returning plans."""
        follow_up = "SELECT TOP (1) id FROM dbo.Orders"
        connection = FakeConnection(PlatformType.SQL_SERVER, "erp", command_timeout=command_timeout)
        connection.showplan_rows = [{"plan": SHOWPLAN_XML}]
        connection.respond(follow_up, [{"id": 7}])
        if failure is not None:
            connection.respond(STATEMENT, failure)
        else:
            connection.delays = {STATEMENT: 1.0}
        session = PlanCaptureSession(connection, SqlServerPlanMode().script(STATEMENT), Mock())

        with pytest.raises(expected):
            async with session.plan_mode():
                await session.fetch_payload()

        assert session.state is CaptureState.IDLE
        assert connection.showplan is False
        assert await connection.fetch(follow_up) == [{"id": 7}]

    @pytest.mark.asyncio
    async def test_showplan_answers_with_plans_while_enabled(self):
        """Test the plan-only behaviour the follow-up checks rely on."""
        connection = FakeConnection(PlatformType.SQL_SERVER, "erp")
        connection.showplan_rows = [{"plan": SHOWPLAN_XML}]
        connection.respond("SELECT 1", [{"value": 1}])

        await connection.execute("SET SHOWPLAN_XML ON")

        assert await connection.fetch("SELECT 1") == [{"plan": SHOWPLAN_XML}]

    @pytest.mark.asyncio
    async def test_restore_failure_is_logged_after_error(self):
        connection = FakeConnection(PlatformType.SQL_SERVER, "erp")
        connection.respond("OFF", FakeEngineError("broken"))
        logger = Mock()
        session = PlanCaptureSession(connection, SqlServerPlanMode().script("SELECT 1"), logger)

        with pytest.raises(RuntimeError):
            async with session.plan_mode():
                raise RuntimeError("primary")

        logger.error.assert_called_once()
        assert logger.error.call_args.kwargs["primary_error"] == "primary"


class TestOtherPlatforms:
    """Test capture on engines without session-level plan mode."""

    @pytest.mark.asyncio
    async def test_postgresql(self, pg_service, fake_driver):
        fake_driver.respond("EXPLAIN", [{"query plan": POSTGRES_PLAN_JSON}])

        plan = await pg_service.capture_plan("SELECT * FROM orders JOIN customers USING (customer_id);")

        assert fake_driver.last.executed() == [
            "EXPLAIN (FORMAT JSON) SELECT * FROM orders JOIN customers USING (customer_id)"
        ]
        assert plan.plan_json == POSTGRES_PLAN_JSON
        assert plan.estimated_cost == 200.0

    @pytest.mark.asyncio
    async def test_postgresql_decoded_json(self, pg_service, fake_driver):
        """Test that a driver returning decoded JSON still yields text."""
        fake_driver.respond("EXPLAIN", [{"query plan": [{"Plan": {"Node Type": "Result", "Total Cost": 0.01}}]}])

        payload = await pg_service.capture_estimated_plan("SELECT 1")

        assert payload == '[{"Plan": {"Node Type": "Result", "Total Cost": 0.01}}]'

    @pytest.mark.asyncio
    async def test_oracle_joins_rows(self, manager, fake_driver):
        manager.set_target(ORACLE_TARGET)
        service = ExecutionPlanCaptureService(manager)
        fake_driver.respond(
            "DBMS_XPLAN",
            [{"plan_table_output": "Plan hash value: 1"}, {"plan_table_output": "| 0 | SELECT STATEMENT |"}],
        )

        plan = await service.capture_plan("SELECT * FROM orders")

        assert plan.plan_text == "Plan hash value: 1\n| 0 | SELECT STATEMENT |"
        executed = fake_driver.last.executed()
        assert executed[0].startswith("EXPLAIN PLAN SET STATEMENT_ID")
        assert executed[-1] == "DELETE FROM plan_table WHERE statement_id = :1"
