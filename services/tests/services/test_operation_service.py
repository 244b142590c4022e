"""Tests for agent stream frame parsing and the relay loop."""

import asyncio
import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from berth.services import agent_client
from berth.services.operation_service import (
    OperationRequest,
    StreamFrame,
    _read_stream,
    parse_frame,
    record_failure,
    start_and_execute,
)


class TestOperationRequest:
    def test_command_required(self):
        with pytest.raises(ValueError):
            OperationRequest(command="  ")

    def test_normalises(self):
        req = OperationRequest(command=" up ", options=["-d"], services=None)
        assert req.to_agent_payload() == {"command": "up", "options": ["-d"], "services": []}


class TestParseFrame:
    def test_json_frame(self):
        frame = parse_frame(
            json.dumps(
                {"type": "stderr", "data": "warn", "timestamp": "2026-01-01T00:00:00+00:00"}
            )
        )
        assert frame.type == "stderr"
        assert frame.data == "warn"
        assert frame.timestamp == datetime(2026, 1, 1, tzinfo=UTC)

    def test_complete_frame(self):
        frame = parse_frame('{"type":"complete","success":true,"exitCode":0}')
        assert frame.type == "complete"
        assert frame.success is True
        assert frame.exit_code == 0

    def test_plain_text_becomes_stdout(self):
        frame = parse_frame("just a line")
        assert frame.type == "stdout"
        assert frame.data == "just a line"

    def test_unknown_type_becomes_stdout(self):
        assert parse_frame('{"type":"weird","data":"x"}').type == "stdout"

    def test_non_string_data_is_json_encoded(self):
        assert parse_frame('{"type":"progress","data":{"pct":50}}').data == '{"pct": 50}'

    def test_bad_timestamp_uses_now(self):
        frame = parse_frame('{"type":"stdout","data":"x","timestamp":"yesterday"}')
        assert frame.timestamp.tzinfo is not None


class TestStreamFrame:
    def test_complete_stored_data(self):
        frame = StreamFrame(
            type="complete", data="", timestamp=datetime.now(UTC), success=False, exit_code=3
        )
        assert json.loads(frame.stored_data()) == {"success": False, "exitCode": 3}
        envelope = frame.envelope()
        assert envelope["success"] is False
        assert envelope["exitCode"] == 3

    def test_line_envelope(self):
        frame = StreamFrame(type="stdout", data="hi", timestamp=datetime.now(UTC))
        assert frame.stored_data() == "hi"
        assert "exitCode" not in frame.envelope()


def _stream(*payloads):
    async def gen(server, operation_id):
        for payload in payloads:
            yield payload

    return gen


@pytest.fixture
def mock_session():
    session = AsyncMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    return session


class TestStartAndExecute:
    @patch("berth.services.operation_service._persist", new_callable=AsyncMock)
    @patch("berth.services.operation_service.get_db_session")
    @patch("berth.services.operation_service.agent_client")
    async def test_relays_until_complete(self, mock_agent, mock_get_session, mock_persist, mock_session):
        mock_get_session.return_value = mock_session
        mock_agent.start_operation = AsyncMock(return_value="agent-op")
        mock_agent.operation_stream = _stream(
            '{"type":"stdout","data":"one"}',
            '{"type":"complete","success":true,"exitCode":0}',
            '{"type":"stdout","data":"never read"}',
        )
        mock_agent.AgentClientError = agent_client.AgentClientError

        result = await start_and_execute(
            MagicMock(id=1), "web", OperationRequest(command="up"), 10, "op-1"
        )

        assert result.success is True
        assert result.exit_code == 0
        assert result.agent_operation_id == "agent-op"
        types = [c.args[2].type for c in mock_persist.await_args_list]
        assert types == ["stdout", "complete"]

    @patch("berth.services.operation_service.record_failure", new_callable=AsyncMock)
    @patch("berth.services.operation_service._persist", new_callable=AsyncMock)
    @patch("berth.services.operation_service.get_db_session")
    @patch("berth.services.operation_service.agent_client")
    async def test_stream_ending_early_fails(
        self, mock_agent, mock_get_session, mock_persist, mock_failure, mock_session
    ):
        mock_get_session.return_value = mock_session
        mock_agent.start_operation = AsyncMock(return_value="agent-op")
        mock_agent.operation_stream = _stream('{"type":"stdout","data":"one"}')
        mock_agent.AgentClientError = agent_client.AgentClientError

        result = await start_and_execute(
            MagicMock(id=1), "web", OperationRequest(command="up"), 10, "op-1"
        )

        assert result.success is False
        assert result.exit_code is None
        mock_failure.assert_awaited_once_with(10, "op-1", "Agent stream ended unexpectedly")

    @patch("berth.services.operation_service.agent_client")
    async def test_launch_failure_propagates(self, mock_agent):
        mock_agent.start_operation = AsyncMock(
            side_effect=agent_client.AgentUnavailableError("down")
        )

        with pytest.raises(agent_client.AgentUnavailableError):
            await start_and_execute(
                MagicMock(id=1), "web", OperationRequest(command="up"), 10, "op-1"
            )

    @patch("berth.services.operation_service.record_failure", new_callable=AsyncMock)
    @patch("berth.services.operation_service._persist", new_callable=AsyncMock)
    @patch("berth.services.operation_service.get_db_session")
    @patch("berth.services.operation_service.agent_client")
    async def test_cancellation_leaves_recording_to_caller(
        self, mock_agent, mock_get_session, mock_persist, mock_failure, mock_session
    ):
        mock_get_session.return_value = mock_session
        mock_agent.start_operation = AsyncMock(return_value="agent-op")
        mock_agent.AgentClientError = agent_client.AgentClientError

        async def silent(server, operation_id):
            await asyncio.sleep(10)
            yield "never"

        mock_agent.operation_stream = silent

        task = asyncio.create_task(
            start_and_execute(MagicMock(id=1), "web", OperationRequest(command="up"), 10, "op-1")
        )
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        mock_failure.assert_not_awaited()


class TestReadStream:
    @patch("berth.services.operation_service.agent_client")
    async def test_agent_stream_closed_after_complete(self, mock_agent):
        closed = []

        async def gen(server, operation_id):
            try:
                yield '{"type":"complete","success":true,"exitCode":0}'
                yield '{"type":"stdout","data":"after"}'
            finally:
                closed.append(True)

        mock_agent.operation_stream = gen
        mock_agent.AgentClientError = agent_client.AgentClientError
        frames: asyncio.Queue = asyncio.Queue()

        await _read_stream(MagicMock(), "agent-op", frames)

        assert closed == [True]
        assert frames.get_nowait().type == "complete"

    @patch("berth.services.operation_service.agent_client")
    async def test_agent_error_is_queued(self, mock_agent):
        async def gen(server, operation_id):
            raise agent_client.AgentUnavailableError("gone")
            yield  # pragma: no cover

        mock_agent.operation_stream = gen
        mock_agent.AgentClientError = agent_client.AgentClientError
        frames: asyncio.Queue = asyncio.Queue()

        await _read_stream(MagicMock(), "agent-op", frames)

        assert isinstance(frames.get_nowait(), agent_client.AgentUnavailableError)


class TestRecordFailure:
    @patch("berth.services.operation_service._persist", new_callable=AsyncMock)
    @patch("berth.services.operation_service.operation_log_service")
    @patch("berth.services.operation_service.get_db_session")
    async def test_writes_error_then_complete(
        self, mock_get_session, mock_logs, mock_persist, mock_session
    ):
        mock_get_session.return_value = mock_session
        mock_logs.has_complete_message = AsyncMock(return_value=False)

        assert await record_failure(10, "op-1", "Operation timed out") is True

        frames = [c.args[2] for c in mock_persist.await_args_list]
        assert [f.type for f in frames] == ["error", "complete"]
        assert frames[0].data == "Operation timed out"
        assert frames[1].success is False

    @patch("berth.services.operation_service._persist", new_callable=AsyncMock)
    @patch("berth.services.operation_service.operation_log_service")
    @patch("berth.services.operation_service.get_db_session")
    async def test_closed_stream_is_left_alone(
        self, mock_get_session, mock_logs, mock_persist, mock_session
    ):
        mock_get_session.return_value = mock_session
        mock_logs.has_complete_message = AsyncMock(return_value=True)

        assert await record_failure(10, "op-1", "Operation cancelled") is False
        mock_persist.assert_not_awaited()
