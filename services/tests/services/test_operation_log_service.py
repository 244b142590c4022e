"""Tests for the operation log store."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from berth.db.models import OperationLog, utc_now
from berth.services import operation_log_service
from berth.services.operation_log_service import (
    append_message,
    create_header,
    finalize,
    is_terminal,
    log_to_dict,
    record_skipped,
)


def _db():
    db = AsyncMock()
    db.add = MagicMock()
    return db


def _log(**overrides) -> OperationLog:
    values = dict(
        id=7,
        user_id=1,
        server_id=2,
        stack_name="web",
        operation_id="op-1",
        command="up",
        options=[],
        services=[],
        status="running",
        start_time=utc_now() - timedelta(seconds=3),
    )
    values.update(overrides)
    return OperationLog(**values)


class TestStatus:
    def test_terminal(self):
        assert is_terminal("completed")
        assert is_terminal("cancelled")
        assert not is_terminal("running")


@patch("berth.services.operation_log_service.operation_file_logger")
class TestCreateHeader:
    async def test_start_never_precedes_queue(self, mock_file_logger):
        queued = utc_now()
        log = await create_header(
            _db(),
            user_id=1,
            server_id=2,
            stack_name="web",
            operation_id="op-1",
            command="up",
            queued_at=queued,
            start_time=queued - timedelta(seconds=5),
        )
        assert log.start_time == queued
        mock_file_logger.log_operation_created.assert_called_once_with(log)

    async def test_copies_options(self, mock_file_logger):
        options = ["-d"]
        log = await create_header(
            _db(),
            user_id=1,
            server_id=2,
            stack_name="web",
            operation_id="op-1",
            command="up",
            options=options,
        )
        assert log.options == ["-d"]
        assert log.options is not options
        assert log.status == "running"


class TestAppendMessage:
    async def test_next_sequence(self):
        db = _db()
        result = MagicMock()
        result.scalar_one.return_value = 4
        db.execute.return_value = result

        message = await append_message(db, 7, "stdout", "hello")

        assert message.sequence_number == 5
        assert message.message_data == "hello"
        db.add.assert_called_once_with(message)

    async def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            await append_message(_db(), 7, "debug", "x")


@patch("berth.services.operation_log_service.operation_file_logger")
class TestFinalize:
    async def test_success(self, mock_file_logger):
        log = _log()
        db = _db()
        db.get.return_value = log

        result = await finalize(db, 7, success=True, exit_code=0)

        assert result is log
        assert log.status == "completed"
        assert log.success is True
        assert log.duration_ms >= 3000
        assert log.summary == "Operation 'up' completed successfully"
        mock_file_logger.log_operation_finalized.assert_called_once_with(log)

    async def test_failure_unknown_exit_code(self, mock_file_logger):
        log = _log()
        db = _db()
        db.get.return_value = log

        await finalize(db, 7, success=False, exit_code=None)

        assert log.status == "failed"
        assert log.summary == "Operation 'up' failed with exit code -1"

    async def test_already_terminal_is_untouched(self, mock_file_logger):
        log = _log(status="failed", success=False, summary="reaped")
        db = _db()
        db.get.return_value = log

        assert await finalize(db, 7, success=True, exit_code=0) is None
        assert log.summary == "reaped"
        mock_file_logger.log_operation_finalized.assert_not_called()

    async def test_missing_header(self, mock_file_logger):
        db = _db()
        db.get.return_value = None
        assert await finalize(db, 7, success=True, exit_code=0) is None

    async def test_invalid_transition(self, mock_file_logger):
        db = _db()
        db.get.return_value = _log(status="running")
        with pytest.raises(ValueError):
            await finalize(db, 7, success=False, exit_code=None, status="cancelled")

    @patch("berth.services.operation_log_service.settings")
    async def test_detailed_summary(self, mock_settings, mock_file_logger):
        mock_settings.operation_logs.detailed_summaries = True
        log = _log()
        db = _db()
        db.get.return_value = log
        lines = MagicMock()
        lines.scalars.return_value.all.return_value = ["Container web Started"]
        db.execute.return_value = lines

        await finalize(db, 7, success=True, exit_code=0)

        assert log.summary == "Started web"


@patch("berth.services.operation_log_service.operation_file_logger")
class TestRecordSkipped:
    @patch("berth.services.operation_log_service.append_message", new_callable=AsyncMock)
    async def test_cancelled_header(self, mock_append, mock_file_logger):
        db = _db()
        log = await record_skipped(
            db,
            user_id=1,
            server_id=2,
            stack_name="web",
            operation_id="op-2",
            command="up",
            options=[],
            services=[],
            queued_at=utc_now(),
            reason="Dependency failed",
            batch_id="b-1",
            order=1,
            depends_on="op-1",
        )

        assert log.status == "cancelled"
        assert log.success is False
        assert log.duration_ms == 0
        assert log.end_time is not None
        assert mock_append.await_args.args[2:4] == ("error", "Dependency failed")


class TestSerialization:
    def test_log_to_dict(self):
        log = _log(end_time=None)
        data = log_to_dict(log)

        assert data["operation_id"] == "op-1"
        assert data["is_incomplete"] is True
        assert data["user_name"] is None
        assert data["start_time"] == log.start_time.isoformat()

    def test_status_filters(self):
        assert operation_log_service.STATUS_FILTERS == {
            "complete",
            "incomplete",
            "failed",
            "success",
        }
