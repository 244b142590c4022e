"""Tests for the stale operation reaper."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from berth.services import stale_reaper
from berth.services.stale_reaper import REASON_AFTER_RESTART, REASON_SILENT, reap_once


def _log(**overrides):
    log = MagicMock()
    log.id = 7
    log.operation_id = "op_1"
    log.server_id = 1
    log.stack_name = "web"
    log.batch_id = None
    log.order = 0
    for name, value in overrides.items():
        setattr(log, name, value)
    return log


@pytest.fixture
def db():
    db = AsyncMock()
    db.get.return_value = MagicMock(status="running")
    result = MagicMock()
    result.unique.return_value.scalar_one_or_none.return_value = None
    result.unique.return_value.all.return_value = []
    db.execute.return_value = result
    with patch("berth.services.stale_reaper.get_db_session") as mock_session:
        mock_session.return_value.__aenter__.return_value = db
        yield db


@pytest.fixture
def log_service():
    with patch("berth.services.stale_reaper.operation_log_service") as mock_service:
        mock_service.append_message = AsyncMock()
        mock_service.finalize = AsyncMock(return_value=MagicMock(status="failed"))
        mock_service.stale_operations = AsyncMock(return_value=[])
        mock_service.TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})
        mock_service.is_terminal = lambda s: s in mock_service.TERMINAL_STATUSES
        yield mock_service


class TestReapOperation:
    @patch("berth.services.stale_reaper.get_worker_pool")
    async def test_after_restart_reason(self, mock_pool, db, log_service):
        mock_pool.return_value.owns.return_value = False

        assert await stale_reaper._reap_operation(_log()) == "failed"

        log_service.append_message.assert_awaited_once_with(db, 7, "error", REASON_AFTER_RESTART)
        log_service.finalize.assert_awaited_once_with(
            db, 7, success=False, exit_code=None, status="failed"
        )

    @patch("berth.services.stale_reaper.get_worker_pool")
    async def test_silent_worker_reason(self, mock_pool, db, log_service):
        mock_pool.return_value.owns.return_value = True

        await stale_reaper._reap_operation(_log())

        assert log_service.append_message.await_args.args[3] == REASON_SILENT

    @patch("berth.services.stale_reaper.get_worker_pool", side_effect=RuntimeError("no pool"))
    async def test_no_pool_counts_as_restart(self, mock_pool, db, log_service):
        await stale_reaper._reap_operation(_log())
        assert log_service.append_message.await_args.args[3] == REASON_AFTER_RESTART

    @patch("berth.services.stale_reaper.get_worker_pool")
    async def test_already_finalized(self, mock_pool, db, log_service):
        mock_pool.return_value.owns.return_value = False
        db.get.return_value = MagicMock(status="completed")

        assert await stale_reaper._reap_operation(_log()) is None

        log_service.append_message.assert_not_awaited()
        log_service.finalize.assert_not_awaited()
        assert db.get.await_args.kwargs["with_for_update"] is True

    @patch("berth.services.stale_reaper.get_worker_pool")
    async def test_vanished_header(self, mock_pool, db, log_service):
        mock_pool.return_value.owns.return_value = False
        db.get.return_value = None

        assert await stale_reaper._reap_operation(_log()) is None
        log_service.append_message.assert_not_awaited()

    @patch("berth.services.stale_reaper.get_worker_pool")
    async def test_queue_row_follows(self, mock_pool, db, log_service):
        mock_pool.return_value.owns.return_value = False
        row = MagicMock(status="running")
        db.execute.return_value.unique.return_value.scalar_one_or_none.return_value = row

        await stale_reaper._reap_operation(_log())

        assert row.status == "failed"

    @patch("berth.services.stale_reaper.next_batch_member")
    @patch("berth.services.stale_reaper.get_worker_pool")
    async def test_batch_peer_released(self, mock_pool, mock_next, db, log_service):
        mock_pool.return_value.owns.return_value = False
        mock_next.return_value = MagicMock(server_id=1, stack_name="web", id=9)

        await stale_reaper._reap_operation(_log(batch_id="batch_1", order=0))

        mock_pool.return_value.submit_nowait.assert_called_once_with(1, "web", 9)


class TestReapOnce:
    @patch("berth.services.stale_reaper._reap_operation")
    async def test_counts_reaped(self, mock_reap, db, log_service):
        log_service.stale_operations.return_value = [_log(), _log(operation_id="op_2")]
        mock_reap.side_effect = ["failed", None]

        assert await reap_once() == 1

    @patch("berth.services.stale_reaper._reap_operation")
    async def test_one_failure_does_not_stop_sweep(self, mock_reap, db, log_service):
        log_service.stale_operations.return_value = [_log(), _log(operation_id="op_2")]
        mock_reap.side_effect = [RuntimeError("db gone"), "failed"]

        assert await reap_once() == 1

    @patch("berth.services.stale_reaper.get_worker_pool")
    async def test_repairs_running_queue_rows(self, mock_pool, db, log_service):
        mock_pool.return_value.owns.return_value = False
        ended = MagicMock(status="running", operation_id="op_1")
        orphan = MagicMock(status="running", operation_id="op_2")
        live = MagicMock(status="running", operation_id="op_3")
        db.execute.return_value.unique.return_value.all.return_value = [
            (ended, "completed"),
            (orphan, None),
            (live, "running"),
        ]

        assert await stale_reaper._repair_queue_rows() == 2
        assert ended.status == "completed"
        assert orphan.status == "failed"
        assert live.status == "running"
