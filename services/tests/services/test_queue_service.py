"""Tests for queue intake."""

import asyncio
from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from berth.auth.principals import SessionPrincipal
from berth.errors import NotFoundError, OperationForbiddenError
from berth.services.operation_service import OperationRequest
from berth.services.queue_service import (
    enqueue_batch,
    enqueue_one,
    estimated_start_time,
    generate_operation_id,
    list_stack_queue,
    queue_position,
)
from berth.services.queue_worker import WorkerPool
from berth.services.security_audit_service import Actor

PRINCIPAL = SessionPrincipal(user_id=1)
ACTOR = Actor(user_id=1, username="alice", ip="10.0.0.1", user_agent="pytest")


def _db(position: int = 1):
    db = AsyncMock()
    db.add = MagicMock()
    db.add_all = MagicMock()
    result = MagicMock()
    result.scalar_one.return_value = position
    db.execute.return_value = result
    return db


@pytest.fixture
def pool():
    pool = MagicMock()
    pool.submit = AsyncMock()
    pool.intake_lock.return_value = asyncio.Lock()
    with patch("berth.services.queue_service.get_worker_pool", return_value=pool):
        yield pool


@pytest.fixture
def visible():
    with patch("berth.services.queue_service.server_service") as mock_servers:
        mock_servers.get_visible_server = AsyncMock()
        yield mock_servers


class TestHelpers:
    def test_operation_id_format(self):
        op_id = generate_operation_id()
        assert op_id.startswith("op_")
        assert len(op_id) == 11

    @patch("berth.services.queue_service.settings")
    def test_estimate_first_position_is_now(self, mock_settings):
        mock_settings.queue.estimated_seconds_per_operation = 30
        assert estimated_start_time(1) <= estimated_start_time(2)


class TestEnqueueOne:
    @patch("berth.services.queue_service.rbac_service")
    async def test_queues_and_submits(self, mock_rbac, pool, visible):
        mock_rbac.effective_allow = AsyncMock(return_value=True)
        db = _db(position=2)

        result = await enqueue_one(
            db, PRINCIPAL, ACTOR, 1, "web", OperationRequest(command="up", options=["-d"])
        )

        row = db.add.call_args.args[0]
        assert row.status == "queued"
        assert row.options == ["-d"]
        assert result["operation_id"] == row.operation_id
        assert result["position_in_queue"] == 2
        db.commit.assert_awaited_once()
        pool.submit.assert_awaited_once_with(1, "web", row.id)
        mock_rbac.effective_allow.assert_awaited_once_with(
            db, PRINCIPAL, 1, "web", "stacks.manage"
        )

    @patch("berth.services.queue_service.security_audit_service")
    @patch("berth.services.queue_service.rbac_service")
    async def test_forbidden_is_audited(self, mock_rbac, mock_audit, pool, visible):
        mock_rbac.effective_allow = AsyncMock(return_value=False)
        mock_audit.record_authorization_denied = AsyncMock()
        db = _db()

        with pytest.raises(OperationForbiddenError) as exc_info:
            await enqueue_one(db, PRINCIPAL, ACTOR, 1, "web", OperationRequest(command="up"))

        assert exc_info.value.permission == "stacks.manage"
        mock_audit.record_authorization_denied.assert_awaited_once()
        db.add.assert_not_called()
        pool.submit.assert_not_awaited()

    @patch("berth.services.queue_service.rbac_service")
    async def test_archive_needs_files_write(self, mock_rbac, pool, visible):
        mock_rbac.effective_allow = AsyncMock(return_value=True)
        db = _db()

        await enqueue_one(db, PRINCIPAL, ACTOR, 1, "web", OperationRequest(command="create-archive"))

        assert mock_rbac.effective_allow.await_args.args[4] == "files.write"

    async def test_hidden_server(self, pool, visible):
        visible.get_visible_server.side_effect = NotFoundError("Server not found")

        with pytest.raises(NotFoundError):
            await enqueue_one(_db(), PRINCIPAL, ACTOR, 9, "web", OperationRequest(command="up"))
        pool.submit.assert_not_awaited()


class TestEnqueueBatch:
    @patch("berth.services.queue_service.rbac_service")
    async def test_chains_dependencies(self, mock_rbac, pool, visible):
        mock_rbac.effective_allow = AsyncMock(return_value=True)
        db = _db(position=1)
        requests = [OperationRequest(command=c) for c in ("pull", "up", "restart")]

        result = await enqueue_batch(db, PRINCIPAL, ACTOR, 1, "web", requests)

        rows = db.add_all.call_args.args[0]
        assert [r.order for r in rows] == [0, 1, 2]
        assert rows[0].depends_on is None
        assert rows[1].depends_on == rows[0].operation_id
        assert rows[2].depends_on == rows[1].operation_id
        assert {r.batch_id for r in rows} == {result["batch_id"]}
        assert [op["position_in_queue"] for op in result["operations"]] == [1, 2, 3]
        # Only the head of the chain goes to the worker
        pool.submit.assert_awaited_once_with(1, "web", rows[0].id)

    @patch("berth.services.queue_service.security_audit_service")
    @patch("berth.services.queue_service.rbac_service")
    async def test_any_denied_item_rejects_batch(self, mock_rbac, mock_audit, pool, visible):
        mock_rbac.effective_allow = AsyncMock(side_effect=[True, False])
        mock_audit.record_authorization_denied = AsyncMock()
        db = _db()

        with pytest.raises(OperationForbiddenError):
            await enqueue_batch(
                db,
                PRINCIPAL,
                ACTOR,
                1,
                "web",
                [OperationRequest(command="up"), OperationRequest(command="extract-archive")],
            )
        db.add_all.assert_not_called()

    async def test_empty_batch(self, pool, visible):
        with pytest.raises(ValueError):
            await enqueue_batch(_db(), PRINCIPAL, ACTOR, 1, "web", [])


class TestSameStackOrdering:
    @patch("berth.services.queue_service.rbac_service")
    async def test_slow_commit_cannot_be_overtaken(self, mock_rbac, visible):
        mock_rbac.effective_allow = AsyncMock(return_value=True)
        real_pool = WorkerPool()
        dispatched: list[int] = []
        real_pool.submit = AsyncMock(side_effect=lambda s, n, queued_id: dispatched.append(queued_id))

        def _committing_db(row_id: int, delay: float):
            db = _db()

            async def commit():
                await asyncio.sleep(delay)
                db.add.call_args.args[0].id = row_id

            db.commit = AsyncMock(side_effect=commit)
            return db

        slow = _committing_db(1, 0.05)
        fast = _committing_db(2, 0)

        with patch("berth.services.queue_service.get_worker_pool", return_value=real_pool):
            await asyncio.gather(
                enqueue_one(slow, PRINCIPAL, ACTOR, 1, "web", OperationRequest(command="up")),
                enqueue_one(fast, PRINCIPAL, ACTOR, 1, "web", OperationRequest(command="pull")),
            )

        first = slow.add.call_args.args[0]
        second = fast.add.call_args.args[0]
        assert first.queued_at <= second.queued_at
        assert dispatched == [1, 2]

    async def test_other_stacks_use_separate_locks(self):
        real_pool = WorkerPool()
        assert real_pool.intake_lock(1, "web") is real_pool.intake_lock(1, "web")
        assert real_pool.intake_lock(1, "web") is not real_pool.intake_lock(1, "db")


def _queued(row_id: int, status: str, minute: int):
    row = MagicMock()
    row.id = row_id
    row.operation_id = f"op_{row_id}"
    row.batch_id = None
    row.user.username = "alice"
    row.server.name = "prod"
    row.stack_name = "web"
    row.command = "up"
    row.options = []
    row.services = []
    row.status = status
    row.order = 0
    row.depends_on = None
    row.webhook = None
    row.queued_at = datetime(2026, 1, 1, 0, minute, tzinfo=UTC)
    row.priority = 0
    return row


class TestPositions:
    async def test_queue_position_counts_earlier_queued_rows(self):
        db = _db(position=3)
        row = SimpleNamespace(
            server_id=1, stack_name="web", queued_at=datetime(2026, 1, 1, tzinfo=UTC)
        )

        assert await queue_position(db, row) == 3
        sql = str(db.execute.await_args.args[0])
        assert "queued_at <=" in sql

    @patch("berth.services.queue_service.settings")
    async def test_running_row_has_no_position(self, mock_settings):
        mock_settings.queue.estimated_seconds_per_operation = 30
        db = AsyncMock()
        result = MagicMock()
        result.unique.return_value.scalars.return_value.all.return_value = [
            _queued(1, "running", 0),
            _queued(2, "queued", 1),
            _queued(3, "queued", 2),
        ]
        db.execute.return_value = result

        items = await list_stack_queue(db, 1, "web")

        assert [i["position_in_queue"] for i in items] == [0, 1, 2]
        assert items[0]["estimated_start_time"] is None
        assert items[1]["estimated_start_time"] is not None
        assert items[1]["user_name"] == "alice"
        assert items[1]["server_name"] == "prod"
