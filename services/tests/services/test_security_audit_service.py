"""Tests for the security audit trail."""

from unittest.mock import AsyncMock, MagicMock, patch

from berth.services import security_audit_service
from berth.services.security_audit_service import Actor, event_category, event_severity


class TestEventCatalogue:
    def test_known_event(self):
        assert event_category("server.deleted") == "server"
        assert event_severity("server.deleted") == "critical"

    def test_unknown_event(self):
        assert event_category("something.else") == "unknown"
        assert event_severity("something.else") == "medium"


class TestRecord:
    @patch("berth.services.security_audit_service.get_db_session")
    async def test_writes_row(self, mock_session):
        db = MagicMock()
        mock_session.return_value.__aenter__.return_value = db

        await security_audit_service.record(
            "webhook.triggered",
            actor=Actor(user_id=1, username="alice", ip="10.0.0.1"),
            target_type="webhook",
            target_id=4,
            metadata={"operation_id": "op_1"},
            server_id=2,
            stack_name="web",
        )

        entry = db.add.call_args.args[0]
        assert entry.event_category == "webhook"
        assert entry.severity == "low"
        assert entry.actor_username == "alice"
        assert entry.metadata_json == {"operation_id": "op_1"}
        assert entry.success is True

    @patch("berth.services.security_audit_service.get_db_session")
    async def test_failure_is_swallowed(self, mock_session):
        mock_session.return_value.__aenter__ = AsyncMock(side_effect=RuntimeError("db down"))

        await security_audit_service.record("auth.login.failure", actor=Actor(), success=False)
