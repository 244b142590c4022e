"""Tests for API key scope grants."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from berth.db.models import Permission
from berth.errors import ConflictError, NotFoundError, OperationForbiddenError
from berth.services import api_key_service


def _permission(name: str = "stacks.read", api_key_only: bool = False) -> Permission:
    return Permission(id=3, name=name, is_api_key_only=api_key_only)


@pytest.fixture
def mock_db():
    db = AsyncMock()
    db.add = MagicMock()
    duplicate = MagicMock()
    duplicate.first.return_value = None
    db.execute.return_value = duplicate
    return db


@pytest.fixture
def api_key():
    key = MagicMock()
    key.id = 10
    key.user_id = 1
    return key


class TestAddScope:
    @patch("berth.services.api_key_service.get_permission_by_name", return_value=None)
    async def test_unknown_permission(self, mock_perm, mock_db, api_key):
        with pytest.raises(ValueError):
            await api_key_service.add_scope(
                mock_db, api_key, server_id=None, stack_pattern="*", permission_name="nope"
            )

    @patch("berth.services.api_key_service.rbac_service.is_admin", return_value=False)
    @patch("berth.services.api_key_service.get_permission_by_name")
    async def test_admin_scope_needs_admin(self, mock_perm, mock_admin, mock_db, api_key):
        mock_perm.return_value = _permission("admin.*", api_key_only=True)
        with pytest.raises(OperationForbiddenError):
            await api_key_service.add_scope(
                mock_db, api_key, server_id=None, stack_pattern="*", permission_name="admin.*"
            )

    @patch("berth.services.api_key_service.get_permission_by_name")
    async def test_unknown_server(self, mock_perm, mock_db, api_key):
        mock_perm.return_value = _permission()
        mock_db.get.return_value = None
        with pytest.raises(NotFoundError):
            await api_key_service.add_scope(
                mock_db, api_key, server_id=9, stack_pattern="*", permission_name="stacks.read"
            )

    @patch(
        "berth.services.api_key_service.rbac_service.user_holds_permission_on_server",
        return_value=False,
    )
    @patch("berth.services.api_key_service.rbac_service.user_has_server_access", return_value=True)
    @patch("berth.services.api_key_service.get_permission_by_name")
    async def test_cannot_grant_unheld(self, mock_perm, mock_access, mock_holds, mock_db, api_key):
        mock_perm.return_value = _permission()
        mock_db.get.return_value = MagicMock()
        with pytest.raises(OperationForbiddenError, match="do not have this permission"):
            await api_key_service.add_scope(
                mock_db, api_key, server_id=1, stack_pattern="*", permission_name="stacks.read"
            )

    @patch("berth.services.api_key_service.rbac_service.accessible_server_ids", return_value=[])
    @patch("berth.services.api_key_service.get_permission_by_name")
    async def test_all_servers_needs_some_access(self, mock_perm, mock_ids, mock_db, api_key):
        mock_perm.return_value = _permission()
        with pytest.raises(OperationForbiddenError):
            await api_key_service.add_scope(
                mock_db, api_key, server_id=None, stack_pattern="*", permission_name="stacks.read"
            )

    @patch(
        "berth.services.api_key_service.rbac_service.user_holds_permission_on_server",
        return_value=True,
    )
    @patch("berth.services.api_key_service.rbac_service.accessible_server_ids", return_value=[1])
    @patch("berth.services.api_key_service.get_permission_by_name")
    async def test_duplicate(self, mock_perm, mock_ids, mock_holds, mock_db, api_key):
        mock_perm.return_value = _permission()
        mock_db.execute.return_value.first.return_value = (4,)
        with pytest.raises(ConflictError):
            await api_key_service.add_scope(
                mock_db, api_key, server_id=None, stack_pattern="*", permission_name="stacks.read"
            )

    @patch(
        "berth.services.api_key_service.rbac_service.user_holds_permission_on_server",
        return_value=True,
    )
    @patch("berth.services.api_key_service.rbac_service.accessible_server_ids", return_value=[1])
    @patch("berth.services.api_key_service.get_permission_by_name")
    async def test_adds_scope(self, mock_perm, mock_ids, mock_holds, mock_db, api_key):
        mock_perm.return_value = _permission()

        scope = await api_key_service.add_scope(
            mock_db, api_key, server_id=None, stack_pattern="", permission_name="stacks.read"
        )

        assert scope.stack_pattern == "*"
        assert scope.server_id is None
        assert scope.api_key_id == 10
        mock_db.add.assert_called_once_with(scope)
