"""Tests for roles, stack permission grants and role assignment."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from berth.auth.permissions import ADMIN_ROLE_NAME, PERMISSIONS
from berth.db.models import Permission
from berth.errors import ConflictError, NotFoundError
from berth.services import role_service


def _role(name: str = "deployers", role_id: int = 2, is_admin: bool = False):
    role = MagicMock()
    role.id = role_id
    role.name = name
    role.is_admin = is_admin
    return role


def _result(*, scalars=None, scalar=None, first=None):
    result = MagicMock()
    result.scalars.return_value.all.return_value = scalars or []
    result.scalar_one_or_none.return_value = scalar
    result.scalar_one.return_value = scalar
    result.first.return_value = first
    return result


@pytest.fixture
def mock_db():
    db = AsyncMock()
    db.add = MagicMock()
    return db


class TestEnsurePermissions:
    async def test_seeds_missing(self, mock_db):
        mock_db.execute.return_value = _result(scalars=["stacks.read"])

        added = await role_service.ensure_permissions(mock_db)

        assert added == len(PERMISSIONS) - 1
        names = {c.args[0].name for c in mock_db.add.call_args_list}
        assert "stacks.read" not in names
        assert "admin.*" in names

    async def test_idempotent(self, mock_db):
        mock_db.execute.return_value = _result(scalars=list(PERMISSIONS))

        assert await role_service.ensure_permissions(mock_db) == 0
        mock_db.flush.assert_not_called()


class TestRoles:
    async def test_create_requires_name(self, mock_db):
        with pytest.raises(ValueError):
            await role_service.create_role(mock_db, "  ")

    async def test_create_reserved_name(self, mock_db):
        with pytest.raises(ConflictError):
            await role_service.create_role(mock_db, ADMIN_ROLE_NAME)

    @patch("berth.services.role_service.get_role_by_name", return_value=None)
    async def test_create(self, mock_get, mock_db):
        role = await role_service.create_role(mock_db, " deployers ", "Deploy access")

        assert role.name == "deployers"
        assert role.is_admin is False
        mock_db.add.assert_called_once_with(role)

    async def test_admin_role_is_fixed(self, mock_db):
        admin = _role(ADMIN_ROLE_NAME, 1, is_admin=True)
        with pytest.raises(ValueError):
            await role_service.update_role(mock_db, admin, {"name": "root"})
        with pytest.raises(ValueError):
            await role_service.delete_role(mock_db, admin)

    @patch("berth.services.role_service.role_user_count", return_value=3)
    async def test_delete_assigned_role(self, mock_count, mock_db):
        with pytest.raises(ConflictError, match="3 user"):
            await role_service.delete_role(mock_db, _role())
        mock_db.delete.assert_not_called()

    @patch("berth.services.role_service.role_user_count", return_value=0)
    async def test_delete(self, mock_count, mock_db):
        role = _role()
        await role_service.delete_role(mock_db, role)
        mock_db.delete.assert_awaited_once_with(role)


class TestStackPermissions:
    async def test_not_on_admin_role(self, mock_db):
        with pytest.raises(ValueError):
            await role_service.add_stack_permission(
                mock_db, _role(ADMIN_ROLE_NAME, 1, True), server_id=1, permission_name="stacks.read"
            )

    async def test_unknown_server(self, mock_db):
        mock_db.get.return_value = None
        with pytest.raises(NotFoundError):
            await role_service.add_stack_permission(
                mock_db, _role(), server_id=9, permission_name="stacks.read"
            )

    async def test_api_key_only_permission(self, mock_db):
        mock_db.get.return_value = MagicMock()
        mock_db.execute.return_value = _result(scalar=MagicMock(is_api_key_only=True))
        with pytest.raises(ValueError, match="API key"):
            await role_service.add_stack_permission(
                mock_db, _role(), server_id=1, permission_name="admin.*"
            )

    async def test_duplicate(self, mock_db):
        mock_db.get.return_value = MagicMock()
        permission = MagicMock(id=5, is_api_key_only=False)
        mock_db.execute.side_effect = [_result(scalar=permission), _result(first=(1,))]
        with pytest.raises(ConflictError):
            await role_service.add_stack_permission(
                mock_db, _role(), server_id=1, permission_name="stacks.read"
            )

    async def test_grant_defaults_pattern(self, mock_db):
        mock_db.get.return_value = MagicMock()
        permission = Permission(id=5, name="stacks.read", is_api_key_only=False)
        mock_db.execute.side_effect = [_result(scalar=permission), _result(first=None)]

        grant = await role_service.add_stack_permission(
            mock_db, _role(), server_id=1, permission_name="stacks.read", stack_pattern=" "
        )

        assert grant.stack_pattern == "*"
        assert grant.permission_id == 5

    async def test_remove_other_roles_grant(self, mock_db):
        mock_db.get.return_value = MagicMock(role_id=99)
        with pytest.raises(NotFoundError):
            await role_service.remove_stack_permission(mock_db, _role(), 4)


class TestSetUserRoles:
    async def test_unknown_role(self, mock_db):
        mock_db.execute.return_value = _result(scalars=[_role(role_id=2)])
        with pytest.raises(ValueError, match=r"\[3\]"):
            await role_service.set_user_roles(mock_db, MagicMock(), [2, 3])

    async def test_replaces_roles(self, mock_db):
        roles = [_role(role_id=2), _role("ops", role_id=3)]
        mock_db.execute.return_value = _result(scalars=roles)
        user = MagicMock()

        await role_service.set_user_roles(mock_db, user, [3, 2, 2])

        assert user.roles == roles

    async def test_clear_roles(self, mock_db):
        user = MagicMock()
        await role_service.set_user_roles(mock_db, user, [])
        assert user.roles == []
        mock_db.execute.assert_not_called()
