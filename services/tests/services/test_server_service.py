"""Tests for server persistence and visibility."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from berth.auth.principals import APIKeyPrincipal, ScopeGrant, SessionPrincipal
from berth.errors import ConflictError, NotFoundError
from berth.services import server_service


@pytest.fixture
def mock_db():
    db = AsyncMock()
    db.add = MagicMock()
    return db


class TestCreateServer:
    @pytest.mark.parametrize(
        "name,host,port",
        [("", "edge-1", 8081), ("edge-1", " ", 8081), ("edge-1", "edge-1", 0)],
    )
    async def test_validation(self, mock_db, name, host, port):
        with pytest.raises(ValueError):
            await server_service.create_server(
                mock_db, name=name, host=host, port=port, access_token="t"
            )

    async def test_token_required(self, mock_db):
        with pytest.raises(ValueError, match="token"):
            await server_service.create_server(
                mock_db, name="edge-1", host="edge-1", access_token=""
            )

    @patch("berth.services.server_service._name_taken", return_value=True)
    async def test_duplicate_name(self, mock_taken, mock_db):
        with pytest.raises(ConflictError):
            await server_service.create_server(
                mock_db, name="edge-1", host="edge-1", access_token="t"
            )

    @patch("berth.services.server_service.encrypt_value", return_value="ciphertext")
    @patch("berth.services.server_service._name_taken", return_value=False)
    async def test_token_encrypted(self, mock_taken, mock_encrypt, mock_db):
        server = await server_service.create_server(
            mock_db, name="edge-1", host="edge-1.internal", access_token="plain"
        )

        assert server.access_token == "ciphertext"
        assert server.port == server_service.DEFAULT_AGENT_PORT
        mock_encrypt.assert_called_once_with("plain")

    def test_dict_omits_token(self):
        server = MagicMock()
        server.created_at = None
        server.updated_at = None
        assert "access_token" not in server_service.server_to_dict(server)


class TestVisibility:
    async def test_missing(self, mock_db):
        mock_db.get.return_value = None
        with pytest.raises(NotFoundError):
            await server_service.get_visible_server(mock_db, SessionPrincipal(user_id=1), 1)

    async def test_inactive_hidden(self, mock_db):
        mock_db.get.return_value = MagicMock(is_active=False)
        with pytest.raises(NotFoundError):
            await server_service.get_visible_server(mock_db, SessionPrincipal(user_id=1), 1)

    @patch("berth.services.server_service.rbac_service.user_has_server_access")
    async def test_outside_key_scope(self, mock_access, mock_db):
        mock_db.get.return_value = MagicMock(is_active=True)
        key = APIKeyPrincipal(
            user_id=1,
            api_key_id=2,
            scopes=(ScopeGrant(server_id=5, stack_pattern="*", permission="stacks.read"),),
        )
        with pytest.raises(NotFoundError):
            await server_service.get_visible_server(mock_db, key, 1)
        mock_access.assert_not_called()

    @patch("berth.services.server_service.rbac_service.user_has_server_access", return_value=False)
    async def test_no_role_access(self, mock_access, mock_db):
        mock_db.get.return_value = MagicMock(is_active=True)
        with pytest.raises(NotFoundError, match="Server not found"):
            await server_service.get_visible_server(mock_db, SessionPrincipal(user_id=1), 1)

    @patch("berth.services.server_service.rbac_service.user_has_server_access", return_value=True)
    async def test_visible(self, mock_access, mock_db):
        server = MagicMock(is_active=True)
        mock_db.get.return_value = server
        assert await server_service.get_visible_server(
            mock_db, SessionPrincipal(user_id=1), 1
        ) is server

    @patch("berth.services.server_service.rbac_service.effective_server_ids", return_value=[])
    async def test_list_none_visible(self, mock_ids, mock_db):
        assert await server_service.list_visible_servers(mock_db, SessionPrincipal(user_id=1)) == []
        mock_db.execute.assert_not_called()
