"""Tests for API key generation, validation and principals."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from berth.auth.api_keys import (
    API_KEY_PREFIX,
    DISPLAY_PREFIX_LENGTH,
    create_api_key,
    generate_api_key,
    hash_api_key,
    is_api_key,
    principal_for,
    revoke_api_key,
    validate_api_key,
)
from berth.db.models import utc_now


def _db_returning(api_key):
    db = AsyncMock()
    result = MagicMock()
    result.scalar_one_or_none.return_value = api_key
    db.execute.return_value = result
    return db


def _key(**overrides):
    key = MagicMock()
    key.id = 5
    key.user_id = 1
    key.is_active = True
    key.expires_at = None
    key.last_used_at = None
    key.scopes = []
    for name, value in overrides.items():
        setattr(key, name, value)
    return key


class TestGenerate:
    def test_format(self):
        raw = generate_api_key()
        assert raw.startswith(API_KEY_PREFIX)
        # 32 random bytes -> 43 url-safe base64 chars
        assert len(raw) == len(API_KEY_PREFIX) + 43

    def test_unique(self):
        assert generate_api_key() != generate_api_key()

    def test_hash_is_sha256_hex(self):
        digest = hash_api_key("brth_abc")
        assert len(digest) == 64
        assert digest == hash_api_key("brth_abc")

    def test_is_api_key(self):
        assert is_api_key("brth_xyz")
        assert not is_api_key("session-token")


class TestCreate:
    async def test_returns_raw_key_and_prefix(self):
        db = AsyncMock()
        db.add = MagicMock()

        api_key, raw = await create_api_key(db, user_id=1, name=" ci ")

        assert api_key.name == "ci"
        assert api_key.key_hash == hash_api_key(raw)
        assert api_key.key_prefix == raw[:DISPLAY_PREFIX_LENGTH]
        db.add.assert_called_once_with(api_key)

    async def test_blank_name_rejected(self):
        with pytest.raises(ValueError):
            await create_api_key(AsyncMock(), user_id=1, name="  ")

    async def test_past_expiry_rejected(self):
        with pytest.raises(ValueError):
            await create_api_key(
                AsyncMock(), user_id=1, name="ci", expires_at=utc_now() - timedelta(hours=1)
            )


class TestValidate:
    async def test_unknown_key(self):
        assert await validate_api_key(_db_returning(None), "brth_nope") is None

    async def test_inactive_key(self):
        assert await validate_api_key(_db_returning(_key(is_active=False)), "brth_x") is None

    async def test_expired_key(self):
        key = _key(expires_at=utc_now() - timedelta(seconds=1))
        assert await validate_api_key(_db_returning(key), "brth_x") is None

    async def test_first_use_records_last_used(self):
        key = _key()
        db = _db_returning(key)

        assert await validate_api_key(db, "brth_x") is key
        assert key.last_used_at is not None
        # select + update
        assert db.execute.await_count == 2

    @patch("berth.auth.api_keys.settings")
    async def test_recent_use_skips_update(self, mock_settings):
        mock_settings.auth.api_key_last_used_interval_seconds = 60
        key = _key(last_used_at=utc_now() - timedelta(seconds=5))
        db = _db_returning(key)

        assert await validate_api_key(db, "brth_x") is key
        assert db.execute.await_count == 1


class TestPrincipal:
    def test_scopes_become_grants(self):
        scope = MagicMock()
        scope.server_id = None
        scope.stack_pattern = "web-*"
        scope.permission.name = "stacks.read"
        principal = principal_for(_key(scopes=[scope]))

        assert principal.user_id == 1
        assert principal.api_key_id == 5
        assert principal.kind == "api_key"
        assert principal.scopes[0].server_id is None
        assert principal.scopes[0].stack_pattern == "web-*"
        assert principal.scopes[0].permission == "stacks.read"


class TestRevoke:
    async def test_soft_delete_rewrites_hash(self):
        key = _key(key_hash="abc")
        await revoke_api_key(AsyncMock(), key)

        assert key.is_active is False
        assert key.key_hash.startswith("abc-deleted-")
