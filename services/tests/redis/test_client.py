"""Tests for the shared Redis client."""

from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from berth.redis import client as redis_client
from berth.redis.client import get_redis_client, get_redis_health, namespaced


class TestNamespaced:
    def test_joins_parts_under_prefix(self):
        assert namespaced("session", "abc") == "berth:session:abc"

    def test_stringifies_ints(self):
        assert namespaced("user_sessions", 7) == "berth:user_sessions:7"

    def test_trailing_empty_part_gives_prefix(self):
        assert namespaced("refresh", "") == "berth:refresh:"


class TestClientLifecycle:
    def test_get_before_init_raises(self):
        with patch.object(redis_client, "_redis", None):
            with pytest.raises(RuntimeError, match="not initialized"):
                get_redis_client()

    async def test_health_false_when_not_initialized(self):
        with patch.object(redis_client, "_redis", None):
            assert await get_redis_health() is False

    async def test_health_true_on_ping(self):
        fake = AsyncMock()
        fake.ping.return_value = True
        with patch.object(redis_client, "_redis", fake):
            assert await get_redis_health() is True

    async def test_health_false_on_connection_error(self):
        fake = AsyncMock()
        fake.ping.side_effect = RedisConnectionError("down")
        with patch.object(redis_client, "_redis", fake):
            assert await get_redis_health() is False
