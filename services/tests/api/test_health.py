"""Tests for the liveness and readiness endpoints."""

from unittest.mock import MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from berth.api.app import create_application


@pytest.fixture
def pool():
    pool = MagicMock()
    pool.workers = {(1, "web"): MagicMock(), (1, "db"): MagicMock()}
    with patch("berth.api.health.get_worker_pool", return_value=pool):
        yield pool


async def _get(path: str, **kwargs):
    app = create_application()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        return await client.get(path, **kwargs)


class TestHealth:
    async def test_health(self):
        response = await _get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}
        assert "X-Request-ID" in response.headers

    async def test_request_id_echoed(self):
        response = await _get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestReady:
    @patch("berth.api.health.is_encryption_available", return_value=True)
    @patch("berth.api.health.get_redis_health", return_value=True)
    @patch("berth.api.health.get_db_health", return_value=True)
    async def test_ready(self, mock_db, mock_redis, mock_enc, pool):
        response = await _get("/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["checks"] == {
            "database": "healthy",
            "redis": "healthy",
            "worker_pool": "healthy",
        }
        assert body["active_stack_workers"] == 2
        assert body["encryption"] == "enabled"

    @patch("berth.api.health.is_encryption_available", return_value=False)
    @patch("berth.api.health.get_redis_health", return_value=True)
    @patch("berth.api.health.get_db_health", return_value=True)
    async def test_missing_key_still_ready(self, mock_db, mock_redis, mock_enc, pool):
        response = await _get("/ready")

        assert response.status_code == 200
        assert response.json()["encryption"] == "disabled"

    @patch("berth.api.health.get_redis_health", return_value=False)
    @patch("berth.api.health.get_db_health", return_value=True)
    async def test_redis_down(self, mock_db, mock_redis, pool):
        response = await _get("/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["redis"] == "unhealthy"

    @patch(
        "berth.api.health.get_worker_pool", side_effect=RuntimeError("Worker pool not initialized")
    )
    @patch("berth.api.health.get_redis_health", return_value=True)
    @patch("berth.api.health.get_db_health", return_value=True)
    async def test_no_worker_pool(self, mock_db, mock_redis, mock_pool):
        response = await _get("/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["worker_pool"] == "unhealthy"
