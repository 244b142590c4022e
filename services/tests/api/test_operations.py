"""Tests for operation intake, webhook trigger and SSE stream endpoints."""

from unittest.mock import AsyncMock, MagicMock, patch

from httpx import ASGITransport, AsyncClient

from berth.api.app import create_application
from berth.api.dependencies import get_current_user
from berth.auth.principals import AuthenticatedUser, SessionPrincipal
from berth.db.session import get_db
from berth.errors import OperationForbiddenError
from berth.services.webhook_service import WebhookAuthError

USER = AuthenticatedUser(
    user_id=1,
    username="alice",
    email="alice@example.com",
    is_admin=False,
    auth_method="session",
    principal=SessionPrincipal(user_id=1),
)


def _make_app(user: AuthenticatedUser | None = USER):
    app = create_application()

    if user is not None:

        async def override_auth():
            return user

        app.dependency_overrides[get_current_user] = override_auth

    async def override_db():
        return AsyncMock()

    app.dependency_overrides[get_db] = override_db
    return app


class TestQueueOperation:
    @patch("berth.api.routers.operations.queue_service.enqueue_one")
    async def test_accepted(self, mock_enqueue):
        mock_enqueue.return_value = {
            "operation_id": "op_1",
            "status": "queued",
            "position_in_queue": 1,
        }
        app = _make_app()

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/api/v1/servers/1/stacks/web/operations",
                json={"command": "up", "options": ["-d"]},
                headers={"User-Agent": "pytest"},
            )

        assert response.status_code == 200
        body = response.json()
        assert body["operationId"] == "op_1"
        assert body["position_in_queue"] == 1

        args = mock_enqueue.await_args.args
        assert args[1] == USER.principal
        assert args[2].username == "alice"
        assert args[3:5] == (1, "web")
        assert args[5].command == "up"
        assert args[5].options == ["-d"]

    async def test_empty_command_is_400(self):
        app = _make_app()

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/api/v1/servers/1/stacks/web/operations", json={"command": "  "}
            )

        assert response.status_code == 400

    @patch("berth.api.routers.operations.queue_service.enqueue_one")
    async def test_forbidden(self, mock_enqueue):
        mock_enqueue.side_effect = OperationForbiddenError("Insufficient permissions")
        app = _make_app()

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/api/v1/servers/1/stacks/web/operations", json={"command": "down"}
            )

        assert response.status_code == 403
        assert response.json() == {"detail": "Insufficient permissions"}

    async def test_empty_batch_is_400(self):
        app = _make_app()

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/api/v1/servers/1/stacks/web/operations/batch", json={"operations": []}
            )

        assert response.status_code == 400

    @patch("berth.api.routers.operations.queue_service.enqueue_batch")
    async def test_batch(self, mock_enqueue):
        mock_enqueue.return_value = {"batch_id": "batch_1", "operations": []}
        app = _make_app()

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/api/v1/servers/1/stacks/web/operations/batch",
                json={"operations": [{"command": "pull"}, {"command": "up", "options": ["-d"]}]},
            )

        assert response.status_code == 200
        requests = mock_enqueue.await_args.args[5]
        assert [r.command for r in requests] == ["pull", "up"]


class TestWebhookTrigger:
    async def test_command_or_operations_required(self):
        app = _make_app(user=None)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/api/v1/webhooks/4/trigger",
                json={"api_key": "wh_x", "server_id": 1, "stack_name": "web"},
            )

        assert response.status_code == 400

    @patch("berth.api.routers.webhooks.webhook_service.trigger")
    async def test_bad_key_is_401(self, mock_trigger):
        mock_trigger.side_effect = WebhookAuthError("Invalid webhook or API key")
        app = _make_app(user=None)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/api/v1/webhooks/4/trigger",
                json={"api_key": "wh_x", "server_id": 1, "stack_name": "web", "command": "up"},
            )

        assert response.status_code == 401

    @patch("berth.api.routers.webhooks.webhook_service.trigger")
    async def test_queued(self, mock_trigger):
        mock_trigger.return_value = {"operation_id": "op_1", "position_in_queue": 1}
        app = _make_app(user=None)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/api/v1/webhooks/4/trigger",
                json={"api_key": "wh_x", "server_id": 1, "stack_name": "web", "command": "up"},
            )

        assert response.status_code == 200
        kwargs = mock_trigger.await_args.kwargs
        assert kwargs["batch"] is False
        assert kwargs["requests"][0].command == "up"

    @patch("berth.api.routers.webhooks.webhook_service.wait_for_completion")
    @patch("berth.api.routers.webhooks.webhook_service.trigger")
    async def test_wait(self, mock_trigger, mock_wait):
        mock_trigger.return_value = {"operation_id": "op_1"}
        log = MagicMock(
            operation_id="op_1", status="completed", success=True, exit_code=0, duration_ms=1200
        )
        mock_wait.return_value = log
        app = _make_app(user=None)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/api/v1/webhooks/4/trigger?wait=true",
                json={"api_key": "wh_x", "server_id": 1, "stack_name": "web", "command": "up"},
            )

        assert response.status_code == 200
        assert response.json() == {
            "operation_id": "op_1",
            "status": "completed",
            "success": True,
            "exit_code": 0,
            "duration_ms": 1200,
        }

    @patch("berth.api.routers.webhooks.webhook_service.wait_for_completion", return_value=None)
    @patch("berth.api.routers.webhooks.webhook_service.trigger")
    async def test_wait_timeout_is_408(self, mock_trigger, mock_wait):
        mock_trigger.return_value = {"operation_id": "op_1"}
        app = _make_app(user=None)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/api/v1/webhooks/4/trigger?wait=true",
                json={"api_key": "wh_x", "server_id": 1, "stack_name": "web", "command": "up"},
            )

        assert response.status_code == 408


class TestOperationStream:
    async def test_key_required(self):
        app = _make_app(user=None)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/api/v1/operations/op_1/stream")

        assert response.status_code == 401

    @patch("berth.api.routers.operations.webhook_service.operation_events")
    @patch("berth.api.routers.operations.webhook_service.open_operation_stream")
    async def test_streams_events(self, mock_open, mock_events):
        mock_open.return_value = MagicMock(id=7, webhook_id=4)

        async def events(log_id):
            yield 'data: {"type": "stdout", "data": "pulling"}\n\n'
            yield 'data: {"type": "complete", "success": true, "exitCode": 0}\n\n'

        mock_events.side_effect = events
        app = _make_app(user=None)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get(
                "/api/v1/operations/op_1/stream", headers={"X-API-Key": "wh_x"}
            )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert '"type": "complete"' in response.text
        mock_open.assert_awaited_once_with("op_1", "wh_x")
