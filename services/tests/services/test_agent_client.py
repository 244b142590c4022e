"""Tests for the agent HTTP client."""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from berth.services import agent_client
from berth.services.agent_client import (
    AgentError,
    AgentProtocolError,
    AgentUnavailableError,
    base_url,
)


def _server():
    server = MagicMock()
    server.id = 1
    server.name = "edge-1"
    server.host = "edge-1.internal"
    server.port = 8443
    server.access_token = None
    server.skip_ssl_verification = False
    return server


def _mock_client(handler):
    def build(server, timeout):
        return httpx.AsyncClient(
            base_url=base_url(server), transport=httpx.MockTransport(handler)
        )

    return patch("berth.services.agent_client._build_client", side_effect=build)


class TestRequest:
    def test_base_url(self):
        assert base_url(_server()) == "https://edge-1.internal:8443/api"

    async def test_json_response(self):
        def handler(request):
            assert request.url.path == "/api/stacks"
            return httpx.Response(200, json=[{"name": "web"}])

        with _mock_client(handler):
            assert await agent_client.list_stacks(_server()) == [{"name": "web"}]

    async def test_empty_body(self):
        with _mock_client(lambda request: httpx.Response(204)):
            assert await agent_client.request(_server(), "POST", "/stacks/web/restart") is None

    async def test_error_status(self):
        with _mock_client(lambda request: httpx.Response(404, json={"error": "no such stack"})):
            with pytest.raises(AgentError) as exc_info:
                await agent_client.request(_server(), "GET", "/stacks/nope")

        assert exc_info.value.status_code == 404
        assert exc_info.value.message == "no such stack"

    async def test_invalid_json(self):
        with _mock_client(lambda request: httpx.Response(200, text="<html>")):
            with pytest.raises(AgentProtocolError):
                await agent_client.request(_server(), "GET", "/stacks")

    async def test_non_list_listing(self):
        with _mock_client(lambda request: httpx.Response(200, json={"stacks": []})):
            with pytest.raises(AgentProtocolError):
                await agent_client.list_stacks(_server())

    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with _mock_client(handler):
            with pytest.raises(AgentUnavailableError):
                await agent_client.request(_server(), "GET", "/stacks")


class TestHealth:
    async def test_ok(self):
        with _mock_client(lambda request: httpx.Response(200, json={"status": "ok"})):
            await agent_client.health(_server())

    async def test_unhealthy(self):
        with _mock_client(lambda request: httpx.Response(503, text="starting")):
            with pytest.raises(AgentError) as exc_info:
                await agent_client.health(_server())
        assert exc_info.value.message == "starting"


class TestStream:
    async def test_yields_data_lines(self):
        body = ": keepalive\n\nevent: output\ndata: {\"a\": 1}\n\ndata: {\"b\": 2}\n\n"
        with _mock_client(lambda request: httpx.Response(200, text=body)):
            lines = [line async for line in agent_client.stream(_server(), "/ops/1/stream")]

        assert lines == ['{"a": 1}', '{"b": 2}']

    async def test_error_status(self):
        with _mock_client(lambda request: httpx.Response(500, text="boom")):
            with pytest.raises(AgentError):
                async for _ in agent_client.stream(_server(), "/ops/1/stream"):
                    pass


class TestHeaders:
    @patch("berth.services.agent_client.decrypt_value", return_value="secret-token")
    def test_bearer_token(self, mock_decrypt):
        server = _server()
        server.access_token = "ciphertext"

        headers = agent_client._headers(server)

        assert headers["Authorization"] == "Bearer secret-token"
        mock_decrypt.assert_called_once_with("ciphertext")


class TestStartOperation:
    async def test_returns_agent_id(self):
        def handler(request):
            assert request.url.path == "/api/stacks/web/operations"
            return httpx.Response(201, json={"operationId": "agent-42"})

        with _mock_client(handler):
            op_id = await agent_client.start_operation(_server(), "web", {"command": "up"})

        assert op_id == "agent-42"

    async def test_missing_id(self):
        with _mock_client(lambda request: httpx.Response(201, json={})):
            with pytest.raises(AgentProtocolError):
                await agent_client.start_operation(_server(), "web", {"command": "up"})
