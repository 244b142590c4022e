"""HTTP client for remote Berth agents.

Every agent exposes its API under https://{host}:{port}/api and accepts the
server's decrypted access token as a Bearer credential. JSON calls use the
configured request timeout; SSE streams only bound the connect phase and
otherwise run until the caller stops iterating (or is cancelled).
"""

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from berth.config import settings
from berth.db.models import Server
from berth.errors import BerthError
from berth.logging_config import get_logger
from berth.services.encryption_service import decrypt_value

logger = get_logger(__name__)

SSE_DATA_PREFIX = "data: "


class AgentClientError(BerthError):
    """Base class for agent communication failures."""


class AgentUnavailableError(AgentClientError):
    """Transport-level failure: DNS, connect, TLS, reset, timeout."""


class AgentError(AgentClientError):
    """Agent answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Agent returned {status_code}: {_error_message(body)}")

    @property
    def message(self) -> str:
        return _error_message(self.body)


class AgentProtocolError(AgentClientError):
    """Agent answered 2xx with a body that is not the expected JSON."""


def _error_message(body: str) -> str:
    try:
        parsed = json.loads(body)
    except ValueError:
        return body.strip() or "empty response"
    if isinstance(parsed, dict):
        return str(parsed.get("error") or parsed.get("message") or body)
    return body


def base_url(server: Server) -> str:
    return f"https://{server.host}:{server.port}/api"


def _headers(server: Server) -> dict[str, str]:
    token = decrypt_value(server.access_token) if server.access_token else ""
    return {"Authorization": f"Bearer {token}", "Accept": "application/json"}


def _build_client(server: Server, timeout: httpx.Timeout) -> httpx.AsyncClient:
    """Create a client bound to one server. Tests patch this to inject a transport."""
    if server.skip_ssl_verification:
        logger.debug("SSL verification disabled for server", server_id=server.id)
    return httpx.AsyncClient(
        base_url=base_url(server),
        headers=_headers(server),
        timeout=timeout,
        verify=not server.skip_ssl_verification,
    )


async def request(
    server: Server,
    method: str,
    endpoint: str,
    json_body: Any = None,
    params: dict[str, Any] | None = None,
) -> Any:
    """Send a JSON request to the agent and return the decoded response body.

    Returns None for empty 2xx bodies.
    """
    timeout = httpx.Timeout(settings.agent.request_timeout_seconds)
    try:
        async with _build_client(server, timeout) as client:
            resp = await client.request(method, endpoint, json=json_body, params=params)
    except httpx.HTTPError as e:
        logger.warning(
            "Agent request failed",
            server_id=server.id,
            method=method,
            endpoint=endpoint,
            error=str(e),
        )
        raise AgentUnavailableError(f"Agent {server.name} unreachable: {e}") from e

    logger.debug(
        "Agent request completed",
        server_id=server.id,
        method=method,
        endpoint=endpoint,
        status_code=resp.status_code,
    )

    if not resp.is_success:
        raise AgentError(resp.status_code, resp.text)
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError as e:
        raise AgentProtocolError(f"Agent returned invalid JSON for {endpoint}") from e


async def health(server: Server) -> None:
    """Check agent reachability. Raises on anything other than 200."""
    timeout = httpx.Timeout(settings.agent.request_timeout_seconds)
    try:
        async with _build_client(server, timeout) as client:
            resp = await client.get("/health")
    except httpx.HTTPError as e:
        raise AgentUnavailableError(f"Agent {server.name} unreachable: {e}") from e
    if resp.status_code != 200:
        raise AgentError(resp.status_code, resp.text)


async def stream(server: Server, endpoint: str) -> AsyncIterator[str]:
    """Open an SSE stream and yield the payload of each 'data: ' line.

    Non-data lines (comments, event names, blank separators) are skipped.
    Closing the generator or cancelling the consuming task closes the
    agent connection.
    """
    timeout = httpx.Timeout(None, connect=settings.agent.connect_timeout_seconds)
    try:
        async with _build_client(server, timeout) as client:
            async with client.stream(
                "GET", endpoint, headers={"Accept": "text/event-stream"}
            ) as resp:
                if not resp.is_success:
                    body = (await resp.aread()).decode(errors="replace")
                    raise AgentError(resp.status_code, body)
                async for line in resp.aiter_lines():
                    if line.startswith(SSE_DATA_PREFIX):
                        yield line[len(SSE_DATA_PREFIX) :]
    except httpx.HTTPError as e:
        raise AgentUnavailableError(f"Agent stream from {server.name} failed: {e}") from e


# --- Typed helpers for the endpoints the control plane itself relies on ---


async def list_stacks(server: Server) -> list[dict[str, Any]]:
    data = await request(server, "GET", "/stacks")
    if not isinstance(data, list):
        raise AgentProtocolError("Agent returned a non-list stack listing")
    return data


async def get_stack(server: Server, stack_name: str) -> dict[str, Any]:
    data = await request(server, "GET", f"/stacks/{stack_name}")
    if not isinstance(data, dict):
        raise AgentProtocolError("Agent returned a non-object stack detail")
    return data


async def start_operation(server: Server, stack_name: str, payload: dict[str, Any]) -> str:
    """Launch a compose operation and return the agent's operation id."""
    data = await request(server, "POST", f"/stacks/{stack_name}/operations", json_body=payload)
    operation_id = data.get("operationId") if isinstance(data, dict) else None
    if not operation_id:
        raise AgentProtocolError("Agent response is missing operationId")
    return str(operation_id)


def operation_stream(server: Server, agent_operation_id: str) -> AsyncIterator[str]:
    return stream(server, f"/operations/{agent_operation_id}/stream")
