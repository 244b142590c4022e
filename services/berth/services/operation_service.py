"""Operation relay.

Launches compose operations on an agent and relays the agent's SSE stream
into the operation log and to live WebSocket subscribers.

The relay runs as two cooperating tasks: a reader that parses agent SSE
frames into a bounded queue, and the caller's task that persists each frame
(assigning its sequence number) and fans it out. The relay always leaves a
complete log behind: when the agent drops the stream it synthesizes an
error + complete pair itself. When the relay is cancelled (timeout or
shutdown) the caller records the pair with its own reason.
"""

import asyncio
import contextlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from berth.auth.permissions import required_permission_for_command
from berth.auth.principals import Principal
from berth.db.models import OperationLog, Server, utc_now
from berth.db.session import get_db_session
from berth.errors import OperationForbiddenError
from berth.logging_config import get_logger
from berth.services import agent_client, operation_log_service, rbac_service
from berth.services.live_hub import hub

logger = get_logger(__name__)

FRAME_BUFFER_SIZE = 64

_END = object()


@dataclass
class OperationRequest:
    command: str
    options: list[str] = field(default_factory=list)
    services: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.command = (self.command or "").strip()
        if not self.command:
            raise ValueError("command is required")
        self.options = [str(o) for o in self.options or []]
        self.services = [str(s) for s in self.services or []]

    def to_agent_payload(self) -> dict[str, Any]:
        return {"command": self.command, "options": self.options, "services": self.services}


@dataclass
class OperationResult:
    agent_operation_id: str | None
    success: bool
    exit_code: int | None


@dataclass
class StreamFrame:
    """One parsed agent SSE event."""

    type: str
    data: str
    timestamp: datetime
    success: bool | None = None
    exit_code: int | None = None

    def stored_data(self) -> str:
        if self.type == "complete":
            return json.dumps({"success": bool(self.success), "exitCode": self.exit_code})
        return self.data

    def envelope(self) -> dict[str, Any]:
        """Wire shape shared by the agent, the WebSocket and the webhook stream."""
        env: dict[str, Any] = {
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.type == "complete":
            env["success"] = bool(self.success)
            env["exitCode"] = self.exit_code
        return env


def parse_frame(payload: str) -> StreamFrame:
    """Parse an SSE data payload. Non-JSON payloads become stdout lines."""
    try:
        raw = json.loads(payload)
    except ValueError:
        raw = None
    if not isinstance(raw, dict):
        return StreamFrame(type="stdout", data=payload, timestamp=utc_now())

    msg_type = raw.get("type")
    if msg_type not in operation_log_service.MESSAGE_TYPES:
        msg_type = "stdout"

    timestamp = utc_now()
    if isinstance(raw.get("timestamp"), str):
        try:
            parsed = datetime.fromisoformat(raw["timestamp"])
            if parsed.tzinfo is not None:
                timestamp = parsed
        except ValueError:
            pass

    exit_code = raw.get("exitCode")
    data = raw.get("data", "")
    return StreamFrame(
        type=msg_type,
        data=data if isinstance(data, str) else json.dumps(data),
        timestamp=timestamp,
        success=raw.get("success") if isinstance(raw.get("success"), bool) else None,
        exit_code=exit_code if isinstance(exit_code, int) else None,
    )


async def start_operation(
    db: AsyncSession,
    principal: Principal,
    server: Server,
    stack_name: str,
    request: OperationRequest,
) -> str:
    """Authorize and launch an operation without queueing or streaming it.

    Returns the agent's operation id.
    """
    permission = required_permission_for_command(request.command)
    if not await rbac_service.effective_allow(db, principal, server.id, stack_name, permission):
        raise OperationForbiddenError("Insufficient permissions", permission=permission)
    return await agent_client.start_operation(server, stack_name, request.to_agent_payload())


async def _persist(log_id: int, operation_id: str, frame: StreamFrame) -> None:
    async with get_db_session() as db:
        message = await operation_log_service.append_message(
            db, log_id, frame.type, frame.stored_data(), frame.timestamp
        )
    hub.publish(operation_id, {**frame.envelope(), "sequence_number": message.sequence_number})


async def record_failure(log_id: int, operation_id: str, reason: str) -> bool:
    """Close the message stream with an error line and an unsuccessful complete.

    Does nothing if the stream already holds a complete message. Returns
    whether the pair was written.
    """
    async with get_db_session() as db:
        if await operation_log_service.has_complete_message(db, log_id):
            logger.debug("Stream already complete", operation_id=operation_id, reason=reason)
            return False
    now = utc_now()
    await _persist(log_id, operation_id, StreamFrame(type="error", data=reason, timestamp=now))
    await _persist(
        log_id,
        operation_id,
        StreamFrame(type="complete", data="", timestamp=now, success=False, exit_code=None),
    )
    return True


async def _read_stream(server: Server, agent_operation_id: str, frames: asyncio.Queue) -> None:
    """Reader task: agent SSE → bounded frame queue. Always ends with _END or an exception."""
    try:
        async with contextlib.aclosing(
            agent_client.operation_stream(server, agent_operation_id)
        ) as payloads:
            async for payload in payloads:
                frame = parse_frame(payload)
                await frames.put(frame)
                if frame.type == "complete":
                    break
    except agent_client.AgentClientError as e:
        await frames.put(e)
        return
    await frames.put(_END)


async def start_and_execute(
    server: Server,
    stack_name: str,
    request: OperationRequest,
    log_id: int,
    operation_id: str,
) -> OperationResult:
    """Launch an operation on the agent and relay its stream until completion.

    Agent launch failures propagate to the caller. Once the stream is open,
    every outcome is recorded in the log and returned as an OperationResult.
    Cancellation closes the agent connection and re-raises CancelledError;
    the caller records why the operation was cut short.
    """
    agent_operation_id = await agent_client.start_operation(
        server, stack_name, request.to_agent_payload()
    )
    async with get_db_session() as db:
        await db.execute(
            update(OperationLog)
            .where(OperationLog.id == log_id)
            .values(agent_operation_id=agent_operation_id)
        )
    logger.info(
        "Agent operation started",
        operation_id=operation_id,
        agent_operation_id=agent_operation_id,
        server_id=server.id,
        stack_name=stack_name,
    )

    frames: asyncio.Queue = asyncio.Queue(maxsize=FRAME_BUFFER_SIZE)
    reader = asyncio.create_task(
        _read_stream(server, agent_operation_id, frames), name=f"sse-reader:{operation_id}"
    )

    try:
        while True:
            item = await frames.get()
            if item is _END:
                logger.warning("Agent stream ended without completion", operation_id=operation_id)
                await record_failure(log_id, operation_id, "Agent stream ended unexpectedly")
                return OperationResult(agent_operation_id, success=False, exit_code=None)
            if isinstance(item, Exception):
                logger.warning("Agent stream failed", operation_id=operation_id, error=str(item))
                await record_failure(log_id, operation_id, f"Agent stream failed: {item}")
                return OperationResult(agent_operation_id, success=False, exit_code=None)

            await _persist(log_id, operation_id, item)
            if item.type == "complete":
                return OperationResult(
                    agent_operation_id,
                    success=bool(item.success),
                    exit_code=item.exit_code,
                )
    except asyncio.CancelledError:
        reader.cancel()
        logger.warning("Operation relay cancelled", operation_id=operation_id)
        raise
    finally:
        if not reader.done():
            reader.cancel()
