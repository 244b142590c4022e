"""WebSocket operation streams.

Two shapes share one relay:
    /ws/api/servers/{server_id}/stacks/{stack}/operations
        submit mode: the client sends one operation_request, the operation
        is queued, and its output is streamed back
    /ws/api/servers/{server_id}/stacks/{stack}/operations/{operation_id}
        subscribe mode: stream an existing operation from its first message

Envelope in both directions: {type, data?, error?, message?} with type in
operation_request | operation_started | stream_data | error | complete.

Live frames come from the in-process hub. The hub drops frames for slow
subscribers, so the relay re-reads the persisted log whenever it sees a gap
in sequence numbers or has been idle; output is delivered in order, once.
Protocol-level ping/pong is handled by uvicorn.
"""

import asyncio
import json
from typing import Any
from urllib.parse import urlparse

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from sqlalchemy import select

from berth.api.dependencies import authenticate_token, request_actor, websocket_token
from berth.auth.permissions import STACKS_READ
from berth.auth.principals import AuthenticatedUser
from berth.config import settings
from berth.db.models import QueuedOperation
from berth.db.session import get_db_session
from berth.errors import NotFoundError, OperationForbiddenError
from berth.logging_config import get_logger
from berth.services import operation_log_service, queue_service, rbac_service, server_service
from berth.services.live_hub import hub
from berth.services.operation_service import OperationRequest

router = APIRouter(prefix="/ws/api", tags=["websocket"])
logger = get_logger(__name__)


def origin_allowed(websocket: WebSocket) -> bool:
    """Same-origin browsers, or clients that send no Origin at all."""
    origin = websocket.headers.get("origin")
    if not origin:
        return True
    parsed = urlparse(origin)
    forwarded = websocket.headers.get("x-forwarded-proto", "")
    if forwarded:
        expected_scheme = forwarded.split(",")[0].strip()
    else:
        expected_scheme = "https" if websocket.url.scheme == "wss" else "http"
    host = websocket.headers.get("x-forwarded-host") or websocket.headers.get("host", "")
    return parsed.scheme == expected_scheme and parsed.netloc == host


async def _send_error(websocket: WebSocket, error: str, message: str) -> None:
    await websocket.send_json({"type": "error", "error": error, "message": message})


async def _open(websocket: WebSocket) -> AuthenticatedUser | None:
    """Origin check, accept, authenticate. Closes and returns None on failure."""
    if not origin_allowed(websocket):
        logger.warning("WebSocket origin rejected", origin=websocket.headers.get("origin"))
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None

    await websocket.accept()
    async with get_db_session() as db:
        user = await authenticate_token(db, websocket_token(websocket))
    if user is None:
        await _send_error(websocket, "unauthorized", "Invalid or expired token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None
    return user


def _complete(operation_id: str, success: bool, exit_code: int | None) -> dict[str, Any]:
    return {
        "type": "complete",
        "data": {
            "operationId": operation_id,
            "success": success,
            "exitCode": (
                exit_code if exit_code is not None else operation_log_service.UNKNOWN_EXIT_CODE
            ),
        },
    }


async def _catch_up(websocket: WebSocket, operation_id: str, last_sequence: int) -> tuple[int, bool]:
    """Send persisted messages after last_sequence. Returns (last_sequence, finished)."""
    async with get_db_session() as db:
        header = await operation_log_service.get_by_operation_id(db, operation_id)
        if header is None:
            return last_sequence, False
        messages = await operation_log_service.list_messages(db, header.id, last_sequence)

    for message in messages:
        last_sequence = message.sequence_number
        if message.message_type == "complete":
            stored = json.loads(message.message_data or "{}")
            await websocket.send_json(
                _complete(operation_id, bool(stored.get("success")), stored.get("exitCode"))
            )
            return last_sequence, True
        await websocket.send_json(
            {
                "type": "stream_data",
                "data": {
                    "type": message.message_type,
                    "data": message.message_data,
                    "timestamp": message.timestamp.isoformat(),
                    "sequence_number": message.sequence_number,
                },
            }
        )

    if operation_log_service.is_terminal(header.status):
        await websocket.send_json(
            _complete(operation_id, bool(header.success), header.exit_code)
        )
        return last_sequence, True
    return last_sequence, False


async def relay(websocket: WebSocket, operation_id: str) -> None:
    """Stream an operation to the socket until its complete frame has been sent."""
    queue = hub.subscribe(operation_id)
    last_sequence = 0
    need_catch_up = True
    try:
        while True:
            if need_catch_up:
                last_sequence, finished = await _catch_up(websocket, operation_id, last_sequence)
                if finished:
                    return
                need_catch_up = False

            try:
                frame = await asyncio.wait_for(
                    queue.get(), timeout=settings.websocket.catch_up_interval_seconds
                )
            except TimeoutError:
                need_catch_up = True
                continue

            sequence = frame.get("sequence_number")
            if sequence is None or sequence != last_sequence + 1:
                # Gap (dropped frames) or a frame already sent from the log
                need_catch_up = sequence is None or sequence > last_sequence
                continue

            last_sequence = sequence
            if frame.get("type") == "complete":
                await websocket.send_json(
                    _complete(operation_id, bool(frame.get("success")), frame.get("exitCode"))
                )
                return
            await websocket.send_json({"type": "stream_data", "data": frame})
    finally:
        hub.unsubscribe(operation_id, queue)


async def _drain(websocket: WebSocket) -> None:
    """Consume client messages so a disconnect is noticed while relaying."""
    while True:
        await websocket.receive_text()


async def _relay_until_disconnect(websocket: WebSocket, operation_id: str) -> None:
    relay_task = asyncio.create_task(relay(websocket, operation_id))
    drain_task = asyncio.create_task(_drain(websocket))
    try:
        done, _ = await asyncio.wait(
            {relay_task, drain_task}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        relay_task.cancel()
        drain_task.cancel()
        await asyncio.gather(relay_task, drain_task, return_exceptions=True)

    if relay_task in done and relay_task.exception() is None:
        await websocket.close()


@router.websocket("/servers/{server_id}/stacks/{stack_name}/operations")
async def submit_operation(websocket: WebSocket, server_id: int, stack_name: str) -> None:
    """Queue an operation from an operation_request message and stream its output."""
    user = await _open(websocket)
    if user is None:
        return

    try:
        message = await websocket.receive_json()
        if not isinstance(message, dict) or message.get("type") != "operation_request":
            await _send_error(websocket, "validation_error", "Expected an operation_request")
            await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
            return

        data = message.get("data") or {}
        try:
            request = OperationRequest(
                command=data.get("command", ""),
                options=data.get("options") or [],
                services=data.get("services") or [],
            )
            async with get_db_session() as db:
                result = await queue_service.enqueue_one(
                    db,
                    user.principal,
                    request_actor(websocket, user),
                    server_id,
                    stack_name,
                    request,
                )
        except ValueError as e:
            await _send_error(websocket, "validation_error", str(e))
            await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
            return
        except NotFoundError as e:
            await _send_error(websocket, "not_found", str(e))
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        except OperationForbiddenError as e:
            await _send_error(websocket, "forbidden", str(e))
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        operation_id = result["operation_id"]
        await websocket.send_json(
            {
                "type": "operation_started",
                "data": {
                    "operationId": operation_id,
                    "status": result["status"],
                    "position_in_queue": result["position_in_queue"],
                    "estimated_start_time": result["estimated_start_time"],
                },
            }
        )
        logger.info(
            "WebSocket operation submitted",
            operation_id=operation_id,
            user_id=user.user_id,
            server_id=server_id,
            stack_name=stack_name,
        )
        await _relay_until_disconnect(websocket, operation_id)
    except WebSocketDisconnect:
        logger.debug("WebSocket client disconnected", server_id=server_id, stack_name=stack_name)


@router.websocket("/servers/{server_id}/stacks/{stack_name}/operations/{operation_id}")
async def subscribe_operation(
    websocket: WebSocket, server_id: int, stack_name: str, operation_id: str
) -> None:
    """Stream an existing operation on this stack from its first message."""
    user = await _open(websocket)
    if user is None:
        return

    try:
        async with get_db_session() as db:
            try:
                await server_service.get_visible_server(db, user.principal, server_id)
            except NotFoundError as e:
                await _send_error(websocket, "not_found", str(e))
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
                return

            if not await rbac_service.effective_allow(
                db, user.principal, server_id, stack_name, STACKS_READ
            ):
                await _send_error(websocket, "forbidden", "Insufficient permissions")
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
                return

            row = (
                await db.execute(
                    select(QueuedOperation.id).where(
                        QueuedOperation.operation_id == operation_id,
                        QueuedOperation.server_id == server_id,
                        QueuedOperation.stack_name == stack_name,
                    )
                )
            ).first()
            header = await operation_log_service.get_by_operation_id(db, operation_id)

        on_stack = header is not None and (
            header.server_id == server_id and header.stack_name == stack_name
        )
        if row is None and not on_stack:
            await _send_error(websocket, "not_found", "Operation not found")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await _relay_until_disconnect(websocket, operation_id)
    except WebSocketDisconnect:
        logger.debug("WebSocket subscriber disconnected", operation_id=operation_id)
