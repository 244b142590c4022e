"""Operation intake and log streaming.

Operations are never run inline: intake authorizes the caller, writes a
queue row and hands it to the stack's worker. Output is followed over the
WebSocket endpoints or, for webhook-created operations, the SSE stream below.

Endpoints:
    POST /api/v1/servers/{server_id}/stacks/{stack}/operations        - queue one operation
    POST /api/v1/servers/{server_id}/stacks/{stack}/operations/batch  - queue a dependent chain
    GET  /api/v1/servers/{server_id}/stacks/{stack}/queue             - queued and running rows
    GET  /api/v1/operations/{operation_id}/stream                     - SSE log (webhook key)
"""

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from berth.api.dependencies import get_current_user, request_actor
from berth.auth.permissions import STACKS_READ
from berth.auth.principals import AuthenticatedUser
from berth.db.session import get_db
from berth.errors import OperationForbiddenError
from berth.logging_config import get_logger
from berth.services import queue_service, rbac_service, server_service, webhook_service
from berth.services.operation_service import OperationRequest

router = APIRouter(tags=["operations"])
logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # nginx must not buffer the stream
}


class OperationBody(BaseModel):
    command: str
    options: list[str] = Field(default_factory=list)
    services: list[str] = Field(default_factory=list)

    def to_request(self) -> OperationRequest:
        return OperationRequest(
            command=self.command, options=self.options, services=self.services
        )


class BatchBody(BaseModel):
    operations: list[OperationBody]


def build_requests(items: list[OperationBody]) -> list[OperationRequest]:
    """Convert request bodies, mapping validation failures to 400."""
    try:
        return [item.to_request() for item in items]
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


@router.post("/servers/{server_id}/stacks/{stack_name}/operations")
async def queue_operation(
    server_id: int,
    stack_name: str,
    body: OperationBody,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Queue one operation. Returns its id and position on the stack."""
    op_request = build_requests([body])[0]
    result = await queue_service.enqueue_one(
        db,
        user.principal,
        request_actor(request, user),
        server_id,
        stack_name,
        op_request,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"operationId": result["operation_id"], **result},
    )


@router.post("/servers/{server_id}/stacks/{stack_name}/operations/batch")
async def queue_batch(
    server_id: int,
    stack_name: str,
    body: BatchBody,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Queue operations that run in order, each only if the previous one completed."""
    if not body.operations:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No operations provided")
    result = await queue_service.enqueue_batch(
        db,
        user.principal,
        request_actor(request, user),
        server_id,
        stack_name,
        build_requests(body.operations),
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content=result)


@router.get("/servers/{server_id}/stacks/{stack_name}/queue")
async def stack_queue(
    server_id: int,
    stack_name: str,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    await server_service.get_visible_server(db, user.principal, server_id)
    if not await rbac_service.effective_allow(
        db, user.principal, server_id, stack_name, STACKS_READ
    ):
        raise OperationForbiddenError(
            f"Insufficient permissions to view stack '{stack_name}'", permission=STACKS_READ
        )
    items = await queue_service.list_stack_queue(db, server_id, stack_name)
    return JSONResponse(content={"data": items})


@router.get("/operations/{operation_id}/stream")
async def stream_operation(
    operation_id: str,
    x_api_key: str | None = Header(None),
    api_key: str | None = Query(None),
) -> StreamingResponse:
    """Stream a webhook-created operation's log as Server-Sent Events.

    Authenticated with the key of the webhook that created the operation.
    The stream ends with a complete frame once the operation is terminal.
    """
    key = x_api_key or api_key
    if not key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required (X-API-Key header or api_key query parameter)",
        )

    log = await webhook_service.open_operation_stream(operation_id, key)
    logger.info("Operation stream opened", operation_id=operation_id, webhook_id=log.webhook_id)

    return StreamingResponse(
        webhook_service.operation_events(log.id),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
