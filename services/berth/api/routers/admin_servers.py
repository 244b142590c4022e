"""Server management endpoints (admin only).

Endpoints:
    GET    /api/v1/admin/servers                   - list all servers
    POST   /api/v1/admin/servers                   - register a server
    GET    /api/v1/admin/servers/{server_id}       - show server
    PUT    /api/v1/admin/servers/{server_id}       - update server
    DELETE /api/v1/admin/servers/{server_id}       - delete server
    POST   /api/v1/admin/servers/{server_id}/test  - check agent connectivity
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from berth.api.dependencies import request_actor, require_admin
from berth.auth.principals import AuthenticatedUser
from berth.db.models import Server
from berth.db.session import get_db
from berth.errors import NotFoundError
from berth.logging_config import get_logger
from berth.services import agent_client, security_audit_service, server_service
from berth.services.server_service import DEFAULT_AGENT_PORT

router = APIRouter(prefix="/admin/servers", tags=["admin-servers"])
logger = get_logger(__name__)


class CreateServerRequest(BaseModel):
    name: str
    host: str
    port: int = DEFAULT_AGENT_PORT
    access_token: str
    description: str = ""
    skip_ssl_verification: bool = True
    is_active: bool = True


class UpdateServerRequest(BaseModel):
    name: str | None = None
    host: str | None = None
    port: int | None = None
    access_token: str | None = None
    description: str | None = None
    skip_ssl_verification: bool | None = None
    is_active: bool | None = None


async def _server_or_404(db: AsyncSession, server_id: int) -> Server:
    server = await server_service.get_server(db, server_id)
    if server is None:
        raise NotFoundError("Server not found")
    return server


@router.get("")
async def list_servers(
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    servers = await server_service.list_servers(db)
    return JSONResponse(content={"data": [server_service.server_to_dict(s) for s in servers]})


@router.post("")
async def create_server(
    body: CreateServerRequest,
    request: Request,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    try:
        server = await server_service.create_server(
            db,
            name=body.name,
            host=body.host,
            access_token=body.access_token,
            port=body.port,
            description=body.description,
            skip_ssl_verification=body.skip_ssl_verification,
            is_active=body.is_active,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    await security_audit_service.record(
        "server.created",
        actor=request_actor(request, user),
        target_type="server",
        target_id=server.id,
        target_name=server.name,
        metadata={"host": server.host, "port": server.port},
        server_id=server.id,
    )
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={"data": server_service.server_to_dict(server)},
    )


@router.get("/{server_id}")
async def show_server(
    server_id: int,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    server = await _server_or_404(db, server_id)
    return JSONResponse(content={"data": server_service.server_to_dict(server)})


@router.put("/{server_id}")
async def update_server(
    server_id: int,
    body: UpdateServerRequest,
    request: Request,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    server = await _server_or_404(db, server_id)
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    try:
        server = await server_service.update_server(db, server, changes)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    await security_audit_service.record(
        "server.updated",
        actor=request_actor(request, user),
        target_type="server",
        target_id=server.id,
        target_name=server.name,
        # Never log the token itself
        metadata={"fields": sorted(changes)},
        server_id=server.id,
    )
    return JSONResponse(content={"data": server_service.server_to_dict(server)})


@router.delete("/{server_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_server(
    server_id: int,
    request: Request,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> Response:
    server = await _server_or_404(db, server_id)
    await server_service.delete_server(db, server)
    await security_audit_service.record(
        "server.deleted",
        actor=request_actor(request, user),
        target_type="server",
        target_id=server_id,
        target_name=server.name,
        server_id=server_id,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{server_id}/test")
async def test_server_connection(
    server_id: int,
    request: Request,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Call the agent's /health. Always 200; the body says whether it worked."""
    server = await _server_or_404(db, server_id)
    try:
        await agent_client.health(server)
    except agent_client.AgentClientError as e:
        logger.info("Server connection test failed", server_id=server_id, error=str(e))
        await security_audit_service.record(
            "server.connection.test_failure",
            actor=request_actor(request, user),
            success=False,
            target_type="server",
            target_id=server_id,
            target_name=server.name,
            failure_reason=str(e),
            server_id=server_id,
        )
        return JSONResponse(content={"success": False, "message": str(e)})

    await security_audit_service.record(
        "server.connection.test_success",
        actor=request_actor(request, user),
        target_type="server",
        target_id=server_id,
        target_name=server.name,
        server_id=server_id,
    )
    return JSONResponse(content={"success": True, "message": "Connection successful"})
