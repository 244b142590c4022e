"""Server and stack read endpoints.

Servers the caller cannot see answer 404, exactly like missing ones.

Endpoints:
    GET /api/v1/servers                                   - visible servers
    GET /api/v1/servers/{server_id}                       - show server
    GET /api/v1/servers/{server_id}/stacks                - stacks readable by the caller
    GET /api/v1/servers/{server_id}/stacks/{stack}        - stack detail (agent proxy)
    GET /api/v1/servers/{server_id}/stacks/{stack}/permissions - effective permissions
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from berth.api.dependencies import get_current_user
from berth.auth.permissions import STACKS_READ
from berth.auth.principals import AuthenticatedUser
from berth.db.session import get_db
from berth.errors import OperationForbiddenError
from berth.logging_config import get_logger
from berth.services import agent_client, rbac_service, server_service

router = APIRouter(prefix="/servers", tags=["servers"])
logger = get_logger(__name__)


@router.get("")
async def list_servers(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    servers = await server_service.list_visible_servers(db, user.principal)
    return JSONResponse(content={"data": [server_service.server_to_dict(s) for s in servers]})


@router.get("/{server_id}")
async def show_server(
    server_id: int,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    server = await server_service.get_visible_server(db, user.principal, server_id)
    return JSONResponse(content={"data": server_service.server_to_dict(server)})


@router.get("/{server_id}/stacks")
async def list_stacks(
    server_id: int,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Proxy the agent's stack listing, keeping only stacks the caller may read.

    A caller that can read none of the stacks on the server gets 403.
    """
    server = await server_service.get_visible_server(db, user.principal, server_id)
    stacks = await agent_client.list_stacks(server)

    visible = []
    for stack in stacks:
        name = stack.get("name", "")
        if name and await rbac_service.effective_allow(
            db, user.principal, server_id, name, STACKS_READ
        ):
            visible.append(stack)

    if stacks and not visible:
        logger.info(
            "No readable stacks for principal",
            user_id=user.user_id,
            server_id=server_id,
            credential=user.principal.kind,
        )
        raise OperationForbiddenError(
            "You do not have access to any stacks on this server", permission=STACKS_READ
        )

    return JSONResponse(content={"data": visible})


@router.get("/{server_id}/stacks/{stack_name}")
async def show_stack(
    server_id: int,
    stack_name: str,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    server = await server_service.get_visible_server(db, user.principal, server_id)
    if not await rbac_service.effective_allow(
        db, user.principal, server_id, stack_name, STACKS_READ
    ):
        raise OperationForbiddenError(
            f"Insufficient permissions to view stack '{stack_name}'", permission=STACKS_READ
        )
    return JSONResponse(content={"data": await agent_client.get_stack(server, stack_name)})


@router.get("/{server_id}/stacks/{stack_name}/permissions")
async def stack_permissions(
    server_id: int,
    stack_name: str,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Permissions the caller can actually exercise on the stack."""
    await server_service.get_visible_server(db, user.principal, server_id)
    permissions = await rbac_service.effective_stack_permissions(
        db, user.principal, server_id, stack_name
    )
    return JSONResponse(content={"permissions": sorted(permissions)})
