"""Role, stack permission and role assignment endpoints (admin only).

Endpoints:
    GET    /api/v1/admin/roles                                  - list roles
    POST   /api/v1/admin/roles                                  - create role
    GET    /api/v1/admin/roles/{role_id}                        - show role
    PUT    /api/v1/admin/roles/{role_id}                        - update role
    DELETE /api/v1/admin/roles/{role_id}                        - delete role
    GET    /api/v1/admin/roles/{role_id}/stack-permissions      - list grants
    POST   /api/v1/admin/roles/{role_id}/stack-permissions      - add grant
    DELETE /api/v1/admin/roles/{role_id}/stack-permissions/{id} - remove grant
    GET    /api/v1/admin/users/{user_id}/roles                  - user's roles
    PUT    /api/v1/admin/users/{user_id}/roles                  - replace user's roles
    GET    /api/v1/admin/permissions                            - permission catalogue
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from berth.api.dependencies import request_actor, require_admin
from berth.auth.principals import AuthenticatedUser
from berth.db.session import get_db
from berth.logging_config import get_logger
from berth.services import role_service, security_audit_service

router = APIRouter(prefix="/admin", tags=["roles"])
logger = get_logger(__name__)


class RoleRequest(BaseModel):
    name: str
    description: str = ""


class UpdateRoleRequest(BaseModel):
    name: str | None = None
    description: str | None = None


class StackPermissionRequest(BaseModel):
    server_id: int
    permission: str
    stack_pattern: str = "*"


class UserRolesRequest(BaseModel):
    role_ids: list[int]


def _bad_request(e: ValueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# --- Roles ---


@router.get("/roles")
async def list_roles(
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    roles = await role_service.list_roles(db)
    data = [
        role_service.role_to_dict(r, user_count=await role_service.role_user_count(db, r.id))
        for r in roles
    ]
    return JSONResponse(content={"data": data})


@router.post("/roles")
async def create_role(
    body: RoleRequest,
    request: Request,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    try:
        role = await role_service.create_role(db, body.name, body.description)
    except ValueError as e:
        raise _bad_request(e) from e

    await security_audit_service.record(
        "rbac.role.created",
        actor=request_actor(request, user),
        target_type="role",
        target_id=role.id,
        target_name=role.name,
    )
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={"data": role_service.role_to_dict(role, user_count=0)},
    )


@router.get("/roles/{role_id}")
async def show_role(
    role_id: int,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    role = await role_service.get_role(db, role_id)
    data = role_service.role_to_dict(role, user_count=await role_service.role_user_count(db, role.id))
    data["stack_permissions"] = [
        role_service.grant_to_dict(g) for g in await role_service.list_stack_permissions(db, role)
    ]
    return JSONResponse(content={"data": data})


@router.put("/roles/{role_id}")
async def update_role(
    role_id: int,
    body: UpdateRoleRequest,
    request: Request,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    role = await role_service.get_role(db, role_id)
    changes = body.model_dump(exclude_unset=True)
    try:
        role = await role_service.update_role(db, role, changes)
    except ValueError as e:
        raise _bad_request(e) from e

    await security_audit_service.record(
        "rbac.role.updated",
        actor=request_actor(request, user),
        target_type="role",
        target_id=role.id,
        target_name=role.name,
        metadata={"fields": sorted(changes)},
    )
    return JSONResponse(content={"data": role_service.role_to_dict(role)})


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: int,
    request: Request,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> Response:
    role = await role_service.get_role(db, role_id)
    try:
        await role_service.delete_role(db, role)
    except ValueError as e:
        raise _bad_request(e) from e

    await security_audit_service.record(
        "rbac.role.deleted",
        actor=request_actor(request, user),
        target_type="role",
        target_id=role_id,
        target_name=role.name,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Stack permissions ---


@router.get("/roles/{role_id}/stack-permissions")
async def list_stack_permissions(
    role_id: int,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    role = await role_service.get_role(db, role_id)
    grants = await role_service.list_stack_permissions(db, role)
    return JSONResponse(content={"data": [role_service.grant_to_dict(g) for g in grants]})


@router.post("/roles/{role_id}/stack-permissions")
async def add_stack_permission(
    role_id: int,
    body: StackPermissionRequest,
    request: Request,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    role = await role_service.get_role(db, role_id)
    try:
        grant = await role_service.add_stack_permission(
            db,
            role,
            server_id=body.server_id,
            permission_name=body.permission,
            stack_pattern=body.stack_pattern,
        )
    except ValueError as e:
        raise _bad_request(e) from e

    await security_audit_service.record(
        "rbac.permission.added",
        actor=request_actor(request, user),
        target_type="role",
        target_id=role.id,
        target_name=role.name,
        metadata={"permission": body.permission, "stack_pattern": grant.stack_pattern},
        server_id=body.server_id,
    )
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={"data": role_service.grant_to_dict(grant)},
    )


@router.delete(
    "/roles/{role_id}/stack-permissions/{grant_id}", status_code=status.HTTP_204_NO_CONTENT
)
async def remove_stack_permission(
    role_id: int,
    grant_id: int,
    request: Request,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> Response:
    role = await role_service.get_role(db, role_id)
    grant = await role_service.remove_stack_permission(db, role, grant_id)
    await security_audit_service.record(
        "rbac.permission.removed",
        actor=request_actor(request, user),
        target_type="role",
        target_id=role.id,
        target_name=role.name,
        metadata={"permission": grant.permission.name, "stack_pattern": grant.stack_pattern},
        server_id=grant.server_id,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- User role assignment ---


@router.get("/users/{user_id}/roles")
async def get_user_roles(
    user_id: int,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    target = await role_service.get_user_with_roles(db, user_id)
    return JSONResponse(content={"data": [role_service.role_to_dict(r) for r in target.roles]})


@router.put("/users/{user_id}/roles")
async def set_user_roles(
    user_id: int,
    body: UserRolesRequest,
    request: Request,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Replace the user's roles with exactly role_ids."""
    target = await role_service.get_user_with_roles(db, user_id)
    try:
        target = await role_service.set_user_roles(db, target, body.role_ids)
    except ValueError as e:
        raise _bad_request(e) from e

    await security_audit_service.record(
        "user.role.assigned",
        actor=request_actor(request, user),
        target_type="user",
        target_id=target.id,
        target_name=target.username,
        metadata={"roles": sorted(r.name for r in target.roles)},
    )
    return JSONResponse(content={"data": [role_service.role_to_dict(r) for r in target.roles]})


# --- Permission catalogue ---


@router.get("/permissions")
async def list_permissions(
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    permissions = await role_service.list_permissions(db)
    return JSONResponse(
        content={"data": [role_service.permission_to_dict(p) for p in permissions]}
    )
