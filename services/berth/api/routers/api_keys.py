"""API key and API key scope endpoints.

Keys are managed from interactive sessions only: an API key cannot mint or
widen other keys. The raw key is returned once, at creation.

Endpoints:
    POST   /api/v1/api-keys                          - create key
    GET    /api/v1/api-keys                          - list own keys
    GET    /api/v1/api-keys/{key_id}                 - show key
    DELETE /api/v1/api-keys/{key_id}                 - revoke key
    GET    /api/v1/api-keys/{key_id}/scopes          - list scopes
    POST   /api/v1/api-keys/{key_id}/scopes          - add scope
    DELETE /api/v1/api-keys/{key_id}/scopes/{scope_id} - remove scope
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from berth.api.dependencies import request_actor, require_session
from berth.auth import api_keys
from berth.auth.principals import AuthenticatedUser
from berth.db.models import APIKey
from berth.db.session import get_db
from berth.logging_config import get_logger
from berth.services import api_key_service, security_audit_service, server_service

router = APIRouter(prefix="/api-keys", tags=["api-keys"])
logger = get_logger(__name__)


class CreateAPIKeyRequest(BaseModel):
    name: str
    expires_at: datetime | None = None


class AddScopeRequest(BaseModel):
    server_id: int | None = None
    stack_pattern: str = "*"
    permission: str


async def _own_key(db: AsyncSession, user: AuthenticatedUser, key_id: int) -> APIKey:
    api_key = await api_keys.get_user_api_key(db, user.user_id, key_id)
    if api_key is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API key not found")
    return api_key


async def _server_names(db: AsyncSession) -> dict[int, str]:
    return {s.id: s.name for s in await server_service.list_servers(db)}


@router.post("")
async def create_api_key(
    body: CreateAPIKeyRequest,
    request: Request,
    user: AuthenticatedUser = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Create a key. Scopes are added separately; a key without scopes can do nothing."""
    try:
        api_key, raw_key = await api_keys.create_api_key(
            db, user.user_id, body.name, expires_at=body.expires_at
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    await security_audit_service.record(
        "api_key.created",
        actor=request_actor(request, user),
        target_type="api_key",
        target_id=api_key.id,
        target_name=api_key.name,
    )
    data = api_key_service.api_key_to_dict(api_key)
    # The raw key is only included at creation time
    data["key"] = raw_key
    return JSONResponse(status_code=status.HTTP_201_CREATED, content={"data": data})


@router.get("")
async def list_api_keys(
    user: AuthenticatedUser = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    keys = await api_keys.list_user_api_keys(db, user.user_id)
    return JSONResponse(content={"data": [api_key_service.api_key_to_dict(k) for k in keys]})


@router.get("/{key_id}")
async def show_api_key(
    key_id: int,
    user: AuthenticatedUser = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    api_key = await _own_key(db, user, key_id)
    names = await _server_names(db)
    data = api_key_service.api_key_to_dict(api_key)
    data["scopes"] = [api_key_service.scope_to_dict(s, names) for s in api_key.scopes]
    return JSONResponse(content={"data": data})


@router.delete("/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_api_key(
    key_id: int,
    request: Request,
    user: AuthenticatedUser = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> Response:
    api_key = await _own_key(db, user, key_id)
    await api_keys.revoke_api_key(db, api_key)
    await security_audit_service.record(
        "api_key.revoked",
        actor=request_actor(request, user),
        target_type="api_key",
        target_id=api_key.id,
        target_name=api_key.name,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{key_id}/scopes")
async def list_api_key_scopes(
    key_id: int,
    user: AuthenticatedUser = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    api_key = await _own_key(db, user, key_id)
    scopes = await api_key_service.list_scopes(db, api_key)
    names = await _server_names(db)
    return JSONResponse(content={"data": [api_key_service.scope_to_dict(s, names) for s in scopes]})


@router.post("/{key_id}/scopes")
async def add_api_key_scope(
    key_id: int,
    body: AddScopeRequest,
    request: Request,
    user: AuthenticatedUser = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Add a scope. The caller must hold the permission through their own roles."""
    api_key = await _own_key(db, user, key_id)
    try:
        scope = await api_key_service.add_scope(
            db,
            api_key,
            server_id=body.server_id,
            stack_pattern=body.stack_pattern,
            permission_name=body.permission,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    await security_audit_service.record(
        "api_key.scope.added",
        actor=request_actor(request, user),
        target_type="api_key",
        target_id=api_key.id,
        target_name=api_key.name,
        metadata={
            "scope_id": scope.id,
            "permission": body.permission,
            "stack_pattern": scope.stack_pattern,
        },
        server_id=body.server_id,
    )
    names = await _server_names(db)
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={"data": api_key_service.scope_to_dict(scope, names)},
    )


@router.delete("/{key_id}/scopes/{scope_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_api_key_scope(
    key_id: int,
    scope_id: int,
    request: Request,
    user: AuthenticatedUser = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> Response:
    api_key = await _own_key(db, user, key_id)
    scope = await api_key_service.remove_scope(db, api_key, scope_id)
    await security_audit_service.record(
        "api_key.scope.removed",
        actor=request_actor(request, user),
        target_type="api_key",
        target_id=api_key.id,
        target_name=api_key.name,
        metadata={"scope_id": scope_id, "permission": scope.permission.name},
        server_id=scope.server_id,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
