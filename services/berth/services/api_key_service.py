"""API key scope management.

Scopes narrow what a key may do within its owner's permissions. Granting
a scope is itself checked: a user can only put on a key what they hold
through their roles.

Grant rules:
- admin.* scopes require the granting user to be an admin
- a scope for one server requires the server to exist, be reachable by the
  user, and the user to hold the permission somewhere on it
- a scope for all servers (server_id NULL) requires the user to hold the
  permission on at least one accessible server
- identical scopes are rejected
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from berth.auth.permissions import is_admin_permission
from berth.db.models import APIKey, APIKeyScope, Permission, Server
from berth.errors import ConflictError, NotFoundError, OperationForbiddenError
from berth.logging_config import get_logger
from berth.services import rbac_service

logger = get_logger(__name__)


async def get_permission_by_name(db: AsyncSession, name: str) -> Permission | None:
    result = await db.execute(select(Permission).where(Permission.name == name))
    return result.scalar_one_or_none()


async def _check_grant(
    db: AsyncSession, user_id: int, server_id: int | None, permission: Permission
) -> None:
    if permission.is_api_key_only and is_admin_permission(permission.name):
        if not await rbac_service.is_admin(db, user_id):
            logger.warning(
                "Non-admin attempted to grant admin API key scope",
                user_id=user_id,
                permission=permission.name,
            )
            raise OperationForbiddenError(
                "Admin role required to grant admin API key scopes", permission=permission.name
            )
        return

    if server_id is not None:
        server = await db.get(Server, server_id)
        if server is None:
            raise NotFoundError("Server not found")
        if not await rbac_service.user_has_server_access(db, user_id, server_id):
            raise OperationForbiddenError("You do not have access to this server")
        if not await rbac_service.user_holds_permission_on_server(
            db, user_id, server_id, permission.name
        ):
            logger.warning(
                "User attempted to grant a permission they do not hold",
                user_id=user_id,
                server_id=server_id,
                permission=permission.name,
            )
            raise OperationForbiddenError(
                "You do not have this permission to grant", permission=permission.name
            )
        return

    server_ids = await rbac_service.accessible_server_ids(db, user_id)
    if not server_ids:
        raise OperationForbiddenError("You do not have access to any servers")
    for sid in server_ids:
        if await rbac_service.user_holds_permission_on_server(db, user_id, sid, permission.name):
            return
    raise OperationForbiddenError(
        "You do not have this permission on any accessible server", permission=permission.name
    )


async def add_scope(
    db: AsyncSession,
    api_key: APIKey,
    *,
    server_id: int | None,
    stack_pattern: str,
    permission_name: str,
) -> APIKeyScope:
    """Add a scope to a key owned by the granting user."""
    stack_pattern = (stack_pattern or "").strip() or "*"
    permission = await get_permission_by_name(db, permission_name)
    if permission is None:
        raise ValueError(f"Permission '{permission_name}' not found")

    await _check_grant(db, api_key.user_id, server_id, permission)

    stmt = select(APIKeyScope.id).where(
        APIKeyScope.api_key_id == api_key.id,
        APIKeyScope.stack_pattern == stack_pattern,
        APIKeyScope.permission_id == permission.id,
    )
    stmt = stmt.where(
        APIKeyScope.server_id.is_(None) if server_id is None else APIKeyScope.server_id == server_id
    )
    if (await db.execute(stmt)).first() is not None:
        raise ConflictError("This scope already exists for the API key")

    scope = APIKeyScope(
        api_key_id=api_key.id,
        server_id=server_id,
        stack_pattern=stack_pattern,
        permission_id=permission.id,
        permission=permission,
    )
    db.add(scope)
    await db.flush()

    logger.info(
        "API key scope added",
        api_key_id=api_key.id,
        scope_id=scope.id,
        server_id=server_id,
        stack_pattern=stack_pattern,
        permission=permission.name,
    )
    return scope


async def list_scopes(db: AsyncSession, api_key: APIKey) -> list[APIKeyScope]:
    result = await db.execute(
        select(APIKeyScope)
        .where(APIKeyScope.api_key_id == api_key.id)
        .order_by(APIKeyScope.created_at.desc(), APIKeyScope.id.desc())
    )
    return list(result.unique().scalars().all())


async def remove_scope(db: AsyncSession, api_key: APIKey, scope_id: int) -> APIKeyScope:
    scope = await db.get(APIKeyScope, scope_id)
    if scope is None or scope.api_key_id != api_key.id:
        raise NotFoundError("Scope not found")
    await db.delete(scope)
    await db.flush()
    logger.info("API key scope removed", api_key_id=api_key.id, scope_id=scope_id)
    return scope


def scope_to_dict(scope: APIKeyScope, server_names: dict[int, str] | None = None) -> dict[str, Any]:
    return {
        "id": scope.id,
        "api_key_id": scope.api_key_id,
        "server_id": scope.server_id,
        "server_name": (server_names or {}).get(scope.server_id) if scope.server_id else None,
        "stack_pattern": scope.stack_pattern,
        "permission": scope.permission.name,
        "created_at": scope.created_at.isoformat() if scope.created_at else None,
    }


def api_key_to_dict(api_key: APIKey) -> dict[str, Any]:
    """Key metadata. The hash is never included."""
    return {
        "id": api_key.id,
        "name": api_key.name,
        "key_prefix": api_key.key_prefix,
        "is_active": api_key.is_active,
        "expires_at": api_key.expires_at.isoformat() if api_key.expires_at else None,
        "last_used_at": api_key.last_used_at.isoformat() if api_key.last_used_at else None,
        "created_at": api_key.created_at.isoformat() if api_key.created_at else None,
        "scope_count": len(api_key.scopes),
    }
