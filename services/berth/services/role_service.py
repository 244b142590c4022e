"""Roles, stack permission grants and user role assignment.

The admin role is fixed: it cannot be renamed, changed or deleted. A role
that is still assigned to users cannot be deleted; deleting an unassigned
role cascades to its ServerRoleStackPermission rows.
"""

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from berth.auth.permissions import ADMIN_ROLE_NAME, PERMISSIONS
from berth.db.models import (
    Permission,
    Role,
    Server,
    ServerRoleStackPermission,
    User,
    user_roles,
)
from berth.errors import ConflictError, NotFoundError
from berth.logging_config import get_logger

logger = get_logger(__name__)


def _is_protected(role: Role) -> bool:
    return role.name == ADMIN_ROLE_NAME


# --- Permissions ---


async def list_permissions(db: AsyncSession) -> list[Permission]:
    result = await db.execute(select(Permission).order_by(Permission.name))
    return list(result.scalars().all())


async def ensure_permissions(db: AsyncSession) -> int:
    """Insert any catalogue permission missing from the table. Returns the number added."""
    existing = set((await db.execute(select(Permission.name))).scalars().all())
    added = 0
    for name, meta in PERMISSIONS.items():
        if name in existing:
            continue
        db.add(
            Permission(
                name=name,
                resource=meta["resource"],
                action=meta["action"],
                description=meta["description"],
                is_api_key_only=meta.get("is_api_key_only", False),
            )
        )
        added += 1
    if added:
        await db.flush()
        logger.info("Seeded permissions", count=added)
    return added


# --- Roles ---


async def list_roles(db: AsyncSession) -> list[Role]:
    result = await db.execute(select(Role).order_by(Role.name))
    return list(result.scalars().all())


async def get_role(db: AsyncSession, role_id: int) -> Role:
    role = await db.get(Role, role_id)
    if role is None:
        raise NotFoundError("Role not found")
    return role


async def get_role_by_name(db: AsyncSession, name: str) -> Role | None:
    result = await db.execute(select(Role).where(Role.name == name))
    return result.scalar_one_or_none()


async def ensure_admin_role(db: AsyncSession) -> Role:
    role = await get_role_by_name(db, ADMIN_ROLE_NAME)
    if role is None:
        role = Role(
            name=ADMIN_ROLE_NAME,
            description="Full access to every server and stack",
            is_admin=True,
        )
        db.add(role)
        await db.flush()
        logger.info("Admin role created", role_id=role.id)
    return role


async def create_role(db: AsyncSession, name: str, description: str = "") -> Role:
    name = (name or "").strip()
    if not name:
        raise ValueError("Role name is required")
    if name == ADMIN_ROLE_NAME or await get_role_by_name(db, name) is not None:
        raise ConflictError(f"Role '{name}' already exists")

    role = Role(name=name, description=description, is_admin=False)
    db.add(role)
    await db.flush()
    logger.info("Role created", role_id=role.id, role=name)
    return role


async def update_role(db: AsyncSession, role: Role, changes: dict[str, Any]) -> Role:
    if _is_protected(role):
        raise ValueError("The admin role cannot be modified")
    if "name" in changes and changes["name"] is not None:
        name = changes["name"].strip()
        if not name:
            raise ValueError("Role name is required")
        if name != role.name:
            if name == ADMIN_ROLE_NAME or await get_role_by_name(db, name) is not None:
                raise ConflictError(f"Role '{name}' already exists")
            role.name = name
    if changes.get("description") is not None:
        role.description = changes["description"]

    await db.flush()
    logger.info("Role updated", role_id=role.id, role=role.name)
    return role


async def role_user_count(db: AsyncSession, role_id: int) -> int:
    result = await db.execute(
        select(func.count()).select_from(user_roles).where(user_roles.c.role_id == role_id)
    )
    return result.scalar_one()


async def delete_role(db: AsyncSession, role: Role) -> None:
    if _is_protected(role):
        raise ValueError("The admin role cannot be deleted")
    assigned = await role_user_count(db, role.id)
    if assigned:
        raise ConflictError(f"Role is assigned to {assigned} user(s) and cannot be deleted")
    await db.delete(role)
    await db.flush()
    logger.info("Role deleted", role_id=role.id, role=role.name)


# --- Stack permission grants ---


async def list_stack_permissions(db: AsyncSession, role: Role) -> list[ServerRoleStackPermission]:
    result = await db.execute(
        select(ServerRoleStackPermission)
        .where(ServerRoleStackPermission.role_id == role.id)
        .order_by(ServerRoleStackPermission.server_id, ServerRoleStackPermission.id)
    )
    return list(result.unique().scalars().all())


async def add_stack_permission(
    db: AsyncSession,
    role: Role,
    *,
    server_id: int,
    permission_name: str,
    stack_pattern: str = "*",
) -> ServerRoleStackPermission:
    """Grant permission on stacks matching stack_pattern on a server to a role."""
    if _is_protected(role):
        raise ValueError("The admin role already grants every permission")
    stack_pattern = (stack_pattern or "").strip() or "*"

    if await db.get(Server, server_id) is None:
        raise NotFoundError("Server not found")
    permission = (
        await db.execute(select(Permission).where(Permission.name == permission_name))
    ).scalar_one_or_none()
    if permission is None:
        raise ValueError(f"Permission '{permission_name}' not found")
    if permission.is_api_key_only:
        raise ValueError(f"Permission '{permission_name}' can only be used on API key scopes")

    duplicate = await db.execute(
        select(ServerRoleStackPermission.id).where(
            ServerRoleStackPermission.server_id == server_id,
            ServerRoleStackPermission.role_id == role.id,
            ServerRoleStackPermission.permission_id == permission.id,
            ServerRoleStackPermission.stack_pattern == stack_pattern,
        )
    )
    if duplicate.first() is not None:
        raise ConflictError("This permission is already granted")

    grant = ServerRoleStackPermission(
        server_id=server_id,
        role_id=role.id,
        permission_id=permission.id,
        stack_pattern=stack_pattern,
        permission=permission,
    )
    db.add(grant)
    await db.flush()
    logger.info(
        "Stack permission granted",
        role_id=role.id,
        server_id=server_id,
        permission=permission_name,
        stack_pattern=stack_pattern,
    )
    return grant


async def remove_stack_permission(
    db: AsyncSession, role: Role, grant_id: int
) -> ServerRoleStackPermission:
    grant = await db.get(ServerRoleStackPermission, grant_id)
    if grant is None or grant.role_id != role.id:
        raise NotFoundError("Stack permission not found")
    await db.delete(grant)
    await db.flush()
    logger.info("Stack permission revoked", role_id=role.id, grant_id=grant_id)
    return grant


# --- Users ---


async def get_user_with_roles(db: AsyncSession, user_id: int) -> User:
    result = await db.execute(
        select(User).where(User.id == user_id).options(selectinload(User.roles))
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError("User not found")
    return user


async def set_user_roles(db: AsyncSession, user: User, role_ids: list[int]) -> User:
    """Replace a user's roles. Every id must exist."""
    wanted = sorted(set(role_ids))
    roles: list[Role] = []
    if wanted:
        result = await db.execute(select(Role).where(Role.id.in_(wanted)))
        roles = list(result.scalars().all())
    missing = set(wanted) - {r.id for r in roles}
    if missing:
        raise ValueError(f"Unknown role ids: {sorted(missing)}")

    user.roles = roles
    await db.flush()
    logger.info("User roles updated", user_id=user.id, roles=[r.name for r in roles])
    return user


# --- Serialization ---


def role_to_dict(role: Role, user_count: int | None = None) -> dict[str, Any]:
    data = {
        "id": role.id,
        "name": role.name,
        "description": role.description,
        "is_admin": role.is_admin,
        "created_at": role.created_at.isoformat() if role.created_at else None,
        "updated_at": role.updated_at.isoformat() if role.updated_at else None,
    }
    if user_count is not None:
        data["user_count"] = user_count
    return data


def grant_to_dict(grant: ServerRoleStackPermission) -> dict[str, Any]:
    return {
        "id": grant.id,
        "server_id": grant.server_id,
        "role_id": grant.role_id,
        "permission": grant.permission.name,
        "permission_id": grant.permission_id,
        "stack_pattern": grant.stack_pattern,
        "created_at": grant.created_at.isoformat() if grant.created_at else None,
    }


def permission_to_dict(permission: Permission) -> dict[str, Any]:
    return {
        "id": permission.id,
        "name": permission.name,
        "resource": permission.resource,
        "action": permission.action,
        "description": permission.description,
        "is_api_key_only": permission.is_api_key_only,
    }
