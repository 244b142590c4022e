"""Stack-level authorization.

A user holds a permission on (server, stack) when any of their roles carries
a ServerRoleStackPermission row for that server whose stack_pattern matches
the stack name. Admin roles bypass all checks.

API keys and webhooks never widen what their owner can do: they are
evaluated as the owner first, and then filtered by the credential's own
scopes (see effective_allow).
"""

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from berth.auth.patterns import matches
from berth.auth.permissions import PERMISSIONS, STACKS_MANAGE
from berth.auth.principals import APIKeyPrincipal, Principal, WebhookPrincipal
from berth.db.models import Role, Server, ServerRoleStackPermission, user_roles, utc_now
from berth.logging_config import get_logger

logger = get_logger(__name__)


async def user_roles_of(db: AsyncSession, user_id: int) -> list[Role]:
    result = await db.execute(
        select(Role).join(user_roles, user_roles.c.role_id == Role.id).where(
            user_roles.c.user_id == user_id
        )
    )
    return list(result.scalars().all())


async def is_admin(db: AsyncSession, user_id: int) -> bool:
    """A user is an admin when any assigned role has is_admin=true."""
    roles = await user_roles_of(db, user_id)
    return any(role.is_admin for role in roles)


async def _grants(
    db: AsyncSession, role_ids: list[int], server_id: int
) -> list[ServerRoleStackPermission]:
    if not role_ids:
        return []
    result = await db.execute(
        select(ServerRoleStackPermission).where(
            ServerRoleStackPermission.server_id == server_id,
            ServerRoleStackPermission.role_id.in_(role_ids),
        )
    )
    return list(result.unique().scalars().all())


async def user_has_stack_permission(
    db: AsyncSession,
    user_id: int,
    server_id: int,
    stack_name: str,
    permission: str,
) -> bool:
    """Check whether a user's roles grant permission on a stack.

    1. Any admin role -> ALLOW
    2. Any SRSP row for (server, user's roles) with a matching pattern and
       permission name -> ALLOW
    3. Otherwise DENY
    """
    roles = await user_roles_of(db, user_id)
    if any(role.is_admin for role in roles):
        return True

    for grant in await _grants(db, [r.id for r in roles], server_id):
        if grant.permission.name == permission and matches(stack_name, grant.stack_pattern):
            return True
    return False


async def user_has_server_access(db: AsyncSession, user_id: int, server_id: int) -> bool:
    """True when the user is an admin or any of their roles has a grant on the server."""
    roles = await user_roles_of(db, user_id)
    if any(role.is_admin for role in roles):
        return True
    if not roles:
        return False
    result = await db.execute(
        select(
            exists().where(
                ServerRoleStackPermission.server_id == server_id,
                ServerRoleStackPermission.role_id.in_([r.id for r in roles]),
            )
        )
    )
    return bool(result.scalar())


async def accessible_server_ids(db: AsyncSession, user_id: int) -> list[int]:
    """Servers the user can reach through their roles. Admins get all active servers."""
    roles = await user_roles_of(db, user_id)
    if any(role.is_admin for role in roles):
        result = await db.execute(
            select(Server.id).where(Server.is_active.is_(True)).order_by(Server.id)
        )
        return list(result.scalars().all())
    if not roles:
        return []

    result = await db.execute(
        select(ServerRoleStackPermission.server_id)
        .where(ServerRoleStackPermission.role_id.in_([r.id for r in roles]))
        .distinct()
        .order_by(ServerRoleStackPermission.server_id)
    )
    return list(result.scalars().all())


async def user_stack_permissions(
    db: AsyncSession, user_id: int, server_id: int, stack_name: str
) -> list[str]:
    """All permission names the user's roles grant on a stack."""
    roles = await user_roles_of(db, user_id)
    if any(role.is_admin for role in roles):
        return sorted(n for n, meta in PERMISSIONS.items() if not meta.get("is_api_key_only"))

    granted = {
        grant.permission.name
        for grant in await _grants(db, [r.id for r in roles], server_id)
        if matches(stack_name, grant.stack_pattern)
    }
    return sorted(granted)


async def user_holds_permission_on_server(
    db: AsyncSession, user_id: int, server_id: int, permission: str
) -> bool:
    """True when the user holds permission on at least one stack pattern of the server."""
    roles = await user_roles_of(db, user_id)
    if any(role.is_admin for role in roles):
        return True
    return any(
        grant.permission.name == permission
        for grant in await _grants(db, [r.id for r in roles], server_id)
    )


# --- Credential filtering ---


def credential_allows(principal: Principal, server_id: int, stack_name: str, permission: str) -> bool:
    """Apply the credential's own narrowing rules. Sessions are unrestricted."""
    if isinstance(principal, APIKeyPrincipal):
        if not principal.is_active:
            return False
        if principal.expires_at is not None and utc_now() >= principal.expires_at:
            return False
        return any(
            (scope.server_id is None or scope.server_id == server_id)
            and matches(stack_name, scope.stack_pattern)
            and scope.permission == permission
            for scope in principal.scopes
        )

    if isinstance(principal, WebhookPrincipal):
        if permission != STACKS_MANAGE:
            return False
        if principal.server_ids and server_id not in principal.server_ids:
            return False
        return matches(stack_name, principal.stack_pattern)

    return True


def credential_allows_server(principal: Principal, server_id: int) -> bool:
    """Whether any of the credential's rules could apply to the server."""
    if isinstance(principal, APIKeyPrincipal):
        return any(s.server_id is None or s.server_id == server_id for s in principal.scopes)
    if isinstance(principal, WebhookPrincipal):
        return not principal.server_ids or server_id in principal.server_ids
    return True


async def effective_allow(
    db: AsyncSession,
    principal: Principal,
    server_id: int,
    stack_name: str,
    permission: str,
) -> bool:
    """Owner's role grants, filtered by the credential. Never raises on denial."""
    if not credential_allows(principal, server_id, stack_name, permission):
        return False
    return await user_has_stack_permission(db, principal.user_id, server_id, stack_name, permission)


async def effective_stack_permissions(
    db: AsyncSession, principal: Principal, server_id: int, stack_name: str
) -> list[str]:
    """Permission names the principal may actually exercise on a stack."""
    granted = await user_stack_permissions(db, principal.user_id, server_id, stack_name)
    return [p for p in granted if credential_allows(principal, server_id, stack_name, p)]


async def effective_server_ids(db: AsyncSession, principal: Principal) -> list[int]:
    """Servers visible to the principal: owner's servers narrowed by the credential."""
    server_ids = await accessible_server_ids(db, principal.user_id)
    return [sid for sid in server_ids if credential_allows_server(principal, sid)]
