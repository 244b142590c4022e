"""Managed server (agent) persistence and visibility.

A server is visible to a principal when it is active and appears in the
principal's effective server set. Hidden and missing servers are
indistinguishable to callers (both NotFoundError).
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from berth.auth.principals import Principal
from berth.db.models import Server
from berth.errors import ConflictError, NotFoundError
from berth.logging_config import get_logger
from berth.services import rbac_service
from berth.services.encryption_service import encrypt_value

logger = get_logger(__name__)

DEFAULT_AGENT_PORT = 8081


def _validate(name: str, host: str, port: int) -> None:
    if not name.strip():
        raise ValueError("Server name is required")
    if not host.strip():
        raise ValueError("Server host is required")
    if not 0 < port < 65536:
        raise ValueError("Server port must be between 1 and 65535")


async def get_server(db: AsyncSession, server_id: int) -> Server | None:
    return await db.get(Server, server_id)


async def list_servers(db: AsyncSession) -> list[Server]:
    result = await db.execute(select(Server).order_by(Server.name))
    return list(result.scalars().all())


async def _name_taken(db: AsyncSession, name: str, exclude_id: int | None = None) -> bool:
    stmt = select(Server.id).where(Server.name == name)
    if exclude_id is not None:
        stmt = stmt.where(Server.id != exclude_id)
    return (await db.execute(stmt)).first() is not None


async def create_server(
    db: AsyncSession,
    *,
    name: str,
    host: str,
    access_token: str,
    port: int = DEFAULT_AGENT_PORT,
    description: str = "",
    skip_ssl_verification: bool = True,
    is_active: bool = True,
) -> Server:
    """Create a server. The agent access token is stored encrypted."""
    _validate(name, host, port)
    if not access_token:
        raise ValueError("Agent access token is required")
    if await _name_taken(db, name.strip()):
        raise ConflictError(f"Server '{name}' already exists")

    server = Server(
        name=name.strip(),
        host=host.strip(),
        port=port,
        description=description,
        skip_ssl_verification=skip_ssl_verification,
        access_token=encrypt_value(access_token),
        is_active=is_active,
    )
    db.add(server)
    await db.flush()

    logger.info("Server created", server_id=server.id, name=server.name, host=server.host)
    return server


async def update_server(db: AsyncSession, server: Server, changes: dict[str, Any]) -> Server:
    """Apply a partial update. A new access_token replaces the stored ciphertext."""
    name = changes.get("name", server.name)
    host = changes.get("host", server.host)
    port = changes.get("port", server.port)
    _validate(name, host, port)
    if name != server.name and await _name_taken(db, name, exclude_id=server.id):
        raise ConflictError(f"Server '{name}' already exists")

    for attr in ("name", "host", "port", "description", "skip_ssl_verification", "is_active"):
        if attr in changes and changes[attr] is not None:
            setattr(server, attr, changes[attr])
    if changes.get("access_token"):
        server.access_token = encrypt_value(changes["access_token"])

    await db.flush()
    logger.info("Server updated", server_id=server.id, fields=sorted(changes))
    return server


async def delete_server(db: AsyncSession, server: Server) -> None:
    """Delete a server. SRSP rows, API key scopes and queue rows cascade in the database."""
    await db.delete(server)
    await db.flush()
    logger.info("Server deleted", server_id=server.id, name=server.name)


async def get_visible_server(db: AsyncSession, principal: Principal, server_id: int) -> Server:
    """Return an active server the principal may see, else NotFoundError."""
    server = await db.get(Server, server_id)
    if server is None or not server.is_active:
        raise NotFoundError("Server not found")
    if not rbac_service.credential_allows_server(principal, server_id):
        raise NotFoundError("Server not found")
    if not await rbac_service.user_has_server_access(db, principal.user_id, server_id):
        raise NotFoundError("Server not found")
    return server


async def list_visible_servers(db: AsyncSession, principal: Principal) -> list[Server]:
    server_ids = await rbac_service.effective_server_ids(db, principal)
    if not server_ids:
        return []
    result = await db.execute(
        select(Server)
        .where(Server.id.in_(server_ids), Server.is_active.is_(True))
        .order_by(Server.name)
    )
    return list(result.scalars().all())


def server_to_dict(server: Server) -> dict[str, Any]:
    """Client representation. The access token is never included."""
    return {
        "id": server.id,
        "name": server.name,
        "description": server.description,
        "host": server.host,
        "port": server.port,
        "skip_ssl_verification": server.skip_ssl_verification,
        "is_active": server.is_active,
        "created_at": server.created_at.isoformat() if server.created_at else None,
        "updated_at": server.updated_at.isoformat() if server.updated_at else None,
    }
