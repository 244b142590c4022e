"""FastAPI dependencies for authentication and authorization.

Two credential types, one Bearer header:
- API keys (PostgreSQL) - long-lived, prefixed brth_, for automation
- Sessions (Redis) - short-lived access tokens issued by /auth/login

Tokens carrying the API key prefix are validated against the api_keys table;
anything else is looked up as a session. Both return the same
AuthenticatedUser shape, which carries the principal used for every
authorization decision.
"""

from fastapi import Depends, HTTPException, Request, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from berth.auth import api_keys
from berth.auth.permissions import is_admin_permission
from berth.auth.principals import APIKeyPrincipal, AuthenticatedUser, SessionPrincipal
from berth.auth.sessions import get_session
from berth.db.models import User
from berth.db.session import get_db
from berth.logging_config import get_logger
from berth.services import rbac_service, security_audit_service
from berth.services.security_audit_service import Actor

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)


async def authenticate_token(db: AsyncSession, token: str) -> AuthenticatedUser | None:
    """Resolve a Bearer token to an identity, or None.

    Shared by the HTTP dependency and the WebSocket handlers.
    """
    if not token:
        return None

    if api_keys.is_api_key(token):
        api_key = await api_keys.validate_api_key(db, token)
        if api_key is None:
            return None
        user = await db.get(User, api_key.user_id)
        if user is None or not user.is_active:
            return None
        return AuthenticatedUser(
            user_id=user.id,
            username=user.username,
            email=user.email,
            is_admin=await rbac_service.is_admin(db, user.id),
            auth_method="api_key",
            principal=api_keys.principal_for(api_key),
        )

    session = await get_session(token)
    if session is None:
        return None
    user = await db.get(User, session.user_id)
    if user is None or not user.is_active:
        return None
    return AuthenticatedUser(
        user_id=user.id,
        username=user.username,
        email=user.email,
        is_admin=await rbac_service.is_admin(db, user.id),
        auth_method="session",
        principal=SessionPrincipal(user_id=user.id),
    )


def client_ip(request: Request | WebSocket) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


def request_actor(request: Request | WebSocket, user: AuthenticatedUser | None = None) -> Actor:
    """Audit actor for the current request."""
    return Actor(
        user_id=user.user_id if user else None,
        username=user.username if user else "",
        ip=client_ip(request),
        user_agent=request.headers.get("User-Agent", ""),
    )


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> AuthenticatedUser:
    """Unified auth dependency: API keys by prefix, otherwise sessions. 401 if neither matches."""
    token = credentials.credentials if credentials else ""
    user = await authenticate_token(db, token)
    if user is not None:
        return user

    if token:
        await security_audit_service.record(
            "api.auth.failed",
            actor=request_actor(request),
            success=False,
            failure_reason="invalid or expired token",
            metadata={
                "path": request.url.path,
                "credential": "api_key" if api_keys.is_api_key(token) else "session",
            },
        )
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_session(
    user: AuthenticatedUser = Depends(get_current_user),
) -> AuthenticatedUser:
    """Credential management is only available to interactive sessions."""
    if user.auth_method != "session":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This endpoint requires an interactive session",
        )
    return user


async def require_admin(
    user: AuthenticatedUser = Depends(get_current_user),
) -> AuthenticatedUser:
    """Dependency to require the admin role.

    An API key additionally needs at least one admin.* scope.
    """
    allowed = user.is_admin
    if allowed and isinstance(user.principal, APIKeyPrincipal):
        allowed = any(is_admin_permission(s.permission) for s in user.principal.scopes)
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


def get_actor(request: Request, user: AuthenticatedUser = Depends(get_current_user)) -> Actor:
    return request_actor(request, user)


def websocket_token(websocket: WebSocket) -> str:
    """Bearer token for a WebSocket upgrade: ?token= or an Authorization header."""
    token = websocket.query_params.get("token", "")
    if token:
        return token
    header = websocket.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer":
        return value.strip()
    return ""
