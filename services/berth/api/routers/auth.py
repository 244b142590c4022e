"""Authentication router.

Local username/password login issuing Redis-backed access and refresh
tokens. TOTP is handled outside Berth, so totp_required is always false.

Endpoints:
    POST /api/v1/auth/login    - verify credentials, issue a token pair
    POST /api/v1/auth/refresh  - exchange a refresh token for a new pair
    POST /api/v1/auth/logout   - revoke the current session
    GET  /api/v1/auth/me       - current identity and roles
"""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from berth.api.dependencies import get_current_user, request_actor, security
from berth.auth.passwords import verify_password
from berth.auth.principals import AuthenticatedUser
from berth.auth.sessions import (
    SessionPair,
    create_session_pair,
    revoke_all_user_sessions,
    revoke_session,
    rotate_refresh_token,
)
from berth.db.models import User, utc_now
from berth.db.session import get_db
from berth.logging_config import get_logger
from berth.services import rbac_service, security_audit_service
from berth.services.security_audit_service import Actor

router = APIRouter(prefix="/auth", tags=["auth"])
logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid username or password"


# --- Pydantic models ---


class LoginRequest(BaseModel):
    username: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    refresh_token: str | None = None
    all_sessions: bool = False


async def _user_json(db: AsyncSession, user: User) -> dict:
    roles = await rbac_service.user_roles_of(db, user.id)
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "is_admin": any(r.is_admin for r in roles),
        "roles": sorted(r.name for r in roles),
    }


def _token_json(pair: SessionPair) -> dict:
    return {
        "access_token": pair.access.token,
        "refresh_token": pair.refresh.token,
        "token_type": "Bearer",
        "expires_in": pair.expires_in,
        "refresh_expires_in": pair.refresh_expires_in,
    }


# --- Endpoints ---


@router.post("/login")
async def login(
    body: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Authenticate with a username (or email) and password.

    Unknown users and wrong passwords produce the same 401.
    """
    identifier = body.username.strip()
    result = await db.execute(
        select(User).where(or_(User.username == identifier, User.email == identifier))
    )
    user = result.scalar_one_or_none()

    # PBKDF2 is CPU-bound; keep it off the event loop
    valid = (
        user is not None
        and user.is_active
        and await asyncio.to_thread(verify_password, body.password, user.password_hash)
    )
    if not valid:
        logger.info("Login failed", username=identifier)
        await security_audit_service.record(
            "auth.login.failure",
            actor=Actor(
                user_id=user.id if user else None,
                username=identifier,
                ip=request_actor(request).ip,
                user_agent=request.headers.get("User-Agent", ""),
            ),
            success=False,
            failure_reason="invalid credentials",
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=INVALID_CREDENTIALS,
        )

    user.last_login_at = utc_now()
    await db.flush()

    pair = await create_session_pair(user.id, user.username)
    await security_audit_service.record(
        "auth.login.success",
        actor=Actor(
            user_id=user.id,
            username=user.username,
            ip=request_actor(request).ip,
            user_agent=request.headers.get("User-Agent", ""),
        ),
        target_type="user",
        target_id=user.id,
        target_name=user.username,
    )

    logger.info("Login succeeded", user_id=user.id, username=user.username)
    return JSONResponse(
        content={
            **_token_json(pair),
            "user": await _user_json(db, user),
            "totp_required": False,
            "temporary_token": None,
        }
    )


@router.post("/refresh")
async def refresh(
    body: RefreshRequest,
    request: Request,
) -> JSONResponse:
    """Rotate a refresh token. The presented token cannot be used again."""
    pair = await rotate_refresh_token(body.refresh_token)
    if pair is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired refresh token",
        )

    await security_audit_service.record(
        "auth.token.refreshed",
        actor=Actor(
            user_id=pair.access.user_id,
            username=pair.access.username,
            ip=request_actor(request).ip,
            user_agent=request.headers.get("User-Agent", ""),
        ),
    )
    return JSONResponse(content=_token_json(pair))


@router.post("/logout")
async def logout(
    request: Request,
    body: LogoutRequest | None = None,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    user: AuthenticatedUser = Depends(get_current_user),
) -> JSONResponse:
    """Revoke the current access token, and the refresh token if supplied.

    all_sessions revokes every session of the user.
    """
    if user.auth_method != "session":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="API keys cannot log out; revoke the key instead",
        )
    body = body or LogoutRequest()
    actor = request_actor(request, user)

    if body.all_sessions:
        count = await revoke_all_user_sessions(user.user_id)
        await security_audit_service.record(
            "auth.sessions.revoked_all", actor=actor, metadata={"count": count}
        )
    else:
        await revoke_session(credentials.credentials, body.refresh_token)
        await security_audit_service.record("auth.logout", actor=actor)

    return JSONResponse(content={"message": "Logged out"})


@router.get("/me")
async def me(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    db_user = await db.get(User, user.user_id)
    data = await _user_json(db, db_user)
    data["auth_method"] = user.auth_method
    return JSONResponse(content=data)
