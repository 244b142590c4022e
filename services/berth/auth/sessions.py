"""Redis-backed login sessions.

A login produces two opaque tokens: a short-lived access token sent as a
Bearer credential on every request, and a longer-lived refresh token that
can be exchanged once for a new pair. Both are plain Redis keys, so logout
and admin revocation take effect immediately.
"""

import json
import secrets
from dataclasses import asdict, dataclass, field
from datetime import timedelta

from berth.config import settings
from berth.db.models import utc_now
from berth.logging_config import get_logger
from berth.redis.client import get_redis_client, namespaced

logger = get_logger(__name__)

ACCESS_PREFIX = namespaced("session", "")
REFRESH_PREFIX = namespaced("refresh", "")
USER_SESSIONS_PREFIX = namespaced("user_sessions", "")


@dataclass
class Session:
    """Session state stored in Redis. The token is the key, not the value."""

    user_id: int
    username: str
    kind: str  # "access" or "refresh"
    created_at: str  # ISO 8601
    expires_at: str  # ISO 8601

    token: str = field(default="", repr=False)


@dataclass
class SessionPair:
    access: Session
    refresh: Session

    @property
    def expires_in(self) -> int:
        return settings.auth.access_token_ttl_seconds

    @property
    def refresh_expires_in(self) -> int:
        return settings.auth.refresh_token_ttl_seconds


def generate_session_token() -> str:
    """Generate a cryptographically random session token."""
    return secrets.token_urlsafe(32)


def _build(user_id: int, username: str, kind: str, ttl: int) -> Session:
    now = utc_now()
    return Session(
        user_id=user_id,
        username=username,
        kind=kind,
        created_at=now.isoformat(),
        expires_at=(now + timedelta(seconds=ttl)).isoformat(),
        token=generate_session_token(),
    )


def _payload(session: Session) -> str:
    data = asdict(session)
    data.pop("token")
    return json.dumps(data)


async def create_session_pair(user_id: int, username: str) -> SessionPair:
    """Create an access + refresh session for a user."""
    redis = get_redis_client()
    access_ttl = settings.auth.access_token_ttl_seconds
    refresh_ttl = settings.auth.refresh_token_ttl_seconds

    access = _build(user_id, username, "access", access_ttl)
    refresh = _build(user_id, username, "refresh", refresh_ttl)
    user_key = f"{USER_SESSIONS_PREFIX}{user_id}"

    async with redis.pipeline(transaction=True) as pipe:
        pipe.set(ACCESS_PREFIX + access.token, _payload(access), ex=access_ttl)
        pipe.set(REFRESH_PREFIX + refresh.token, _payload(refresh), ex=refresh_ttl)
        pipe.sadd(user_key, access.token, refresh.token)
        pipe.expire(user_key, refresh_ttl)
        await pipe.execute()

    logger.info("Session created", user_id=user_id, username=username)
    return SessionPair(access=access, refresh=refresh)


async def _load(prefix: str, token: str) -> Session | None:
    redis = get_redis_client()
    data = await redis.get(prefix + token)
    if data is None:
        return None
    return Session(token=token, **json.loads(data))


async def get_session(token: str) -> Session | None:
    """Look up an access session. Returns None if not found or expired."""
    return await _load(ACCESS_PREFIX, token)


async def rotate_refresh_token(refresh_token: str) -> SessionPair | None:
    """Exchange a refresh token for a new session pair.

    The presented refresh token is consumed; replaying it returns None.
    """
    redis = get_redis_client()
    key = REFRESH_PREFIX + refresh_token

    # GETDEL makes the exchange single-use even under concurrent refreshes
    data = await redis.getdel(key)
    if data is None:
        return None

    old = Session(token=refresh_token, **json.loads(data))
    await redis.srem(f"{USER_SESSIONS_PREFIX}{old.user_id}", refresh_token)
    return await create_session_pair(old.user_id, old.username)


async def revoke_session(token: str, refresh_token: str | None = None) -> bool:
    """Revoke an access session, and its refresh token when supplied.

    Returns True if the access session existed.
    """
    redis = get_redis_client()
    session = await get_session(token)

    async with redis.pipeline(transaction=True) as pipe:
        pipe.delete(ACCESS_PREFIX + token)
        if refresh_token:
            pipe.delete(REFRESH_PREFIX + refresh_token)
        if session is not None:
            user_key = f"{USER_SESSIONS_PREFIX}{session.user_id}"
            pipe.srem(user_key, token)
            if refresh_token:
                pipe.srem(user_key, refresh_token)
        results = await pipe.execute()

    deleted = results[0] > 0
    if deleted:
        logger.info("Session revoked", user_id=session.user_id if session else None)
    return deleted


async def revoke_all_user_sessions(user_id: int) -> int:
    """Revoke every access and refresh session of a user. Returns the count removed."""
    redis = get_redis_client()
    user_key = f"{USER_SESSIONS_PREFIX}{user_id}"

    tokens = await redis.smembers(user_key)
    if not tokens:
        return 0

    async with redis.pipeline(transaction=True) as pipe:
        for token in tokens:
            pipe.delete(ACCESS_PREFIX + token)
            pipe.delete(REFRESH_PREFIX + token)
        pipe.delete(user_key)
        results = await pipe.execute()

    count = sum(1 for r in results[:-1] if r > 0)
    logger.info("Revoked all sessions for user", user_id=user_id, count=count)
    return count
