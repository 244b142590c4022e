"""API key management.

API keys are long-lived Bearer credentials stored as SHA-256 hashes. The raw
key is only available at creation time; lookup is a single indexed query by
hash on every request.

Key format: brth_{43 url-safe base64 chars}. The first 13 characters are kept
as a display prefix.
"""

import hashlib
import secrets
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from berth.auth.principals import APIKeyPrincipal, ScopeGrant
from berth.config import settings
from berth.db.models import APIKey, utc_now
from berth.logging_config import get_logger

logger = get_logger(__name__)

API_KEY_PREFIX = "brth_"
DISPLAY_PREFIX_LENGTH = 13


def generate_api_key() -> str:
    """Generate a raw key: prefix + 32 random bytes as url-safe base64."""
    return API_KEY_PREFIX + secrets.token_urlsafe(32)


def hash_api_key(raw_key: str) -> str:
    """SHA-256 hash a raw key for storage."""
    return hashlib.sha256(raw_key.encode()).hexdigest()


def is_api_key(token: str) -> bool:
    return token.startswith(API_KEY_PREFIX)


async def create_api_key(
    db: AsyncSession,
    user_id: int,
    name: str,
    expires_at: datetime | None = None,
) -> tuple[APIKey, str]:
    """Create an API key. Returns (model, raw_key).

    The raw key is only available at creation time.
    """
    if not name.strip():
        raise ValueError("API key name is required")
    if expires_at is not None and expires_at <= utc_now():
        raise ValueError("expires_at must be in the future")

    raw_key = generate_api_key()
    api_key = APIKey(
        user_id=user_id,
        name=name.strip(),
        key_hash=hash_api_key(raw_key),
        key_prefix=raw_key[:DISPLAY_PREFIX_LENGTH],
        expires_at=expires_at,
        scopes=[],
    )
    db.add(api_key)
    await db.flush()

    logger.info("API key created", api_key_id=api_key.id, user_id=user_id)
    return api_key, raw_key


async def validate_api_key(db: AsyncSession, raw_key: str) -> APIKey | None:
    """Validate a Bearer API key.

    Hash, look up by hash, reject inactive or expired keys. Updates
    last_used_at at most once per configured interval.
    """
    result = await db.execute(
        select(APIKey)
        .where(APIKey.key_hash == hash_api_key(raw_key))
        .options(selectinload(APIKey.scopes))
    )
    api_key = result.scalar_one_or_none()
    if api_key is None or not api_key.is_active:
        return None

    now = utc_now()
    if api_key.expires_at is not None and now >= api_key.expires_at:
        logger.debug("API key expired", api_key_id=api_key.id)
        return None

    should_update = (
        api_key.last_used_at is None
        or (now - api_key.last_used_at).total_seconds()
        > settings.auth.api_key_last_used_interval_seconds
    )
    if should_update:
        await db.execute(update(APIKey).where(APIKey.id == api_key.id).values(last_used_at=now))
        api_key.last_used_at = now

    return api_key


def principal_for(api_key: APIKey) -> APIKeyPrincipal:
    """Build the authorization principal for a validated key."""
    return APIKeyPrincipal(
        user_id=api_key.user_id,
        api_key_id=api_key.id,
        scopes=tuple(
            ScopeGrant(
                server_id=scope.server_id,
                stack_pattern=scope.stack_pattern,
                permission=scope.permission.name,
            )
            for scope in api_key.scopes
        ),
        is_active=api_key.is_active,
        expires_at=api_key.expires_at,
    )


async def list_user_api_keys(db: AsyncSession, user_id: int) -> list[APIKey]:
    """List a user's active API keys, newest first, with scopes loaded."""
    result = await db.execute(
        select(APIKey)
        .where(APIKey.user_id == user_id, APIKey.is_active.is_(True))
        .options(selectinload(APIKey.scopes))
        .order_by(APIKey.created_at.desc())
    )
    return list(result.scalars().all())


async def get_user_api_key(db: AsyncSession, user_id: int, api_key_id: int) -> APIKey | None:
    """Get an active key by id, only if it belongs to user_id."""
    result = await db.execute(
        select(APIKey)
        .where(
            APIKey.id == api_key_id,
            APIKey.user_id == user_id,
            APIKey.is_active.is_(True),
        )
        .options(selectinload(APIKey.scopes))
    )
    return result.scalar_one_or_none()


async def revoke_api_key(db: AsyncSession, api_key: APIKey) -> None:
    """Soft delete a key.

    The stored hash is rewritten so the original plaintext can never match
    again and a future key cannot collide with it.
    """
    api_key.is_active = False
    api_key.key_hash = f"{api_key.key_hash}-deleted-{int(utc_now().timestamp())}"
    await db.flush()

    logger.info("API key revoked", api_key_id=api_key.id, user_id=api_key.user_id)
