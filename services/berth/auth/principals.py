"""Authenticated principal shapes.

Every authorization decision is made against a principal. The three kinds
share the owning user's id; API keys and webhooks additionally carry the
narrowing rules that filter the user's role grants.
"""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class ScopeGrant:
    """One API key scope. server_id None means any server the owner can access."""

    server_id: int | None
    stack_pattern: str
    permission: str


@dataclass(frozen=True)
class SessionPrincipal:
    """Interactive login (Redis session)."""

    user_id: int
    kind: str = field(default="session", init=False)


@dataclass(frozen=True)
class APIKeyPrincipal:
    user_id: int
    api_key_id: int
    scopes: tuple[ScopeGrant, ...]
    is_active: bool = True
    expires_at: datetime | None = None
    kind: str = field(default="api_key", init=False)


@dataclass(frozen=True)
class WebhookPrincipal:
    """Webhook acting for its owner. Empty server_ids means every accessible server."""

    user_id: int
    webhook_id: int
    stack_pattern: str
    server_ids: frozenset[int]
    kind: str = field(default="webhook", init=False)


Principal = SessionPrincipal | APIKeyPrincipal | WebhookPrincipal


@dataclass
class AuthenticatedUser:
    """Unified identity from either a session or an API key."""

    user_id: int
    username: str
    email: str
    is_admin: bool
    auth_method: str  # "session" or "api_key"
    principal: Principal
