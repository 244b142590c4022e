"""
SQLAlchemy database models for Berth.

All models use:
- Integer autoincrement primary keys
- snake_case column names
- Plural table names
- TIMESTAMPTZ with UTC for all timestamps
- Hard deletes, except API keys (soft delete rewrites the hash)
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
    }


user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)


# --- Identity ---


class User(Base):
    """User account.

    Admin rights live on roles: a user is an admin when any assigned role
    has is_admin=true.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    roles: Mapped[list["Role"]] = relationship(secondary=user_roles, back_populates="users")


class Role(Base):
    """Named role. Admin roles short-circuit every authorization check."""

    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(63), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    users: Mapped[list[User]] = relationship(secondary=user_roles, back_populates="roles")


class Permission(Base):
    """Canonical verb-on-resource permission (e.g. stacks.manage).

    Permissions flagged is_api_key_only may only appear on API key scopes,
    never on role grants.
    """

    __tablename__ = "permissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    resource: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    action: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_api_key_only: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


# --- Servers ---


class Server(Base):
    """A managed remote agent.

    access_token holds the Fernet ciphertext of the agent bearer token and
    must never be serialized to clients.
    """

    __tablename__ = "servers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int] = mapped_column(Integer, nullable=False, default=8081)
    skip_ssl_verification: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )


class ServerRoleStackPermission(Base):
    """Grants permission on stacks matching stack_pattern on a server to a role."""

    __tablename__ = "server_role_stack_permissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("servers.id", ondelete="CASCADE"), nullable=False
    )
    role_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False
    )
    permission_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False
    )
    stack_pattern: Mapped[str] = mapped_column(String(255), nullable=False, default="*")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    permission: Mapped[Permission] = relationship(lazy="joined")

    __table_args__ = (
        UniqueConstraint(
            "server_id", "role_id", "permission_id", "stack_pattern", name="uq_srsp_grant"
        ),
        Index("ix_srsp_role_server", "role_id", "server_id"),
    )


# --- API keys ---


class APIKey(Base):
    """Long-lived credential owned by a user.

    Stored as a SHA-256 hash; the plaintext is only returned at creation.
    key_prefix is the first 13 characters of the plaintext, for display only.
    """

    __tablename__ = "api_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    key_prefix: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    scopes: Mapped[list["APIKeyScope"]] = relationship(
        back_populates="api_key", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_api_keys_user_id", "user_id"),)


class APIKeyScope(Base):
    """Narrowing rule on an API key. server_id NULL means any accessible server."""

    __tablename__ = "api_key_scopes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    api_key_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("api_keys.id", ondelete="CASCADE"), nullable=False
    )
    server_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("servers.id", ondelete="CASCADE"), nullable=True
    )
    stack_pattern: Mapped[str] = mapped_column(String(255), nullable=False, default="*")
    permission_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    api_key: Mapped[APIKey] = relationship(back_populates="scopes")
    permission: Mapped[Permission] = relationship(lazy="joined")

    __table_args__ = (Index("ix_api_key_scopes_api_key_id", "api_key_id"),)


# --- Webhooks ---


class Webhook(Base):
    """Named credential that enqueues operations on behalf of its owner.

    api_key_hash is a bcrypt hash of the 'wh_' key.
    """

    __tablename__ = "webhooks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    api_key_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    stack_pattern: Mapped[str] = mapped_column(String(255), nullable=False, default="*")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_triggered: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trigger_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    server_scopes: Mapped[list["WebhookServerScope"]] = relationship(
        back_populates="webhook", cascade="all, delete-orphan", lazy="selectin"
    )

    __table_args__ = (Index("ix_webhooks_user_id", "user_id"),)


class WebhookServerScope(Base):
    """Server a webhook may target. No rows means every server the owner can access."""

    __tablename__ = "webhook_server_scopes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    webhook_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("webhooks.id", ondelete="CASCADE"), nullable=False
    )
    server_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("servers.id", ondelete="CASCADE"), nullable=False
    )

    webhook: Mapped[Webhook] = relationship(back_populates="server_scopes")

    __table_args__ = (UniqueConstraint("webhook_id", "server_id", name="uq_webhook_server"),)


# --- Operations ---


class OperationLog(Base):
    """Header row for one issued operation.

    Status machine: queued → running → completed | failed, and
    queued → cancelled when a batch dependency fails. Terminal rows always
    carry end_time and success.
    """

    __tablename__ = "operation_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    server_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("servers.id", ondelete="SET NULL"), nullable=True
    )
    stack_name: Mapped[str] = mapped_column(String(255), nullable=False)
    operation_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    agent_operation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    command: Mapped[str] = mapped_column(String(50), nullable=False)
    options: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)
    services: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")

    queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_message_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    success: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    exit_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    summary: Mapped[str] = mapped_column(Text, nullable=False, default="")

    batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    depends_on: Mapped[str | None] = mapped_column(String(64), nullable=True)
    webhook_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("webhooks.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    user: Mapped[User | None] = relationship(lazy="joined")
    server: Mapped[Server | None] = relationship(lazy="joined")

    __table_args__ = (
        Index("ix_operation_logs_user_id", "user_id"),
        Index("ix_operation_logs_server_stack", "server_id", "stack_name"),
        Index("ix_operation_logs_status", "status"),
        Index("ix_operation_logs_created_at", "created_at"),
    )


class OperationLogMessage(Base):
    """Append-only output line of an operation. sequence_number is dense from 1."""

    __tablename__ = "operation_log_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation_log_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("operation_logs.id", ondelete="CASCADE"), nullable=False
    )
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    message_type: Mapped[str] = mapped_column(String(20), nullable=False)
    message_data: Mapped[str] = mapped_column(Text, nullable=False, default="")
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("operation_log_id", "sequence_number", name="uq_operation_log_sequence"),
    )


class QueuedOperation(Base):
    """Queue row for an operation while it waits for, or runs on, its stack worker.

    Rows are kept after completion with a terminal status so that batch
    dependencies and queue positions can be resolved.
    """

    __tablename__ = "queued_operations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    server_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("servers.id", ondelete="CASCADE"), nullable=False
    )
    stack_name: Mapped[str] = mapped_column(String(255), nullable=False)
    command: Mapped[str] = mapped_column(String(50), nullable=False)
    options: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)
    services: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    depends_on: Mapped[str | None] = mapped_column(String(64), nullable=True)
    webhook_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("webhooks.id", ondelete="SET NULL"), nullable=True
    )

    queued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped[User] = relationship(lazy="joined")
    server: Mapped[Server] = relationship(lazy="joined")
    webhook: Mapped[Webhook | None] = relationship(lazy="joined")

    __table_args__ = (
        Index("ix_queued_operations_stack_status", "server_id", "stack_name", "status"),
        Index("ix_queued_operations_batch", "batch_id", "order"),
    )


# --- Security audit ---


class SecurityAuditLog(Base):
    """Append-only record of an auth event, authorization decision, or sensitive mutation."""

    __tablename__ = "security_audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_category: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)

    actor_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actor_username: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    actor_ip: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    actor_user_agent: Mapped[str] = mapped_column(Text, nullable=False, default="")

    target_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    target_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    failure_reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict, nullable=False)

    server_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    stack_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    session_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        Index("ix_security_audit_logs_created_at", "created_at"),
        Index("ix_security_audit_logs_event_type", "event_type"),
        Index("ix_security_audit_logs_actor", "actor_user_id"),
    )
