"""
Bootstrap script for seeding permissions, the admin role and the first admin user.

Idempotent: skips if resources already exist.
Run via: berth-bootstrap (or python -m berth.cli.bootstrap)

Reads configuration from environment variables:
  BERTH_BOOTSTRAP_ADMIN_USERNAME - Admin username (default: admin)
  BERTH_BOOTSTRAP_ADMIN_EMAIL    - Admin email (required)
  BERTH_BOOTSTRAP_ADMIN_PASSWORD - Admin password (optional; generated if omitted)
  DATABASE_URL                   - PostgreSQL connection URL (falls back to BERTH_DATABASE_URL)
"""

import asyncio
import logging
import os
import sys

from sqlalchemy import or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import selectinload

from berth.auth.passwords import generate_password, hash_password, validate_password_strength
from berth.config import settings
from berth.db.models import User
from berth.services import role_service

# Use stdlib logging: structlog isn't configured yet during bootstrap
logger = logging.getLogger("berth.bootstrap")
logging.basicConfig(level=logging.INFO, format="%(message)s")


def _database_url() -> str:
    database_url = os.environ.get("DATABASE_URL", "").strip() or str(settings.database_url)
    # Ensure async driver
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


async def bootstrap() -> None:
    admin_username = os.environ.get("BERTH_BOOTSTRAP_ADMIN_USERNAME", "").strip() or "admin"
    admin_email = os.environ.get("BERTH_BOOTSTRAP_ADMIN_EMAIL", "").strip()
    admin_password = os.environ.get("BERTH_BOOTSTRAP_ADMIN_PASSWORD", "").strip()

    if not admin_email:
        logger.error("BERTH_BOOTSTRAP_ADMIN_EMAIL is required")
        sys.exit(1)

    generated = False
    if admin_password:
        try:
            validate_password_strength(admin_password, [admin_username, admin_email])
        except ValueError as e:
            logger.error("BERTH_BOOTSTRAP_ADMIN_PASSWORD rejected: %s", e)
            sys.exit(1)
    else:
        admin_password = generate_password()
        generated = True

    engine = create_async_engine(_database_url(), echo=False)

    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        logger.info("Connected to database")

    async with AsyncSession(engine, expire_on_commit=False) as session:
        async with session.begin():
            added = await role_service.ensure_permissions(session)
            logger.info("Permission catalogue ready (%d added)", added)

            admin_role = await role_service.ensure_admin_role(session)

            result = await session.execute(
                select(User)
                .options(selectinload(User.roles))
                .where(or_(User.username == admin_username, User.email == admin_email))
            )
            user = result.scalar_one_or_none()

            if user:
                logger.info("User %s already exists, skipping user creation", user.username)
            else:
                user = User(
                    username=admin_username,
                    email=admin_email,
                    password_hash=hash_password(admin_password),
                    is_active=True,
                    roles=[],
                )
                session.add(user)
                logger.info("Created user: %s", admin_username)
                if generated:
                    logger.info("Generated password: %s", admin_password)
                    logger.warning("IMPORTANT: Save this password now. It will not be shown again.")

            if any(r.id == admin_role.id for r in user.roles):
                logger.info("Admin role already assigned to %s, skipping", user.username)
            else:
                user.roles.append(admin_role)
                logger.info("Assigned admin role to %s", user.username)

    await engine.dispose()
    logger.info("Bootstrap complete")


def main() -> None:
    asyncio.run(bootstrap())


if __name__ == "__main__":
    main()
