"""Super admin bootstrap helpers."""

from __future__ import annotations

from collections.abc import Callable
from typing import cast

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from perdexa.platform.auth.core import hash_password
from perdexa.platform.auth.models import User, UserRole
from perdexa.platform.auth.service import get_user_by_email, normalize_email
from perdexa.platform.db import AsyncSessionLocal
from perdexa.platform.settings import settings

logger = structlog.get_logger(__name__)


SessionFactory = Callable[[], AsyncSession]


async def ensure_superadmin(
    email: str,
    password: str,
    name: str | None = None,
    session_factory: SessionFactory | None = None,
) -> User:
    """Create a SUPERADMIN, or promote and re-key an existing account with that email."""
    factory: SessionFactory = cast(SessionFactory, session_factory or AsyncSessionLocal)

    async with factory() as session:
        user = await get_user_by_email(session, email)
        if user is None:
            user = User(
                email=normalize_email(email),
                name=name or settings.auth.superadmin_name,
                password_hash=hash_password(password),
                role=UserRole.SUPERADMIN.value,
            )
            session.add(user)
            created = True
        else:
            user.role = UserRole.SUPERADMIN.value
            user.password_hash = hash_password(password)
            user.is_active = True
            if name:
                user.name = name
            created = False

        await session.commit()
        logger.info(
            "auth.superadmin.ensured", user_id=user.id, email=user.email, created=created
        )
        return user


async def ensure_configured_superadmin(session_factory: SessionFactory | None = None) -> None:
    """Seed the super admin from settings when both email and password are configured."""
    email = settings.auth.superadmin_email
    password = settings.auth.superadmin_password
    if not email or not password:
        return

    factory: SessionFactory = cast(SessionFactory, session_factory or AsyncSessionLocal)
    async with factory() as session:
        existing = await get_user_by_email(session, email)
        if existing is not None and existing.is_superadmin:
            return

    await ensure_superadmin(email, password, session_factory=session_factory)
