"""
Password reset by emailed link.

Only the SHA-256 digest of a reset token is stored. Consuming a token sets
the new password, marks the token used and drops the user's other tokens in
one transaction.
"""

import hashlib
import secrets
from datetime import datetime, timedelta
from urllib.parse import urlencode

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from perdexa.platform.auth.core import hash_password
from perdexa.platform.auth.models import PasswordResetToken, User
from perdexa.platform.communications.email_service import send_email
from perdexa.platform.communications.email_templates import password_reset_email
from perdexa.platform.db import utcnow
from perdexa.platform.exceptions import InvalidToken, TokenExpired, ValidationError
from perdexa.platform.settings import settings

logger = structlog.get_logger(__name__)


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def build_reset_url(email: str, token: str) -> str:
    query = urlencode({"token": token, "email": email})
    return f"{settings.public_base_url.rstrip('/')}/reset-password?{query}"


async def _find_user(session: AsyncSession, email: str) -> User | None:
    return await session.scalar(select(User).where(func.lower(User.email) == email.strip().lower()))


async def create_reset_token(
    session: AsyncSession, user: User, now: datetime | None = None
) -> str:
    """Replace any earlier tokens of ``user`` with a fresh one; returns the raw token."""
    now = now or utcnow()
    token = secrets.token_hex(32)

    await session.execute(delete(PasswordResetToken).where(PasswordResetToken.user_id == user.id))
    session.add(
        PasswordResetToken(
            user_id=user.id,
            token_hash=hash_reset_token(token),
            expires_at=now + timedelta(minutes=settings.auth.password_reset_expire_minutes),
        )
    )
    await session.commit()
    return token


async def request_password_reset(
    session: AsyncSession, email: str, now: datetime | None = None
) -> None:
    """Email a reset link. Unknown addresses are ignored silently.

    Raises:
        EmailDeliveryError: The link could not be sent
    """
    user = await _find_user(session, email)
    if user is None:
        logger.info("password_reset.unknown_email")
        return

    token = await create_reset_token(session, user, now=now)
    message = password_reset_email(user.email, user.name, build_reset_url(user.email, token))
    await send_email(message)

    logger.info("password_reset.requested", user_id=user.id)


async def reset_password(
    session: AsyncSession,
    email: str,
    token: str,
    new_password: str,
    now: datetime | None = None,
) -> User:
    """Consume a reset token.

    Raises:
        ValidationError: New password too short
        InvalidToken: Unknown user or token, or token of another user
        TokenExpired: Token used already or past its expiry
    """
    now = now or utcnow()
    if len(new_password or "") < settings.auth.min_password_length:
        raise ValidationError(
            f"Password must be at least {settings.auth.min_password_length} characters",
            context={"field": "password"},
        )

    user = await _find_user(session, email)
    if user is None:
        raise InvalidToken()

    record = await session.scalar(
        select(PasswordResetToken).where(PasswordResetToken.token_hash == hash_reset_token(token))
    )
    if record is None or record.user_id != user.id:
        raise InvalidToken()
    if record.used_at is not None or record.expires_at < now:
        raise TokenExpired()

    try:
        user.password_hash = hash_password(new_password)
        user.must_change_password = False
        record.used_at = now
        await session.execute(
            delete(PasswordResetToken).where(
                PasswordResetToken.user_id == user.id,
                PasswordResetToken.id != record.id,
            )
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("password_reset.completed", user_id=user.id)
    return user


__all__ = [
    "hash_reset_token",
    "build_reset_url",
    "create_reset_token",
    "request_password_reset",
    "reset_password",
]
