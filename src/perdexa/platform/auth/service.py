"""
Account service: registration, sign-in, tenant selection and password change.
"""

import re
from datetime import datetime, timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from perdexa.platform.auth.core import (
    Principal,
    hash_password,
    issue_access_token,
    verify_password,
)
from perdexa.platform.auth.models import User, UserRole
from perdexa.platform.billing.models import Plan, Subscription, SubscriptionStatus
from perdexa.platform.communications.email_service import send_email
from perdexa.platform.communications.email_templates import welcome_email
from perdexa.platform.db import utcnow
from perdexa.platform.exceptions import (
    BadRequest,
    Conflict,
    EmailDeliveryError,
    Forbidden,
    NotFound,
    Unauthenticated,
    ValidationError,
)
from perdexa.platform.settings import settings
from perdexa.platform.tenant.models import Membership, Tenant
from perdexa.platform.tenant.resolver import get_default_membership, provision_tenant

logger = structlog.get_logger(__name__)

_USERNAME_STRIP = re.compile(r"[^a-z0-9._-]+")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _check_password(password: str | None, field: str = "password") -> str:
    if not password or len(password) < settings.auth.min_password_length:
        raise ValidationError(
            f"Password must be at least {settings.auth.min_password_length} characters",
            context={"field": field},
        )
    return password


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    return await session.scalar(select(User).where(func.lower(User.email) == normalize_email(email)))


async def generate_unique_username(session: AsyncSession, email: str) -> str:
    """Username from the email's local part, suffixed with a counter until unique."""
    base = _USERNAME_STRIP.sub("", email.split("@", 1)[0].lower()) or "user"
    candidate, counter = base, 1
    while await session.scalar(select(User.id).where(User.username == candidate)):
        counter += 1
        candidate = f"{base}{counter}"
    return candidate


async def token_for_user(session: AsyncSession, user: User) -> tuple[str, Principal]:
    """Access token for a normal sign-in, selecting the default membership."""
    membership = await get_default_membership(session, user.id)
    tenant_id = membership.tenant_id if membership else None
    tenant_role = membership.role if membership else None
    principal = Principal(
        user_id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        tenant_id=tenant_id,
        tenant_role=tenant_role,
    )
    return issue_access_token(user, tenant_id=tenant_id, tenant_role=tenant_role), principal


async def register(
    session: AsyncSession,
    name: str,
    email: str,
    password: str,
    now: datetime | None = None,
) -> tuple[User, Tenant]:
    """Create a user with their own workspace on a FREE trial.

    The user, tenant, OWNER membership, default branch and subscription are
    committed together.

    Raises:
        ValidationError: Missing name or short password
        Conflict: Email already registered
    """
    now = now or utcnow()
    name = (name or "").strip()
    if not name:
        raise ValidationError("Name is required", context={"field": "name"})
    _check_password(password)
    email = normalize_email(email)

    if await get_user_by_email(session, email) is not None:
        raise Conflict("Email is already registered", error_code="email_in_use")

    try:
        user = User(
            email=email,
            name=name,
            password_hash=hash_password(password),
            role=UserRole.USER.value,
        )
        session.add(user)
        await session.flush()

        tenant, _, _ = await provision_tenant(session, user)
        trial_end = now + timedelta(days=settings.billing.signup_trial_days)
        session.add(
            Subscription(
                tenant_id=tenant.id,
                plan=Plan.FREE.value,
                status=SubscriptionStatus.TRIALING.value,
                current_period_start=now,
                current_period_end=trial_end,
                trial_ends_at=trial_end,
                seats=1,
            )
        )
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise Conflict("Email is already registered", error_code="email_in_use") from e
    except Exception:
        await session.rollback()
        raise

    logger.info("user.registered", user_id=user.id, tenant_id=tenant.id)

    try:
        await send_email(welcome_email(user.email, user.name))
    except EmailDeliveryError:
        logger.warning("user.welcome_email_failed", user_id=user.id)

    return user, tenant


async def authenticate(session: AsyncSession, email: str, password: str) -> User:
    """
    Raises:
        Unauthenticated: Unknown email or wrong password
        Forbidden: Account deactivated
    """
    user = await get_user_by_email(session, email)
    if user is None or not verify_password(password, user.password_hash):
        raise Unauthenticated("Invalid email or password", error_code="invalid_credentials")
    if not user.is_active:
        raise Forbidden("Account is deactivated", error_code="user_inactive")
    logger.info("user.login", user_id=user.id)
    return user


async def select_tenant(
    session: AsyncSession, principal: Principal, tenant_id: str
) -> tuple[str, Principal]:
    """Re-issue the access token for another tenant of the caller.

    Impersonation sessions keep their impersonator.
    """
    user = await session.get(User, principal.user_id)
    if user is None or not user.is_active:
        raise Unauthenticated()

    membership = await session.scalar(
        select(Membership).where(Membership.user_id == user.id, Membership.tenant_id == tenant_id)
    )
    if membership is None:
        if not user.is_superadmin:
            raise Forbidden("Not a member of this tenant", error_code="forbidden_other_tenant")
        if await session.get(Tenant, tenant_id) is None:
            raise NotFound("Tenant not found", error_code="tenant_not_found")

    tenant_role = membership.role if membership else None
    selected = Principal(
        user_id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        tenant_id=tenant_id,
        tenant_role=tenant_role,
        impersonator_id=principal.impersonator_id,
    )
    token = issue_access_token(
        user,
        tenant_id=tenant_id,
        tenant_role=tenant_role,
        impersonator_id=principal.impersonator_id,
    )
    return token, selected


async def change_password(
    session: AsyncSession, principal: Principal, current_password: str, new_password: str
) -> None:
    """
    Raises:
        ValidationError: New password too short
        BadRequest: User gone or inactive, or current password wrong
    """
    _check_password(new_password, field="new_password")

    user = await session.get(User, principal.user_id)
    if user is None or not user.is_active:
        raise BadRequest("User not found or inactive", error_code="user_not_found_or_inactive")
    if not verify_password(current_password, user.password_hash):
        raise BadRequest("Current password is incorrect", error_code="invalid_current_password")

    user.password_hash = hash_password(new_password)
    user.must_change_password = False
    await session.commit()
    logger.info("user.password_changed", user_id=user.id)


__all__ = [
    "normalize_email",
    "get_user_by_email",
    "generate_unique_username",
    "token_for_user",
    "register",
    "authenticate",
    "select_tenant",
    "change_password",
]
