"""
Administrator impersonation.

An administrator obtains a short-lived, single-use impersonation token for a
target user, exchanges it for a regular access token that carries the
administrator's id, and later reverts back to their own session. Every
session is recorded in ``ImpersonationLog``.
"""

from datetime import datetime, timedelta
from enum import Enum

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from perdexa.platform.auth.core import Principal, TokenType, issue_access_token, jwt_service
from perdexa.platform.auth.models import ImpersonationLog, User, UserRole
from perdexa.platform.db import utcnow
from perdexa.platform.exceptions import (
    AdminNotActive,
    BadRequest,
    Conflict,
    Forbidden,
    NotFound,
    NotImpersonating,
    Unauthenticated,
    UserInactive,
)
from perdexa.platform.logging import log_audit_event
from perdexa.platform.settings import settings
from perdexa.platform.tenant.resolver import get_default_membership

logger = structlog.get_logger(__name__)

IMPERSONATOR_ROLES = frozenset({UserRole.ADMIN.value, UserRole.SUPERADMIN.value})


class ImpersonationScope(str, Enum):
    TENANT = "tenant"
    GLOBAL = "global"


def normalize_scope(scope: str | None) -> ImpersonationScope:
    """Unknown scopes fall back to ``tenant``."""
    if scope == ImpersonationScope.GLOBAL.value:
        return ImpersonationScope.GLOBAL
    return ImpersonationScope.TENANT


async def issue_impersonation_token(
    session: AsyncSession,
    actor: Principal | None,
    target_user_id: str | None,
    scope: str | None = None,
    now: datetime | None = None,
) -> str:
    """Signed token letting ``actor`` act as ``target_user_id`` for a few minutes.

    Raises:
        Unauthenticated: No actor
        Forbidden: Actor is not ADMIN/SUPERADMIN, or an ADMIN targets a super admin
        BadRequest: Missing target
        NotFound: Target does not exist
        UserInactive: Target is deactivated
    """
    if actor is None or not actor.user_id:
        raise Unauthenticated()
    if actor.role not in IMPERSONATOR_ROLES:
        raise Forbidden("Only administrators can impersonate")
    if not target_user_id:
        raise BadRequest("target_user_id is required", error_code="target_required")
    if target_user_id == actor.user_id:
        raise BadRequest("Cannot impersonate yourself", error_code="cannot_impersonate_self")

    target = await session.get(User, target_user_id)
    if target is None:
        raise NotFound("User not found", error_code="user_not_found")
    if not target.is_active:
        raise UserInactive()
    if target.is_superadmin and not actor.is_superadmin:
        raise Forbidden("Only super admins can impersonate a super admin")

    resolved_scope = normalize_scope(scope)
    token = jwt_service.create_token(
        {
            "sub": target.id,
            "type": TokenType.IMPERSONATE.value,
            "impersonator_id": actor.user_id,
            "scope": resolved_scope.value,
        },
        timedelta(minutes=settings.jwt.impersonation_token_expire_minutes),
        now=now,
    )

    log_audit_event(
        "impersonation.issued",
        "security",
        user_id=actor.user_id,
        resource_type="user",
        resource_id=target.id,
        scope=resolved_scope.value,
    )
    return token


async def exchange_impersonation_token(
    session: AsyncSession, token: str, now: datetime | None = None
) -> tuple[str, Principal]:
    """Trade an impersonation token for an access token acting as the target.

    Each token can be exchanged once; its jti becomes the audit log key.

    Raises:
        Unauthenticated: Invalid, expired or wrong-type token
        Conflict: Token already exchanged
        AdminNotActive: Issuing administrator is gone, inactive or demoted
        NotFound / UserInactive: Target no longer usable
    """
    claims = jwt_service.verify_token(token, expected_type=TokenType.IMPERSONATE)
    impersonator_id = claims.get("impersonator_id")
    jti = claims.get("jti")
    if not impersonator_id or not jti:
        raise Unauthenticated("Malformed impersonation token", error_code="invalid_token")

    admin = await session.get(User, impersonator_id)
    if admin is None or not admin.is_active or admin.role not in IMPERSONATOR_ROLES:
        raise AdminNotActive()

    target = await session.get(User, claims.get("sub"))
    if target is None:
        raise NotFound("User not found", error_code="user_not_found")
    if not target.is_active:
        raise UserInactive()

    scope = normalize_scope(claims.get("scope"))
    session.add(
        ImpersonationLog(
            target_user_id=target.id,
            impersonator_id=admin.id,
            scope=scope.value,
            token_jti=jti,
            started_at=now or utcnow(),
        )
    )
    try:
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise Conflict(
            "Impersonation token was already used", error_code="token_already_used"
        ) from e

    tenant_id = tenant_role = None
    if scope is ImpersonationScope.TENANT:
        membership = await get_default_membership(session, target.id)
        if membership is not None:
            tenant_id, tenant_role = membership.tenant_id, membership.role

    log_audit_event(
        "impersonation.started",
        "security",
        user_id=admin.id,
        tenant_id=tenant_id,
        resource_type="user",
        resource_id=target.id,
        scope=scope.value,
    )

    principal = Principal(
        user_id=target.id,
        email=target.email,
        name=target.name,
        role=target.role,
        tenant_id=tenant_id,
        tenant_role=tenant_role,
        impersonator_id=admin.id,
    )
    access_token = issue_access_token(
        target, tenant_id=tenant_id, tenant_role=tenant_role, impersonator_id=admin.id
    )
    return access_token, principal


async def revert_impersonation(
    session: AsyncSession, principal: Principal | None, now: datetime | None = None
) -> tuple[str, Principal]:
    """End an impersonation and hand the administrator back their own session.

    Raises:
        NotImpersonating: The session carries no impersonator
        AdminNotActive: The administrator is missing or deactivated
    """
    if principal is None or not principal.is_impersonating:
        raise NotImpersonating()

    admin = await session.get(User, principal.impersonator_id)
    if admin is None or not admin.is_active:
        raise AdminNotActive()

    result = await session.execute(
        update(ImpersonationLog)
        .where(
            ImpersonationLog.target_user_id == principal.user_id,
            ImpersonationLog.impersonator_id == admin.id,
            ImpersonationLog.ended_at.is_(None),
        )
        .values(ended_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    membership = await get_default_membership(session, admin.id)
    tenant_id = membership.tenant_id if membership else None
    tenant_role = membership.role if membership else None

    log_audit_event(
        "impersonation.reverted",
        "security",
        user_id=admin.id,
        resource_type="user",
        resource_id=principal.user_id,
        closed_sessions=result.rowcount or 0,
    )

    admin_principal = Principal(
        user_id=admin.id,
        email=admin.email,
        name=admin.name,
        role=admin.role,
        tenant_id=tenant_id,
        tenant_role=tenant_role,
    )
    return issue_access_token(admin, tenant_id=tenant_id, tenant_role=tenant_role), admin_principal


async def list_open_sessions(session: AsyncSession, impersonator_id: str) -> list[ImpersonationLog]:
    result = await session.scalars(
        select(ImpersonationLog)
        .where(
            ImpersonationLog.impersonator_id == impersonator_id,
            ImpersonationLog.ended_at.is_(None),
        )
        .order_by(ImpersonationLog.started_at.desc())
    )
    return list(result)


__all__ = [
    "ImpersonationScope",
    "normalize_scope",
    "issue_impersonation_token",
    "exchange_impersonation_token",
    "revert_impersonation",
    "list_open_sessions",
]
