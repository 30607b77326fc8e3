"""
Authorization guards.

Each guard takes the principal explicitly and either returns or raises a
``PerdexaError`` that the API layer maps to a status code. FastAPI
dependency wrappers live in ``perdexa.platform.auth.dependencies``.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from perdexa.platform.auth.core import Principal
from perdexa.platform.billing.service import SubscriptionService
from perdexa.platform.exceptions import (
    Forbidden,
    ForbiddenOtherTenant,
    TenantNotSelected,
    Unauthenticated,
)
from perdexa.platform.tenant.models import ADMIN_TENANT_ROLES


@dataclass(frozen=True)
class ScopedAdmin:
    """Tenant OWNER/ADMIN acting inside their own session tenant."""

    user_id: str
    tenant_id: str
    tenant_role: str


@dataclass(frozen=True)
class GlobalAdmin:
    """Super admin; not bound to a tenant. ``tenant_id`` is the tenant acted on, if any."""

    user_id: str
    tenant_id: str | None


AdminAuthorization = ScopedAdmin | GlobalAdmin


def require_super_admin(principal: Principal | None) -> Principal:
    if principal is None or not principal.user_id:
        raise Unauthenticated()
    if not principal.is_superadmin:
        raise Forbidden("Super admin access required")
    return principal


def require_tenant_admin(
    principal: Principal | None, target_tenant_id: str | None = None
) -> AdminAuthorization:
    """Tenant OWNER/ADMIN of the session tenant, or any super admin.

    Raises:
        Unauthenticated: No principal
        TenantNotSelected: Regular user without a selected tenant
        Forbidden: Tenant role below ADMIN
        ForbiddenOtherTenant: ``target_tenant_id`` is not the session tenant
    """
    if principal is None or not principal.user_id:
        raise Unauthenticated()

    if principal.is_superadmin:
        return GlobalAdmin(
            user_id=principal.user_id, tenant_id=target_tenant_id or principal.tenant_id
        )

    if not principal.tenant_id:
        raise TenantNotSelected()
    if principal.tenant_role not in ADMIN_TENANT_ROLES:
        raise Forbidden("Tenant admin access required")
    if target_tenant_id and target_tenant_id != principal.tenant_id:
        raise ForbiddenOtherTenant(context={"tenant_id": target_tenant_id})

    return ScopedAdmin(
        user_id=principal.user_id,
        tenant_id=principal.tenant_id,
        tenant_role=principal.tenant_role,
    )


async def require_active_tenant(
    session: AsyncSession, principal: Principal | None, now: datetime | None = None
) -> str:
    """Session tenant id, provided its subscription currently grants access.

    Raises:
        Unauthenticated: No principal or no selected tenant
        SubscriptionInactive / TrialExpired / PaymentRequired: Gated (402)
    """
    if principal is None or not principal.tenant_id:
        raise Unauthenticated("No tenant selected", context={"reason": "tenant_missing"})

    await SubscriptionService(session).check_access(principal.tenant_id, now=now)
    return principal.tenant_id


__all__ = [
    "ScopedAdmin",
    "GlobalAdmin",
    "AdminAuthorization",
    "require_super_admin",
    "require_tenant_admin",
    "require_active_tenant",
]
