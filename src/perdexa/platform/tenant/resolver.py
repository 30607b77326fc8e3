"""
Tenant resolution.

Decides which tenant a request operates against. Super admins with no
tenant at all get a workspace provisioned on the fly.
"""

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from perdexa.platform.auth.core import Principal
from perdexa.platform.auth.models import User
from perdexa.platform.exceptions import NoTenant, Unauthenticated
from perdexa.platform.settings import settings
from perdexa.platform.tenant.models import Branch, Membership, Tenant, TenantRole

logger = structlog.get_logger(__name__)


def workspace_name(owner_name: str | None) -> str:
    name = (owner_name or "").strip() or settings.tenant.fallback_owner_name
    return settings.tenant.workspace_name_template.format(name=name)


async def get_oldest_membership(session: AsyncSession, user_id: str) -> Membership | None:
    return await session.scalar(
        select(Membership)
        .where(Membership.user_id == user_id)
        .order_by(Membership.created_at.asc(), Membership.id.asc())
        .limit(1)
    )


async def get_default_membership(session: AsyncSession, user_id: str) -> Membership | None:
    """Membership selected at sign-in: an OWNER membership first, else the oldest."""
    owner = await session.scalar(
        select(Membership)
        .where(Membership.user_id == user_id, Membership.role == TenantRole.OWNER.value)
        .order_by(Membership.created_at.asc(), Membership.id.asc())
        .limit(1)
    )
    if owner is not None:
        return owner
    return await get_oldest_membership(session, user_id)


async def provision_tenant(
    session: AsyncSession,
    owner: User,
    name: str | None = None,
) -> tuple[Tenant, Membership, Branch]:
    """Create a tenant with its OWNER membership and default branch.

    Rows are only flushed; the caller owns the transaction so the three
    rows commit or roll back together.
    """
    tenant = Tenant(name=name or workspace_name(owner.name), created_by_id=owner.id)
    session.add(tenant)
    await session.flush()

    membership = Membership(user_id=owner.id, tenant_id=tenant.id, role=TenantRole.OWNER.value)
    branch = Branch(tenant_id=tenant.id, name=settings.tenant.default_branch_name)
    session.add_all([membership, branch])
    await session.flush()
    return tenant, membership, branch


async def _attach_owner(session: AsyncSession, user_id: str, tenant_id: str) -> Membership:
    """Upsert an OWNER membership for (user, tenant)."""
    membership = await session.scalar(
        select(Membership).where(Membership.user_id == user_id, Membership.tenant_id == tenant_id)
    )
    if membership is None:
        try:
            membership = Membership(
                user_id=user_id, tenant_id=tenant_id, role=TenantRole.OWNER.value
            )
            session.add(membership)
            await session.flush()
        except IntegrityError:
            # Lost a race with a concurrent request; the row exists now.
            await session.rollback()
            membership = await session.scalar(
                select(Membership).where(
                    Membership.user_id == user_id, Membership.tenant_id == tenant_id
                )
            )
            if membership is None:
                raise
    if membership.role != TenantRole.OWNER.value:
        membership.role = TenantRole.OWNER.value
    return membership


async def resolve_tenant_id(session: AsyncSession, principal: Principal | None) -> str:
    """Tenant the request operates against.

    Raises:
        Unauthenticated: No principal
        NoTenant: A regular user without any membership
    """
    if principal is None or not principal.user_id:
        raise Unauthenticated()

    if principal.tenant_id:
        return principal.tenant_id

    if not principal.is_superadmin:
        membership = await get_oldest_membership(session, principal.user_id)
        if membership is None:
            raise NoTenant()
        return membership.tenant_id

    oldest_tenant = await session.scalar(
        select(Tenant).order_by(Tenant.created_at.asc(), Tenant.id.asc()).limit(1)
    )
    if oldest_tenant is not None:
        await _attach_owner(session, principal.user_id, oldest_tenant.id)
        await session.commit()
        return oldest_tenant.id

    user = await session.get(User, principal.user_id)
    if user is None:
        raise Unauthenticated("User not found")

    try:
        tenant, _, _ = await provision_tenant(session, user)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("tenant.auto_provisioned", tenant_id=tenant.id, user_id=user.id)
    return tenant.id


__all__ = [
    "workspace_name",
    "get_oldest_membership",
    "get_default_membership",
    "provision_tenant",
    "resolve_tenant_id",
]
