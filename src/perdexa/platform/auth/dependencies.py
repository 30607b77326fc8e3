"""
Authorization dependencies for FastAPI routes.

Thin adapters that feed the request's principal into the guards.
"""

from fastapi import Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from perdexa.platform.auth.core import Principal, get_current_principal
from perdexa.platform.auth.guards import (
    AdminAuthorization,
    require_active_tenant,
    require_super_admin,
    require_tenant_admin,
)
from perdexa.platform.db import get_async_session
from perdexa.platform.tenant.resolver import resolve_tenant_id


async def super_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    """Require the SUPERADMIN global role."""
    return require_super_admin(principal)


async def tenant_admin(
    tenant_id: str | None = Query(None, description="Tenant to act on (super admins)"),
    principal: Principal = Depends(get_current_principal),
) -> AdminAuthorization:
    """Require OWNER/ADMIN of the session tenant; super admins may name any tenant."""
    return require_tenant_admin(principal, tenant_id)


async def active_tenant(
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_async_session),
) -> str:
    """Require a session tenant whose subscription grants access."""
    return await require_active_tenant(session, principal)


async def current_tenant(
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_async_session),
) -> str:
    """Tenant the request operates against, provisioning one for a first-time super admin."""
    return await resolve_tenant_id(session, principal)


__all__ = ["super_admin", "tenant_admin", "active_tenant", "current_tenant"]
