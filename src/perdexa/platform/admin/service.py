"""
Super admin user management: status flags, deletion and billing overview.
"""

from dataclasses import dataclass, field

import structlog
from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from perdexa.platform.auth.models import User
from perdexa.platform.billing.models import Invoice, Subscription
from perdexa.platform.billing.service import SubscriptionService
from perdexa.platform.exceptions import Conflict, Forbidden, NotFound, ValidationError
from perdexa.platform.logging import log_audit_event
from perdexa.platform.tenant.models import Membership, Tenant

logger = structlog.get_logger(__name__)


@dataclass
class TenantBilling:
    tenant: Tenant
    role: str | None
    owned: bool
    subscription: Subscription | None
    invoices: list[Invoice] = field(default_factory=list)


class UserAdminService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_user(self, user_id: str) -> User:
        user = await self.session.get(User, user_id)
        if user is None:
            raise NotFound("User not found", error_code="user_not_found")
        return user

    async def update_status(
        self,
        actor_id: str,
        user_id: str,
        active: bool | None = None,
        must_change_password: bool | None = None,
    ) -> User:
        """Toggle the active and must-change-password flags.

        Raises:
            ValidationError: Neither flag given
            NotFound: Unknown user
        """
        if active is None and must_change_password is None:
            raise ValidationError(
                "Nothing to update", error_code="nothing_to_update", status_code=400
            )
        user = await self.get_user(user_id)
        if active is not None:
            user.is_active = active
        if must_change_password is not None:
            user.must_change_password = must_change_password
        await self.session.commit()

        log_audit_event(
            "user.status_updated",
            "admin",
            user_id=actor_id,
            resource_type="user",
            resource_id=user.id,
            active=user.is_active,
            must_change_password=user.must_change_password,
        )
        return user

    async def delete_user(self, actor_id: str, user_id: str) -> None:
        """Hard-delete a user without tenants of their own.

        Raises:
            NotFound: Unknown user
            Forbidden: Target is a super admin
            Conflict: Target created a tenant
        """
        user = await self.get_user(user_id)
        if user.is_superadmin:
            raise Forbidden("Super admins cannot be deleted", error_code="cannot_delete_superadmin")

        owned = await self.session.scalar(
            select(Tenant.id).where(Tenant.created_by_id == user.id).limit(1)
        )
        if owned:
            raise Conflict("User owns tenants", error_code="user_has_tenants")

        try:
            await self.session.execute(delete(Membership).where(Membership.user_id == user.id))
            await self.session.delete(user)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        log_audit_event(
            "user.deleted", "admin", user_id=actor_id, resource_type="user", resource_id=user_id
        )

    async def billing_overview(self, user_id: str) -> tuple[User, list[TenantBilling]]:
        """Every tenant the user created or belongs to, with subscription and invoices."""
        user = await self.get_user(user_id)
        subscriptions = SubscriptionService(self.session)

        memberships = {
            m.tenant_id: m.role
            for m in await self.session.scalars(
                select(Membership).where(Membership.user_id == user.id)
            )
        }
        tenants = await self.session.scalars(
            select(Tenant)
            .where(or_(Tenant.created_by_id == user.id, Tenant.id.in_(list(memberships))))
            .order_by(Tenant.created_at.asc())
        )

        overview = []
        for tenant in tenants:
            overview.append(
                TenantBilling(
                    tenant=tenant,
                    role=memberships.get(tenant.id),
                    owned=tenant.created_by_id == user.id,
                    subscription=await subscriptions.get_subscription(tenant.id),
                    invoices=await subscriptions.list_invoices(tenant.id),
                )
            )
        return user, overview


__all__ = ["TenantBilling", "UserAdminService"]
