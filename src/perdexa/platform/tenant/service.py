"""
Membership management for tenant administrators.
"""

from dataclasses import dataclass

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from perdexa.platform.auth.core import generate_initial_password, hash_password
from perdexa.platform.auth.guards import AdminAuthorization, GlobalAdmin, ScopedAdmin
from perdexa.platform.auth.models import User, UserRole
from perdexa.platform.auth.service import (
    generate_unique_username,
    get_user_by_email,
    normalize_email,
)
from perdexa.platform.billing.models import Subscription
from perdexa.platform.exceptions import (
    Conflict,
    Forbidden,
    NotFound,
    TenantNotSelected,
    ValidationError,
)
from perdexa.platform.logging import log_audit_event
from perdexa.platform.tenant.models import Membership, Tenant, TenantRole

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class MemberAdded:
    membership: Membership
    user: User
    initial_password: str | None


@dataclass(frozen=True)
class MembershipRemoved:
    membership_id: str
    user_id: str
    tenant_id: str
    user_deactivated: bool


class MembershipService:
    """Tenant membership operations for one database session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def target_tenant(auth: AdminAuthorization) -> str:
        """Tenant an admin acts on; super admins must name one."""
        if auth.tenant_id is None:
            raise TenantNotSelected()
        return auth.tenant_id

    async def count_memberships(self, user_id: str) -> int:
        count = await self.session.scalar(
            select(func.count()).select_from(Membership).where(Membership.user_id == user_id)
        )
        return int(count or 0)

    async def _sync_seats(self, tenant_id: str) -> None:
        seats = await self.session.scalar(
            select(func.count()).select_from(Membership).where(Membership.tenant_id == tenant_id)
        )
        await self.session.execute(
            update(Subscription)
            .where(Subscription.tenant_id == tenant_id)
            .values(seats=int(seats or 0))
            .execution_options(synchronize_session=False)
        )

    async def list_members(self, tenant_id: str) -> list[tuple[Membership, User]]:
        result = await self.session.execute(
            select(Membership, User)
            .join(User, User.id == Membership.user_id)
            .where(Membership.tenant_id == tenant_id)
            .order_by(Membership.created_at.asc())
        )
        return [(membership, user) for membership, user in result.all()]

    async def add_member(
        self,
        auth: AdminAuthorization,
        email: str,
        name: str | None = None,
        role: TenantRole | str = TenantRole.MEMBER,
    ) -> MemberAdded:
        """Add a user to the admin's tenant, creating the account if needed.

        New accounts get a generated initial password they must change.

        Raises:
            ValidationError: OWNER requested, or bad role
            Conflict: ``user_inactive`` or ``user_already_member``
        """
        tenant_id = self.target_tenant(auth)
        try:
            role_value = TenantRole(role).value
        except ValueError as e:
            raise ValidationError(f"Unknown role: {role}", context={"field": "role"}) from e
        if role_value == TenantRole.OWNER.value:
            raise ValidationError("Owners cannot be added", context={"field": "role"})
        if await self.session.get(Tenant, tenant_id) is None:
            raise NotFound("Tenant not found", error_code="tenant_not_found")

        email = normalize_email(email)
        initial_password: str | None = None
        user = await get_user_by_email(self.session, email)

        if user is not None:
            if not user.is_active:
                raise Conflict("User is deactivated", error_code="user_inactive")
            existing = await self.session.scalar(
                select(Membership.id).where(
                    Membership.user_id == user.id, Membership.tenant_id == tenant_id
                )
            )
            if existing:
                raise Conflict("User is already a member", error_code="user_already_member")
        else:
            initial_password = generate_initial_password()
            user = User(
                email=email,
                name=(name or "").strip() or None,
                username=await generate_unique_username(self.session, email),
                password_hash=hash_password(initial_password),
                role=UserRole.USER.value,
                must_change_password=True,
            )
            self.session.add(user)
            await self.session.flush()

        membership = Membership(user_id=user.id, tenant_id=tenant_id, role=role_value)
        self.session.add(membership)
        try:
            await self.session.flush()
            await self._sync_seats(tenant_id)
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise Conflict("User is already a member", error_code="user_already_member") from e

        log_audit_event(
            "membership.added",
            "tenant",
            user_id=auth.user_id,
            tenant_id=tenant_id,
            resource_type="membership",
            resource_id=membership.id,
            member_user_id=user.id,
            role=role_value,
        )
        return MemberAdded(membership=membership, user=user, initial_password=initial_password)

    async def remove_membership(
        self, auth: AdminAuthorization, membership_id: str
    ) -> MembershipRemoved:
        """Delete a membership; a user left without memberships is deactivated.

        Both writes commit together.

        Raises:
            NotFound: Unknown membership
            Forbidden: Scoped admin outside their tenant, or removing an OWNER
        """
        membership = await self.session.get(Membership, membership_id)
        if membership is None:
            raise NotFound("Membership not found", error_code="membership_not_found")

        if isinstance(auth, ScopedAdmin):
            if membership.tenant_id != auth.tenant_id:
                raise Forbidden("Membership belongs to another tenant")
            if membership.role == TenantRole.OWNER.value:
                raise Forbidden("The owner cannot be removed", error_code="cannot_remove_owner")
        elif not isinstance(auth, GlobalAdmin):
            raise Forbidden()

        user_id, tenant_id = membership.user_id, membership.tenant_id
        deactivated = False
        try:
            await self.session.delete(membership)
            await self.session.flush()

            if await self.count_memberships(user_id) == 0:
                user = await self.session.get(User, user_id)
                if user is not None and user.is_active:
                    user.is_active = False
                    deactivated = True

            await self._sync_seats(tenant_id)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        log_audit_event(
            "membership.removed",
            "tenant",
            user_id=auth.user_id,
            tenant_id=tenant_id,
            resource_type="membership",
            resource_id=membership_id,
            member_user_id=user_id,
            user_deactivated=deactivated,
        )
        return MembershipRemoved(
            membership_id=membership_id,
            user_id=user_id,
            tenant_id=tenant_id,
            user_deactivated=deactivated,
        )


__all__ = ["MemberAdded", "MembershipRemoved", "MembershipService"]
