"""
Tests for super admin user management.
"""

import pytest
from sqlalchemy import select

from perdexa.platform.admin.service import UserAdminService
from perdexa.platform.auth.models import User, UserRole
from perdexa.platform.exceptions import Conflict, Forbidden, NotFound, ValidationError
from perdexa.platform.tenant.models import Membership, TenantRole

pytestmark = pytest.mark.unit


@pytest.fixture
def service(db_session):
    return UserAdminService(db_session)


class TestUpdateStatus:
    async def test_sets_flags(self, service, make_user):
        user = await make_user()
        updated = await service.update_status(
            "admin-1", user.id, active=False, must_change_password=True
        )
        assert updated.is_active is False
        assert updated.must_change_password is True

    async def test_partial_update(self, service, make_user):
        user = await make_user(must_change_password=True)
        updated = await service.update_status("admin-1", user.id, active=False)
        assert updated.must_change_password is True

    async def test_nothing_to_update(self, service, make_user):
        user = await make_user()
        with pytest.raises(ValidationError) as exc_info:
            await service.update_status("admin-1", user.id)
        assert exc_info.value.error_code == "nothing_to_update"
        assert exc_info.value.status_code == 400

    async def test_unknown_user(self, service):
        with pytest.raises(NotFound):
            await service.update_status("admin-1", "ghost", active=True)


class TestDeleteUser:
    async def test_deletes_member(
        self, service, db_session, make_user, make_tenant, add_membership
    ):
        tenant = await make_tenant(await make_user(), name="Shop")
        member = await make_user()
        await add_membership(member, tenant)

        await service.delete_user("admin-1", member.id)

        assert await db_session.get(User, member.id) is None
        remaining = await db_session.scalar(
            select(Membership).where(Membership.user_id == member.id)
        )
        assert remaining is None

    async def test_super_admin_is_protected(self, service, make_user):
        admin = await make_user(role=UserRole.SUPERADMIN)
        with pytest.raises(Forbidden) as exc_info:
            await service.delete_user("admin-1", admin.id)
        assert exc_info.value.error_code == "cannot_delete_superadmin"

    async def test_tenant_creator_is_protected(self, service, make_user, make_tenant):
        owner = await make_user()
        await make_tenant(owner)
        with pytest.raises(Conflict) as exc_info:
            await service.delete_user("admin-1", owner.id)
        assert exc_info.value.error_code == "user_has_tenants"


class TestBillingOverview:
    async def test_lists_owned_and_joined_tenants(
        self, service, make_user, make_tenant, add_membership, make_subscription
    ):
        user = await make_user()
        owned = await make_tenant(user, name="Mine")
        await make_subscription(owned)
        joined = await make_tenant(await make_user(), name="Theirs")
        await add_membership(user, joined, role=TenantRole.ADMIN)
        await make_tenant(await make_user(), name="Unrelated")

        _, overview = await service.billing_overview(user.id)

        by_name = {entry.tenant.name: entry for entry in overview}
        assert set(by_name) == {"Mine", "Theirs"}
        assert by_name["Mine"].owned is True
        assert by_name["Mine"].role == TenantRole.OWNER.value
        assert by_name["Mine"].subscription is not None
        assert by_name["Theirs"].owned is False
        assert by_name["Theirs"].role == TenantRole.ADMIN.value
        assert by_name["Theirs"].subscription is None
