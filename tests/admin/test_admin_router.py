"""
HTTP tests for the super admin endpoints.
"""

import pytest

from perdexa.platform.auth.core import TokenType, jwt_service
from perdexa.platform.auth.models import UserRole

pytestmark = pytest.mark.integration

API = "/api/v1/admin"


@pytest.fixture
async def root(make_user):
    return await make_user(email="root@example.com", role=UserRole.SUPERADMIN)


class TestImpersonate:
    async def test_issues_token(self, client, root, make_user, headers_for):
        target = await make_user()

        response = await client.post(
            f"{API}/impersonate",
            json={"target_user_id": target.id, "scope": "global"},
            headers=headers_for(root),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["expires_in"] == 300
        assert body["scope"] == "global"
        claims = jwt_service.verify_token(body["token"], expected_type=TokenType.IMPERSONATE)
        assert claims["sub"] == target.id

    async def test_regular_user_forbidden(self, client, make_user, headers_for):
        user = await make_user()
        target = await make_user()
        response = await client.post(
            f"{API}/impersonate", json={"target_user_id": target.id}, headers=headers_for(user)
        )
        assert response.status_code == 403

    async def test_inactive_target(self, client, root, make_user, headers_for):
        target = await make_user(is_active=False)
        response = await client.post(
            f"{API}/impersonate", json={"target_user_id": target.id}, headers=headers_for(root)
        )
        assert response.status_code == 400
        assert response.json()["error"] == "user_inactive"


class TestUserStatus:
    async def test_get_status(self, client, root, make_user, headers_for):
        user = await make_user(must_change_password=True)
        response = await client.get(f"{API}/users/{user.id}/status", headers=headers_for(root))
        assert response.status_code == 200
        assert response.json()["mustChangePassword"] is True
        assert response.json()["active"] is True

    async def test_patch_status(self, client, root, make_user, headers_for):
        user = await make_user()
        response = await client.patch(
            f"{API}/users/{user.id}/status",
            json={"active": False, "mustChangePassword": True},
            headers=headers_for(root),
        )
        assert response.json()["active"] is False
        assert response.json()["mustChangePassword"] is True

    async def test_patch_nothing(self, client, root, make_user, headers_for):
        user = await make_user()
        response = await client.patch(
            f"{API}/users/{user.id}/status", json={}, headers=headers_for(root)
        )
        assert response.status_code == 400
        assert response.json()["error"] == "nothing_to_update"

    async def test_non_super_admin(self, client, make_user, headers_for):
        admin = await make_user(role=UserRole.ADMIN)
        response = await client.get(f"{API}/users/{admin.id}/status", headers=headers_for(admin))
        assert response.status_code == 403

    async def test_delete_tenant_owner_conflicts(
        self, client, root, make_user, make_tenant, headers_for
    ):
        owner = await make_user()
        await make_tenant(owner)
        response = await client.delete(f"{API}/users/{owner.id}", headers=headers_for(root))
        assert response.status_code == 409

    async def test_delete_user(self, client, root, make_user, headers_for):
        user = await make_user()
        response = await client.delete(f"{API}/users/{user.id}", headers=headers_for(root))
        assert response.json() == {"ok": True}

        missing = await client.get(f"{API}/users/{user.id}/status", headers=headers_for(root))
        assert missing.status_code == 404


class TestUserBilling:
    @pytest.fixture
    async def owner_with_tenant(self, make_user, make_tenant, make_subscription):
        owner = await make_user()
        tenant = await make_tenant(owner, name="Shop")
        await make_subscription(tenant)
        return owner, tenant

    async def test_overview(self, client, root, owner_with_tenant, headers_for):
        owner, tenant = owner_with_tenant
        response = await client.get(f"{API}/users/{owner.id}/billing", headers=headers_for(root))

        assert response.status_code == 200
        tenants = response.json()["tenants"]
        assert [entry["tenant_id"] for entry in tenants] == [tenant.id]
        assert tenants[0]["owned"] is True
        assert tenants[0]["subscription"]["plan"] == "FREE"

    async def test_toggle_active(self, client, root, owner_with_tenant, headers_for):
        owner, _ = owner_with_tenant
        response = await client.patch(
            f"{API}/users/{owner.id}/billing",
            json={"op": "toggleActive"},
            headers=headers_for(root),
        )
        assert response.json()["user"]["active"] is False

    async def test_set_subscription(self, client, root, owner_with_tenant, headers_for):
        owner, tenant = owner_with_tenant
        response = await client.patch(
            f"{API}/users/{owner.id}/billing",
            json={"op": "setSubscription", "tenantId": tenant.id, "plan": "BUSINESS"},
            headers=headers_for(root),
        )
        subscription = response.json()["tenants"][0]["subscription"]
        assert subscription["plan"] == "BUSINESS"
        assert subscription["status"] == "active"

    async def test_set_trial_days(self, client, root, owner_with_tenant, headers_for):
        owner, tenant = owner_with_tenant
        response = await client.patch(
            f"{API}/users/{owner.id}/billing",
            json={"op": "setSubscription", "tenantId": tenant.id, "plan": "FREE", "trialDays": 0},
            headers=headers_for(root),
        )
        subscription = response.json()["tenants"][0]["subscription"]
        assert subscription["status"] == "trialing"
        assert subscription["trial_ends_at"] is not None

    async def test_set_subscription_requires_tenant(
        self, client, root, owner_with_tenant, headers_for
    ):
        owner, _ = owner_with_tenant
        response = await client.patch(
            f"{API}/users/{owner.id}/billing",
            json={"op": "setSubscription", "plan": "PRO"},
            headers=headers_for(root),
        )
        assert response.status_code == 422

    async def test_set_subscription_unknown_tenant(
        self, client, root, owner_with_tenant, headers_for
    ):
        owner, _ = owner_with_tenant
        response = await client.patch(
            f"{API}/users/{owner.id}/billing",
            json={"op": "setSubscription", "tenantId": "missing", "plan": "PRO"},
            headers=headers_for(root),
        )
        assert response.status_code == 404
