"""
HTTP tests for the authentication endpoints.
"""

import pytest

from perdexa.platform.auth.core import TokenType, jwt_service
from perdexa.platform.auth.impersonation import issue_impersonation_token
from perdexa.platform.auth.models import UserRole

pytestmark = pytest.mark.integration

API = "/api/v1/auth"


class TestRegistrationAndLogin:
    async def test_register_sets_cookie(self, client):
        response = await client.post(
            f"{API}/register",
            json={"name": "Ayse", "email": "ayse@example.com", "password": "secret123"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["token_type"] == "bearer"
        assert body["tenant_id"]
        assert body["tenant_role"] == "OWNER"
        assert "access_token" in response.cookies

    async def test_register_duplicate_email(self, client, make_user):
        await make_user(email="ayse@example.com")
        response = await client.post(
            f"{API}/register",
            json={"name": "Ayse", "email": "ayse@example.com", "password": "secret123"},
        )
        assert response.status_code == 409
        assert response.json()["error"] == "email_in_use"

    async def test_register_validation_error(self, client):
        response = await client.post(f"{API}/register", json={"name": "A", "email": "nope"})
        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "validation_error"
        assert body["context"]["errors"]

    async def test_login(self, client, make_user):
        user = await make_user(email="login@example.com")
        response = await client.post(
            f"{API}/login", json={"email": "login@example.com", "password": "secret123"}
        )
        assert response.status_code == 200
        assert response.json()["user_id"] == user.id

    async def test_login_wrong_password(self, client, make_user):
        await make_user(email="login@example.com")
        response = await client.post(
            f"{API}/login", json={"email": "login@example.com", "password": "wrong"}
        )
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json() == {
            "error": "invalid_credentials",
            "message": "Invalid email or password",
            "status_code": 401,
        }

    async def test_login_deactivated(self, client, make_user):
        await make_user(email="off@example.com", is_active=False)
        response = await client.post(
            f"{API}/login", json={"email": "off@example.com", "password": "secret123"}
        )
        assert response.status_code == 403


class TestSession:
    async def test_me_requires_token(self, client):
        response = await client.get(f"{API}/me")
        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    async def test_me_with_bearer(self, client, make_user, make_tenant, headers_for):
        user = await make_user(must_change_password=True)
        tenant = await make_tenant(user)

        response = await client.get(f"{API}/me", headers=headers_for(user, tenant.id, "OWNER"))

        assert response.status_code == 200
        body = response.json()
        assert body["user_id"] == user.id
        assert body["tenant_id"] == tenant.id
        assert body["tenant_role"] == "OWNER"
        assert body["must_change_password"] is True

    async def test_me_with_cookie(self, client):
        registered = await client.post(
            f"{API}/register",
            json={"name": "Cookie", "email": "cookie@example.com", "password": "secret123"},
        )
        assert registered.status_code == 201

        response = await client.get(f"{API}/me")
        assert response.status_code == 200
        assert response.json()["user_id"] == registered.json()["user_id"]

    async def test_select_tenant(
        self, client, make_user, make_tenant, add_membership, headers_for
    ):
        user = await make_user()
        own = await make_tenant(user)
        other = await make_tenant(await make_user(), name="Other")
        await add_membership(user, other)

        response = await client.post(
            f"{API}/select-tenant",
            json={"tenant_id": other.id},
            headers=headers_for(user, own.id),
        )

        assert response.status_code == 200
        claims = jwt_service.verify_token(response.json()["access_token"])
        assert claims["tenant_id"] == other.id
        assert claims["tenant_role"] == "MEMBER"

    async def test_change_password(self, client, make_user, headers_for):
        user = await make_user(email="pw@example.com")
        response = await client.post(
            f"{API}/password/change",
            json={"current_password": "secret123", "new_password": "changed-pw"},
            headers=headers_for(user),
        )
        assert response.status_code == 200

        login = await client.post(
            f"{API}/login", json={"email": "pw@example.com", "password": "changed-pw"}
        )
        assert login.status_code == 200

    async def test_logout_clears_cookie(self, client):
        response = await client.post(f"{API}/logout")
        assert response.status_code == 200
        assert "access_token" in response.headers["set-cookie"]


class TestPasswordResetEndpoints:
    async def test_request_is_uniform(self, client, make_user, email_outbox):
        await make_user(email="known@example.com")

        known = await client.post(f"{API}/password-reset", json={"email": "known@example.com"})
        unknown = await client.post(f"{API}/password-reset", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()
        assert len(email_outbox) == 1

    async def test_confirm_with_bad_token(self, client, make_user):
        await make_user(email="known@example.com")
        response = await client.post(
            f"{API}/password-reset/confirm",
            json={"email": "known@example.com", "token": "bad", "new_password": "secret456"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_token"


class TestImpersonationEndpoints:
    async def test_exchange_and_revert(
        self, client, db_session, make_user, make_tenant, principal
    ):
        admin = await make_user(role=UserRole.SUPERADMIN)
        target = await make_user()
        tenant = await make_tenant(target)
        token = await issue_impersonation_token(db_session, principal(admin), target.id)

        exchanged = await client.post(f"{API}/impersonation/exchange", json={"token": token})
        assert exchanged.status_code == 200
        body = exchanged.json()
        assert body["user_id"] == target.id
        assert body["tenant_id"] == tenant.id
        assert body["impersonator_id"] == admin.id

        headers = {"Authorization": f"Bearer {body['access_token']}"}
        me = await client.get(f"{API}/me", headers=headers)
        assert me.json()["impersonator_id"] == admin.id

        reverted = await client.post(f"{API}/impersonation/revert", headers=headers)
        assert reverted.status_code == 200
        claims = jwt_service.verify_token(
            reverted.json()["access_token"], expected_type=TokenType.ACCESS
        )
        assert claims["sub"] == admin.id
        assert "impersonator_id" not in claims

    async def test_exchange_twice(self, client, db_session, make_user, principal):
        admin = await make_user(role=UserRole.SUPERADMIN)
        target = await make_user()
        token = await issue_impersonation_token(db_session, principal(admin), target.id)

        await client.post(f"{API}/impersonation/exchange", json={"token": token})
        again = await client.post(f"{API}/impersonation/exchange", json={"token": token})

        assert again.status_code == 409
        assert again.json()["error"] == "token_already_used"

    async def test_revert_without_impersonation(self, client, make_user, headers_for):
        user = await make_user()
        response = await client.post(f"{API}/impersonation/revert", headers=headers_for(user))
        assert response.status_code == 400
        assert response.json()["error"] == "not_impersonated"
