"""
HTTP tests for the billing, super admin billing and cron endpoints.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from perdexa.platform.auth.models import UserRole
from perdexa.platform.billing.models import Plan, SubscriptionStatus
from perdexa.platform.db import utcnow
from perdexa.platform.settings import settings

pytestmark = pytest.mark.integration

API = "/api/v1"


@pytest.fixture
async def shop(make_user, make_tenant, make_subscription):
    owner = await make_user(email="owner@example.com", name="Owner")
    tenant = await make_tenant(owner, name="Shop")
    await make_subscription(tenant)
    return owner, tenant


@pytest.fixture
async def root(make_user):
    return await make_user(email="root@example.com", role=UserRole.SUPERADMIN)


class TestBillingOverview:
    async def test_trial_overview(self, client, shop, headers_for):
        owner, tenant = shop
        response = await client.get(f"{API}/billing", headers=headers_for(owner, tenant.id))

        assert response.status_code == 200
        body = response.json()
        assert body["tenant_id"] == tenant.id
        assert body["is_active"] is True
        assert body["subscription"]["plan"] == "FREE"
        assert body["monthly_orders_limit"] == 30
        assert body["invoices"] == []

    async def test_tenant_without_subscription(
        self, client, make_user, make_tenant, headers_for
    ):
        owner = await make_user()
        tenant = await make_tenant(owner)
        response = await client.get(f"{API}/billing", headers=headers_for(owner, tenant.id))
        body = response.json()
        assert body["subscription"] is None
        assert body["is_active"] is False

    async def test_checkout_and_portal_links(self, client, shop, headers_for):
        owner, tenant = shop
        headers = headers_for(owner, tenant.id)

        checkout = await client.post(
            f"{API}/billing/checkout", json={"plan": "BUSINESS"}, headers=headers
        )
        portal = await client.post(f"{API}/billing/portal", headers=headers)

        assert checkout.status_code == 200
        assert "/billing/mock-checkout?" in checkout.json()["url"]
        assert "plan=BUSINESS" in checkout.json()["url"]
        assert f"tenant={tenant.id}" in portal.json()["url"]

    async def test_checkout_records_requested_plan(self, client, shop, headers_for):
        owner, tenant = shop
        headers = headers_for(owner, tenant.id)

        response = await client.post(
            f"{API}/billing/checkout", json={"plan": "BUSINESS"}, headers=headers
        )
        assert response.status_code == 200

        overview = (await client.get(f"{API}/billing", headers=headers)).json()
        assert overview["subscription"]["plan"] == "BUSINESS"
        assert overview["subscription"]["status"] == "trialing"


class TestPaymentRequest:
    async def test_emails_billing_desk(self, client, shop, headers_for, email_outbox):
        owner, tenant = shop
        response = await client.post(
            f"{API}/billing/payment-request",
            json={"month_key": "2025-03"},
            headers={**headers_for(owner, tenant.id), "X-Forwarded-For": "10.0.0.1, 10.0.0.2"},
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True, "message_id": "<test-1@perdexa.test>"}
        message = email_outbox[0]
        assert message.to == [settings.email.from_address]
        assert "2025-03" in message.subject
        assert "10.0.0.1" in message.text_body

    async def test_invalid_month(self, client, shop, headers_for, email_outbox):
        owner, tenant = shop
        response = await client.post(
            f"{API}/billing/payment-request",
            json={"month_key": "2025-13"},
            headers=headers_for(owner, tenant.id),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_month"
        assert email_outbox == []

    async def test_requires_login(self, client):
        response = await client.post(
            f"{API}/billing/payment-request", json={"month_key": "2025-03"}
        )
        assert response.status_code == 401


class TestWebhook:
    async def test_payment_failed_moves_to_past_due(self, client, shop):
        _, tenant = shop
        response = await client.post(
            f"{API}/billing/webhook",
            json={"type": "invoice.payment_failed", "data": {"tenant_id": tenant.id}},
        )
        assert response.json() == {"ok": True, "handled": True}

    async def test_unknown_event_ignored(self, client):
        response = await client.post(f"{API}/billing/webhook", json={"type": "customer.created"})
        assert response.json() == {"ok": True, "handled": False}

    async def test_secret_enforced_when_configured(self, client, shop, monkeypatch):
        _, tenant = shop
        monkeypatch.setattr(settings.billing, "webhook_secret", "hook-secret")
        event = {"type": "invoice.paid", "data": {"tenant_id": tenant.id, "amount": "10"}}

        rejected = await client.post(f"{API}/billing/webhook", json=event)
        accepted = await client.post(
            f"{API}/billing/webhook", json=event, headers={"X-Webhook-Secret": "hook-secret"}
        )

        assert rejected.status_code == 403
        assert accepted.json()["handled"] is True


class TestAdminTenantBilling:
    async def test_requires_super_admin(self, client, shop, headers_for):
        owner, tenant = shop
        response = await client.patch(
            f"{API}/admin/tenants/{tenant.id}/subscription",
            json={"plan": "PRO"},
            headers=headers_for(owner, tenant.id),
        )
        assert response.status_code == 403

    async def test_set_plan(self, client, shop, root, headers_for):
        _, tenant = shop
        response = await client.patch(
            f"{API}/admin/tenants/{tenant.id}/subscription",
            json={"plan": "PRO"},
            headers=headers_for(root),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["plan"] == Plan.PRO.value
        assert body["status"] == SubscriptionStatus.ACTIVE.value
        assert body["trial_ends_at"] is None

    async def test_unknown_tenant(self, client, root, headers_for):
        response = await client.patch(
            f"{API}/admin/tenants/missing/subscription",
            json={"plan": "PRO"},
            headers=headers_for(root),
        )
        assert response.status_code == 404
        assert response.json()["error"] == "tenant_not_found"

    async def test_checkout_cancel_resume(self, client, shop, root, headers_for):
        _, tenant = shop
        headers = headers_for(root)
        base = f"{API}/admin/tenants/{tenant.id}/billing"

        checkout = await client.post(f"{base}/checkout", json={"plan": "PRO"}, headers=headers)
        assert checkout.json()["status"] == "active"

        cancel = await client.post(f"{base}/cancel", json={"mode": "now"}, headers=headers)
        assert cancel.json()["status"] == "canceled"

        resume = await client.post(f"{base}/resume", headers=headers)
        assert resume.json()["status"] == "active"
        assert resume.json()["cancel_at_period_end"] is False

    async def test_pay_month_and_year(self, client, shop, root, headers_for):
        _, tenant = shop
        base = f"{API}/admin/tenants/{tenant.id}/billing"

        month = await client.post(
            f"{base}/pay-month", json={"year": 2025, "month": 2}, headers=headers_for(root)
        )
        year = await client.post(
            f"{base}/pay-year", json={"year": 2025, "from_month": 10}, headers=headers_for(root)
        )

        assert month.status_code == 200
        assert month.json()["period_key"] == "2025-02"
        assert Decimal(month.json()["amount"]) == Decimal("2000")
        assert [invoice["period_key"] for invoice in year.json()] == [
            "2025-10",
            "2025-11",
            "2025-12",
        ]

    async def test_pay_month_validates_month(self, client, shop, root, headers_for):
        _, tenant = shop
        response = await client.post(
            f"{API}/admin/tenants/{tenant.id}/billing/pay-month",
            json={"year": 2025, "month": 13},
            headers=headers_for(root),
        )
        assert response.status_code == 422

    async def test_settle_month_twice(self, client, shop, root, headers_for):
        _, tenant = shop
        url = f"{API}/admin/tenants/{tenant.id}/billing/pay"

        first = await client.patch(url, json={"year": 2025, "month": 5}, headers=headers_for(root))
        second = await client.patch(url, json={"year": 2025, "month": 5}, headers=headers_for(root))

        assert first.status_code == 200
        assert first.json()["subscription"]["status"] == "active"
        assert first.json()["invoice"]["status"] == "paid"
        assert second.status_code == 409
        assert second.json()["error"] == "already_paid"


class TestCronSweeper:
    async def test_wrong_secret(self, client):
        response = await client.get(f"{API}/cron/subscription-sweeper", params={"secret": "nope"})
        assert response.status_code == 403

    async def test_missing_secret(self, client):
        response = await client.get(f"{API}/cron/subscription-sweeper")
        assert response.status_code == 403

    async def test_sweeps(self, client, make_user, make_tenant, make_subscription):
        expired = await make_tenant(await make_user(), name="Expired")
        await make_subscription(expired, trial_ends_at=utcnow() - timedelta(days=1))
        lapsed = await make_tenant(await make_user(), name="Lapsed")
        await make_subscription(
            lapsed,
            plan=Plan.PRO,
            status=SubscriptionStatus.ACTIVE,
            current_period_end=utcnow() - timedelta(days=1),
        )

        params = {"secret": "test-cron-secret"}
        first = await client.get(f"{API}/cron/subscription-sweeper", params=params)
        second = await client.get(f"{API}/cron/subscription-sweeper", params=params)

        assert first.json() == {"ok": True, "free_canceled": 1, "paid_past_due": 1}
        assert second.json() == {"ok": True, "free_canceled": 0, "paid_past_due": 0}
