"""
Billing API routers.

- ``billing_router``: the caller's own subscription, provider stand-ins,
  payment requests and the provider webhook.
- ``admin_billing_router``: super admin write paths on any tenant.
- ``cron_router``: the shared-secret sweep trigger for external schedulers.
"""

import secrets
from datetime import datetime
from decimal import Decimal
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from perdexa.platform.auth.core import Principal, get_current_principal
from perdexa.platform.auth.dependencies import current_tenant, super_admin, tenant_admin
from perdexa.platform.auth.guards import AdminAuthorization
from perdexa.platform.billing.models import Invoice, Plan, Subscription
from perdexa.platform.billing.periods import parse_month_key
from perdexa.platform.billing.plans import get_plan_limits
from perdexa.platform.billing.service import CancelMode, SubscriptionService
from perdexa.platform.billing.state_machine import is_subscription_active
from perdexa.platform.communications.email_service import send_email
from perdexa.platform.communications.email_templates import payment_request_email
from perdexa.platform.db import get_async_session, utcnow
from perdexa.platform.exceptions import BadRequest, Forbidden, NotFound, TenantNotSelected
from perdexa.platform.settings import settings
from perdexa.platform.tenant.models import Tenant

logger = structlog.get_logger(__name__)

billing_router = APIRouter()
admin_billing_router = APIRouter()
cron_router = APIRouter()


# ========================================
# Models
# ========================================


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    plan: str
    status: str
    provider: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    trial_ends_at: datetime | None
    cancel_at_period_end: bool
    grace_until: datetime | None
    seats: int


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    status: str
    amount: Decimal
    currency: str
    provider: str
    period_key: str | None
    due_at: datetime | None
    paid_at: datetime | None
    created_at: datetime


class BillingOverviewResponse(BaseModel):
    tenant_id: str
    subscription: SubscriptionResponse | None
    is_active: bool
    monthly_orders_limit: int
    reports_enabled: bool
    invoices: list[InvoiceResponse]


class CheckoutRequest(BaseModel):
    plan: Plan = Field(Plan.PRO, description="Plan to subscribe to")


class RedirectResponse(BaseModel):
    url: str


class PaymentRequestBody(BaseModel):
    month_key: str = Field(..., description="Month to pay, YYYY-MM")


class SetPlanRequest(BaseModel):
    plan: Plan


class CancelRequest(BaseModel):
    mode: CancelMode = Field(CancelMode.PERIOD_END, description="now or period_end")


class PayMonthRequest(BaseModel):
    year: int = Field(..., ge=2000, le=9999)
    month: int = Field(..., ge=1, le=12)
    amount: Decimal | None = Field(None, ge=0)


class PayYearRequest(BaseModel):
    year: int = Field(..., ge=2000, le=9999)
    from_month: int = Field(1, ge=1, le=12)


class SettleMonthRequest(BaseModel):
    year: int = Field(..., ge=2000, le=9999)
    month: int = Field(..., ge=1, le=12)


class SettleMonthResponse(BaseModel):
    subscription: SubscriptionResponse
    invoice: InvoiceResponse


class SweepResponse(BaseModel):
    ok: bool = True
    free_canceled: int
    paid_past_due: int


class WebhookData(BaseModel):
    tenant_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    provider_invoice_id: str | None = None
    period_end: datetime | None = None


class WebhookEvent(BaseModel):
    type: str
    provider: str | None = None
    data: WebhookData = Field(default_factory=WebhookData)


def _subscription(subscription: Subscription | None) -> SubscriptionResponse | None:
    return SubscriptionResponse.model_validate(subscription) if subscription else None


def _invoices(invoices: list[Invoice]) -> list[InvoiceResponse]:
    return [InvoiceResponse.model_validate(invoice) for invoice in invoices]


async def _require_tenant(session: AsyncSession, tenant_id: str) -> None:
    if await session.get(Tenant, tenant_id) is None:
        raise NotFound("Tenant not found", error_code="tenant_not_found")


def _stand_in_url(path: str, **params: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}{path}?{urlencode(params)}"


# ========================================
# Tenant endpoints
# ========================================


@billing_router.get("", response_model=BillingOverviewResponse)
async def get_billing(
    tenant_id: str = Depends(current_tenant),
    session: AsyncSession = Depends(get_async_session),
) -> BillingOverviewResponse:
    service = SubscriptionService(session)
    subscription = await service.get_subscription(tenant_id)
    limits = get_plan_limits(subscription.plan if subscription else None)
    return BillingOverviewResponse(
        tenant_id=tenant_id,
        subscription=_subscription(subscription),
        is_active=bool(
            subscription
            and is_subscription_active(subscription.status, subscription.grace_until, utcnow())
        ),
        monthly_orders_limit=limits.monthly_orders,
        reports_enabled=limits.reports,
        invoices=_invoices(await service.list_invoices(tenant_id)),
    )


@billing_router.post("/checkout", response_model=RedirectResponse)
async def create_checkout(
    payload: CheckoutRequest,
    auth: AdminAuthorization = Depends(tenant_admin),
    session: AsyncSession = Depends(get_async_session),
) -> RedirectResponse:
    """Hosted checkout stand-in: records the plan and returns where the browser goes next."""
    if not auth.tenant_id:
        raise TenantNotSelected()
    tenant_id = auth.tenant_id
    await SubscriptionService(session).request_plan(
        tenant_id, payload.plan, actor_id=auth.user_id
    )
    logger.info("billing.checkout.requested", tenant_id=tenant_id, plan=payload.plan.value)
    return RedirectResponse(
        url=_stand_in_url("/billing/mock-checkout", tenant=tenant_id, plan=payload.plan.value)
    )


@billing_router.post("/portal", response_model=RedirectResponse)
async def open_portal(auth: AdminAuthorization = Depends(tenant_admin)) -> RedirectResponse:
    """Customer portal stand-in."""
    return RedirectResponse(url=_stand_in_url("/billing/mock-portal", tenant=auth.tenant_id or ""))


@billing_router.post("/payment-request")
async def request_payment(
    payload: PaymentRequestBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> dict:
    """Tell the billing desk that this user wants to pay for a month."""
    try:
        year, month = parse_month_key(payload.month_key)
    except ValueError as e:
        raise BadRequest("month_key must be YYYY-MM", error_code="invalid_month") from e
    month_key = f"{year:04d}-{month:02d}"

    recipient = settings.billing.billing_alert_email or settings.email.from_address
    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    ip_address = request.headers.get("x-real-ip") or forwarded or None

    message = payment_request_email(
        recipient,
        month_key=month_key,
        user_id=principal.user_id,
        user_email=principal.email,
        tenant_id=principal.tenant_id,
        amount=settings.billing.monthly_price,
        requested_at=utcnow(),
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent"),
    )
    message_id = await send_email(message)
    logger.info(
        "billing.payment_request.sent",
        user_id=principal.user_id,
        month_key=month_key,
        message_id=message_id,
    )
    return {"ok": True, "message_id": message_id}


@billing_router.post("/webhook")
async def provider_webhook(
    event: WebhookEvent,
    session: AsyncSession = Depends(get_async_session),
    x_webhook_secret: str | None = Header(None),
) -> dict:
    expected = settings.billing.webhook_secret
    if expected and not secrets.compare_digest(x_webhook_secret or "", expected):
        raise Forbidden("Invalid webhook secret", error_code="invalid_webhook_secret")

    data = event.data.model_dump()
    if event.provider:
        data["provider"] = event.provider
    handled = await SubscriptionService(session).handle_webhook_event(
        event.type, event.data.tenant_id, data=data, raw=event.model_dump(mode="json")
    )
    return {"ok": True, "handled": handled}


# ========================================
# Super admin endpoints
# ========================================


@admin_billing_router.patch("/{tenant_id}/subscription", response_model=SubscriptionResponse)
async def set_tenant_plan(
    tenant_id: str,
    payload: SetPlanRequest,
    admin: Principal = Depends(super_admin),
    session: AsyncSession = Depends(get_async_session),
) -> SubscriptionResponse:
    await _require_tenant(session, tenant_id)
    subscription = await SubscriptionService(session).set_plan(
        tenant_id, payload.plan, actor_id=admin.user_id
    )
    return SubscriptionResponse.model_validate(subscription)


@admin_billing_router.post("/{tenant_id}/billing/checkout", response_model=SubscriptionResponse)
async def admin_checkout(
    tenant_id: str,
    payload: CheckoutRequest,
    admin: Principal = Depends(super_admin),
    session: AsyncSession = Depends(get_async_session),
) -> SubscriptionResponse:
    await _require_tenant(session, tenant_id)
    subscription = await SubscriptionService(session).checkout(
        tenant_id, payload.plan, actor_id=admin.user_id
    )
    return SubscriptionResponse.model_validate(subscription)


@admin_billing_router.post("/{tenant_id}/billing/cancel", response_model=SubscriptionResponse)
async def admin_cancel(
    tenant_id: str,
    payload: CancelRequest,
    admin: Principal = Depends(super_admin),
    session: AsyncSession = Depends(get_async_session),
) -> SubscriptionResponse:
    await _require_tenant(session, tenant_id)
    subscription = await SubscriptionService(session).cancel(
        tenant_id, payload.mode, actor_id=admin.user_id
    )
    return SubscriptionResponse.model_validate(subscription)


@admin_billing_router.post("/{tenant_id}/billing/resume", response_model=SubscriptionResponse)
async def admin_resume(
    tenant_id: str,
    admin: Principal = Depends(super_admin),
    session: AsyncSession = Depends(get_async_session),
) -> SubscriptionResponse:
    await _require_tenant(session, tenant_id)
    subscription = await SubscriptionService(session).resume(tenant_id, actor_id=admin.user_id)
    return SubscriptionResponse.model_validate(subscription)


@admin_billing_router.post("/{tenant_id}/billing/pay-month", response_model=InvoiceResponse)
async def admin_pay_month(
    tenant_id: str,
    payload: PayMonthRequest,
    admin: Principal = Depends(super_admin),
    session: AsyncSession = Depends(get_async_session),
) -> InvoiceResponse:
    await _require_tenant(session, tenant_id)
    invoice = await SubscriptionService(session).pay_month(
        tenant_id, payload.year, payload.month, payload.amount, actor_id=admin.user_id
    )
    return InvoiceResponse.model_validate(invoice)


@admin_billing_router.post("/{tenant_id}/billing/pay-year", response_model=list[InvoiceResponse])
async def admin_pay_year(
    tenant_id: str,
    payload: PayYearRequest,
    admin: Principal = Depends(super_admin),
    session: AsyncSession = Depends(get_async_session),
) -> list[InvoiceResponse]:
    await _require_tenant(session, tenant_id)
    invoices = await SubscriptionService(session).pay_year(
        tenant_id, payload.year, payload.from_month, actor_id=admin.user_id
    )
    return _invoices(invoices)


@admin_billing_router.patch("/{tenant_id}/billing/pay", response_model=SettleMonthResponse)
async def admin_settle_month(
    tenant_id: str,
    payload: SettleMonthRequest,
    admin: Principal = Depends(super_admin),
    session: AsyncSession = Depends(get_async_session),
) -> SettleMonthResponse:
    """Charge the monthly fee and activate the month; 409 when it is already paid."""
    await _require_tenant(session, tenant_id)
    subscription, invoice = await SubscriptionService(session).settle_month(
        tenant_id, payload.year, payload.month, actor_id=admin.user_id
    )
    return SettleMonthResponse(
        subscription=SubscriptionResponse.model_validate(subscription),
        invoice=InvoiceResponse.model_validate(invoice),
    )


# ========================================
# Scheduler trigger
# ========================================


@cron_router.get("/subscription-sweeper", response_model=SweepResponse)
async def run_subscription_sweeper(
    secret: str | None = Query(None),
    session: AsyncSession = Depends(get_async_session),
) -> SweepResponse:
    if not secret or not secrets.compare_digest(secret, settings.billing.cron_secret):
        raise Forbidden("Invalid cron secret", error_code="forbidden")
    result = await SubscriptionService(session).sweep()
    return SweepResponse(**result.to_dict())


__all__ = [
    "billing_router",
    "admin_billing_router",
    "cron_router",
    "SubscriptionResponse",
    "InvoiceResponse",
]
