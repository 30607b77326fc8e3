"""
Platform administration router.

Impersonation issuance plus super admin user management. Billing writes on a
tenant live in ``billing.router.admin_billing_router``.
"""

from datetime import datetime
from enum import Enum

import structlog
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from perdexa.platform.admin.service import TenantBilling, UserAdminService
from perdexa.platform.auth.core import Principal, get_current_principal
from perdexa.platform.auth.dependencies import super_admin
from perdexa.platform.auth.impersonation import ImpersonationScope, issue_impersonation_token
from perdexa.platform.auth.models import User
from perdexa.platform.billing.models import Plan, SubscriptionStatus
from perdexa.platform.billing.router import InvoiceResponse, SubscriptionResponse
from perdexa.platform.billing.service import SubscriptionService
from perdexa.platform.db import get_async_session
from perdexa.platform.exceptions import NotFound
from perdexa.platform.settings import settings
from perdexa.platform.tenant.models import Tenant

logger = structlog.get_logger(__name__)

admin_router = APIRouter()


# ========================================
# Models
# ========================================


class ImpersonateRequest(BaseModel):
    target_user_id: str = Field(..., min_length=1, description="User to act as")
    scope: ImpersonationScope = Field(ImpersonationScope.TENANT, description="tenant or global")


class ImpersonateResponse(BaseModel):
    token: str
    expires_in: int
    target_user_id: str
    scope: str


class UserStatusResponse(BaseModel):
    id: str
    email: str
    name: str | None
    role: str
    active: bool
    must_change_password: bool = Field(..., alias="mustChangePassword")

    model_config = ConfigDict(populate_by_name=True)


class UserStatusUpdate(BaseModel):
    active: bool | None = None
    must_change_password: bool | None = Field(None, alias="mustChangePassword")

    model_config = ConfigDict(populate_by_name=True)


class TenantBillingResponse(BaseModel):
    tenant_id: str
    tenant_name: str
    role: str | None
    owned: bool
    subscription: SubscriptionResponse | None
    invoices: list[InvoiceResponse]


class UserBillingResponse(BaseModel):
    user: UserStatusResponse
    tenants: list[TenantBillingResponse]


class BillingOp(str, Enum):
    TOGGLE_ACTIVE = "toggleActive"
    SET_SUBSCRIPTION = "setSubscription"


class UserBillingUpdate(BaseModel):
    op: BillingOp
    tenant_id: str | None = Field(None, alias="tenantId")
    plan: Plan | None = None
    status: SubscriptionStatus | None = None
    trial_days: int | None = Field(None, ge=0, alias="trialDays")
    current_period_end: datetime | None = Field(None, alias="currentPeriodEnd")

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def _subscription_fields(self) -> "UserBillingUpdate":
        if self.op is BillingOp.SET_SUBSCRIPTION and (not self.tenant_id or self.plan is None):
            raise ValueError("setSubscription requires tenantId and plan")
        return self


def _user_status(user: User) -> UserStatusResponse:
    return UserStatusResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        active=user.is_active,
        must_change_password=user.must_change_password,
    )


def _tenant_billing(entry: TenantBilling) -> TenantBillingResponse:
    return TenantBillingResponse(
        tenant_id=entry.tenant.id,
        tenant_name=entry.tenant.name,
        role=entry.role,
        owned=entry.owned,
        subscription=(
            SubscriptionResponse.model_validate(entry.subscription) if entry.subscription else None
        ),
        invoices=[InvoiceResponse.model_validate(invoice) for invoice in entry.invoices],
    )


# ========================================
# Impersonation
# ========================================


@admin_router.post(
    "/impersonate", response_model=ImpersonateResponse, status_code=status.HTTP_201_CREATED
)
async def impersonate(
    payload: ImpersonateRequest,
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_async_session),
) -> ImpersonateResponse:
    """Issue a short-lived token; exchange it at ``/auth/impersonation/exchange``."""
    token = await issue_impersonation_token(
        session, principal, payload.target_user_id, payload.scope.value
    )
    return ImpersonateResponse(
        token=token,
        expires_in=settings.jwt.impersonation_token_expire_minutes * 60,
        target_user_id=payload.target_user_id,
        scope=payload.scope.value,
    )


# ========================================
# Users
# ========================================


@admin_router.get("/users/{user_id}/status", response_model=UserStatusResponse)
async def get_user_status(
    user_id: str,
    admin: Principal = Depends(super_admin),
    session: AsyncSession = Depends(get_async_session),
) -> UserStatusResponse:
    return _user_status(await UserAdminService(session).get_user(user_id))


@admin_router.patch("/users/{user_id}/status", response_model=UserStatusResponse)
async def update_user_status(
    user_id: str,
    payload: UserStatusUpdate,
    admin: Principal = Depends(super_admin),
    session: AsyncSession = Depends(get_async_session),
) -> UserStatusResponse:
    user = await UserAdminService(session).update_status(
        admin.user_id,
        user_id,
        active=payload.active,
        must_change_password=payload.must_change_password,
    )
    return _user_status(user)


@admin_router.delete("/users/{user_id}")
async def delete_user(
    user_id: str,
    admin: Principal = Depends(super_admin),
    session: AsyncSession = Depends(get_async_session),
) -> dict:
    await UserAdminService(session).delete_user(admin.user_id, user_id)
    return {"ok": True}


@admin_router.get("/users/{user_id}/billing", response_model=UserBillingResponse)
async def get_user_billing(
    user_id: str,
    admin: Principal = Depends(super_admin),
    session: AsyncSession = Depends(get_async_session),
) -> UserBillingResponse:
    user, overview = await UserAdminService(session).billing_overview(user_id)
    return UserBillingResponse(
        user=_user_status(user), tenants=[_tenant_billing(entry) for entry in overview]
    )


@admin_router.patch("/users/{user_id}/billing", response_model=UserBillingResponse)
async def update_user_billing(
    user_id: str,
    payload: UserBillingUpdate,
    admin: Principal = Depends(super_admin),
    session: AsyncSession = Depends(get_async_session),
) -> UserBillingResponse:
    """``toggleActive`` flips the account flag; ``setSubscription`` rewrites a tenant's plan."""
    service = UserAdminService(session)
    user = await service.get_user(user_id)

    if payload.op is BillingOp.TOGGLE_ACTIVE:
        await service.update_status(admin.user_id, user_id, active=not user.is_active)
    else:
        if await session.get(Tenant, payload.tenant_id) is None:
            raise NotFound("Tenant not found", error_code="tenant_not_found")
        await SubscriptionService(session).set_subscription(
            payload.tenant_id,
            payload.plan,
            status=payload.status,
            trial_days=payload.trial_days,
            current_period_end=payload.current_period_end,
            actor_id=admin.user_id,
        )
        logger.info("admin.subscription_set", user_id=user_id, tenant_id=payload.tenant_id)

    user, overview = await service.billing_overview(user_id)
    return UserBillingResponse(
        user=_user_status(user), tenants=[_tenant_billing(entry) for entry in overview]
    )


__all__ = ["admin_router"]
