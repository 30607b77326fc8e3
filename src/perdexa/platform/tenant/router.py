"""
Tenant API router: current workspace, plan limits and member administration.
"""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from perdexa.platform.auth.dependencies import active_tenant, current_tenant, tenant_admin
from perdexa.platform.auth.guards import AdminAuthorization, GlobalAdmin
from perdexa.platform.billing.plans import get_plan_limits
from perdexa.platform.billing.service import SubscriptionService
from perdexa.platform.db import get_async_session
from perdexa.platform.exceptions import NotFound
from perdexa.platform.tenant.models import Tenant, TenantRole
from perdexa.platform.tenant.service import MembershipService

logger = structlog.get_logger(__name__)

tenant_router = APIRouter()


# ========================================
# Models
# ========================================


class TenantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    created_by_id: str | None
    created_at: datetime


class PlanLimitsResponse(BaseModel):
    tenant_id: str
    plan: str
    monthly_orders: int
    reports: bool


class MemberResponse(BaseModel):
    membership_id: str
    user_id: str
    email: str
    name: str | None
    username: str | None
    role: str
    is_active: bool
    must_change_password: bool
    joined_at: datetime


class AddMemberRequest(BaseModel):
    email: EmailStr = Field(..., description="Email of the user to add")
    name: str | None = Field(None, max_length=255, description="Display name for new users")
    role: TenantRole = Field(TenantRole.MEMBER, description="Role inside the tenant")


class AddMemberResponse(MemberResponse):
    initial_password: str | None = Field(
        None, description="Generated password, only when a new account was created"
    )


class RemoveMembershipResponse(BaseModel):
    ok: bool = True
    membership_id: str
    user_id: str
    user_deactivated: bool


# ========================================
# Endpoints
# ========================================


@tenant_router.get("/current", response_model=TenantResponse)
async def get_current_tenant(
    tenant_id: str = Depends(current_tenant),
    session: AsyncSession = Depends(get_async_session),
) -> TenantResponse:
    tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFound("Tenant not found", error_code="tenant_not_found")
    return TenantResponse.model_validate(tenant)


@tenant_router.get("/limits", response_model=PlanLimitsResponse)
async def get_limits(
    tenant_id: str = Depends(active_tenant),
    session: AsyncSession = Depends(get_async_session),
) -> PlanLimitsResponse:
    """Plan limits of an active tenant; gated tenants get 402."""
    subscription = await SubscriptionService(session).get_subscription(tenant_id)
    plan = subscription.plan if subscription else "FREE"
    limits = get_plan_limits(plan)
    return PlanLimitsResponse(
        tenant_id=tenant_id,
        plan=plan,
        monthly_orders=limits.monthly_orders,
        reports=limits.reports,
    )


@tenant_router.get("/members", response_model=list[MemberResponse])
async def list_members(
    auth: AdminAuthorization = Depends(tenant_admin),
    session: AsyncSession = Depends(get_async_session),
) -> list[MemberResponse]:
    service = MembershipService(session)
    members = await service.list_members(service.target_tenant(auth))
    return [
        MemberResponse(
            membership_id=membership.id,
            user_id=user.id,
            email=user.email,
            name=user.name,
            username=user.username,
            role=membership.role,
            is_active=user.is_active,
            must_change_password=user.must_change_password,
            joined_at=membership.created_at,
        )
        for membership, user in members
    ]


@tenant_router.post(
    "/members", response_model=AddMemberResponse, status_code=status.HTTP_201_CREATED
)
async def add_member(
    payload: AddMemberRequest,
    auth: AdminAuthorization = Depends(tenant_admin),
    session: AsyncSession = Depends(get_async_session),
) -> AddMemberResponse:
    added = await MembershipService(session).add_member(
        auth, payload.email, name=payload.name, role=payload.role
    )
    logger.info(
        "tenant.member_added",
        tenant_id=added.membership.tenant_id,
        user_id=added.user.id,
        by_super_admin=isinstance(auth, GlobalAdmin),
    )
    return AddMemberResponse(
        membership_id=added.membership.id,
        user_id=added.user.id,
        email=added.user.email,
        name=added.user.name,
        username=added.user.username,
        role=added.membership.role,
        is_active=added.user.is_active,
        must_change_password=added.user.must_change_password,
        joined_at=added.membership.created_at,
        initial_password=added.initial_password,
    )


@tenant_router.delete("/memberships/{membership_id}", response_model=RemoveMembershipResponse)
async def remove_membership(
    membership_id: str,
    auth: AdminAuthorization = Depends(tenant_admin),
    session: AsyncSession = Depends(get_async_session),
) -> RemoveMembershipResponse:
    removed = await MembershipService(session).remove_membership(auth, membership_id)
    return RemoveMembershipResponse(
        membership_id=removed.membership_id,
        user_id=removed.user_id,
        user_deactivated=removed.user_deactivated,
    )


__all__ = ["tenant_router"]
