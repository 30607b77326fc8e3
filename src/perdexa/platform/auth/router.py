"""
Authentication router for FastAPI.

Registration, sign-in, tenant selection, password management and the
impersonation exchange/revert endpoints.
"""

import structlog
from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from perdexa.platform.auth import service as accounts
from perdexa.platform.auth.core import ACCESS_TOKEN_COOKIE, Principal, get_current_principal
from perdexa.platform.auth.impersonation import (
    exchange_impersonation_token,
    revert_impersonation,
)
from perdexa.platform.auth.models import User
from perdexa.platform.auth.password_reset import request_password_reset, reset_password
from perdexa.platform.db import get_async_session
from perdexa.platform.settings import settings

logger = structlog.get_logger(__name__)

auth_router = APIRouter()

# ========================================
# Cookie management helpers
# ========================================


def set_auth_cookie(response: Response, access_token: str) -> None:
    """Set the HttpOnly access token cookie used by browser clients."""
    response.set_cookie(
        key=ACCESS_TOKEN_COOKIE,
        value=access_token,
        max_age=settings.jwt.access_token_expire_minutes * 60,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
    )


def clear_auth_cookie(response: Response) -> None:
    response.delete_cookie(key=ACCESS_TOKEN_COOKIE, path="/")


# ========================================
# Request/Response Models
# ========================================


class RegisterRequest(BaseModel):
    """Registration request model."""

    name: str = Field(..., min_length=1, max_length=255, description="Display name")
    email: EmailStr = Field(..., description="Email address")
    password: str = Field(..., min_length=6, description="Password")


class LoginRequest(BaseModel):
    """Login request model."""

    email: EmailStr = Field(..., description="Email address")
    password: str = Field(..., description="Password")


class SelectTenantRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1, description="Tenant to switch to")


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., description="Current password")
    new_password: str = Field(..., min_length=6, description="New password")


class PasswordResetRequest(BaseModel):
    """Password reset request model."""

    email: EmailStr = Field(..., description="Email address")


class PasswordResetConfirm(BaseModel):
    """Password reset confirmation model."""

    email: EmailStr = Field(..., description="Email address")
    token: str = Field(..., min_length=1, description="Reset token")
    new_password: str = Field(..., min_length=6, description="New password")


class ImpersonationExchangeRequest(BaseModel):
    token: str = Field(..., min_length=1, description="Impersonation token")


class TokenResponse(BaseModel):
    """Token response model."""

    access_token: str = Field(..., description="Access token")
    token_type: str = Field(default="bearer", description="Token type")
    expires_in: int = Field(..., description="Token expiry in seconds")
    user_id: str = Field(..., description="User the token acts as")
    tenant_id: str | None = Field(None, description="Selected tenant")
    tenant_role: str | None = Field(None, description="Role inside the selected tenant")
    impersonator_id: str | None = Field(None, description="Impersonating administrator")


class MeResponse(BaseModel):
    user_id: str
    email: str | None
    name: str | None
    role: str
    tenant_id: str | None
    tenant_role: str | None
    impersonator_id: str | None
    must_change_password: bool


def _token_response(response: Response, token: str, principal: Principal) -> TokenResponse:
    set_auth_cookie(response, token)
    return TokenResponse(
        access_token=token,
        expires_in=settings.jwt.access_token_expire_minutes * 60,
        user_id=principal.user_id,
        tenant_id=principal.tenant_id,
        tenant_role=principal.tenant_role,
        impersonator_id=principal.impersonator_id,
    )


# ========================================
# Endpoints
# ========================================


@auth_router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(
    payload: RegisterRequest,
    response: Response,
    session: AsyncSession = Depends(get_async_session),
) -> TokenResponse:
    """Create an account together with its own workspace."""
    user, _ = await accounts.register(session, payload.name, payload.email, payload.password)
    token, principal = await accounts.token_for_user(session, user)
    return _token_response(response, token, principal)


@auth_router.post("/login", response_model=TokenResponse)
async def login(
    payload: LoginRequest,
    response: Response,
    session: AsyncSession = Depends(get_async_session),
) -> TokenResponse:
    user = await accounts.authenticate(session, payload.email, payload.password)
    token, principal = await accounts.token_for_user(session, user)
    return _token_response(response, token, principal)


@auth_router.post("/logout")
async def logout(response: Response) -> dict:
    clear_auth_cookie(response)
    return {"ok": True}


@auth_router.get("/me", response_model=MeResponse)
async def me(
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_async_session),
) -> MeResponse:
    user = await session.get(User, principal.user_id)
    return MeResponse(
        user_id=principal.user_id,
        email=principal.email,
        name=principal.name,
        role=principal.role,
        tenant_id=principal.tenant_id,
        tenant_role=principal.tenant_role,
        impersonator_id=principal.impersonator_id,
        must_change_password=bool(user and user.must_change_password),
    )


@auth_router.post("/select-tenant", response_model=TokenResponse)
async def select_tenant(
    payload: SelectTenantRequest,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_async_session),
) -> TokenResponse:
    token, selected = await accounts.select_tenant(session, principal, payload.tenant_id)
    return _token_response(response, token, selected)


@auth_router.post("/password/change")
async def change_password(
    payload: ChangePasswordRequest,
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_async_session),
) -> dict:
    await accounts.change_password(
        session, principal, payload.current_password, payload.new_password
    )
    return {"ok": True}


@auth_router.post("/password-reset")
async def password_reset(
    payload: PasswordResetRequest,
    session: AsyncSession = Depends(get_async_session),
) -> dict:
    """Unknown addresses get the same answer as registered ones."""
    await request_password_reset(session, payload.email)
    return {"ok": True, "message": "If the email exists, a password reset link has been sent."}


@auth_router.post("/password-reset/confirm")
async def password_reset_confirm(
    payload: PasswordResetConfirm,
    session: AsyncSession = Depends(get_async_session),
) -> dict:
    await reset_password(session, payload.email, payload.token, payload.new_password)
    return {"ok": True}


@auth_router.post("/impersonation/exchange", response_model=TokenResponse)
async def impersonation_exchange(
    payload: ImpersonationExchangeRequest,
    response: Response,
    session: AsyncSession = Depends(get_async_session),
) -> TokenResponse:
    """Trade a single-use impersonation token for a session acting as the target."""
    token, principal = await exchange_impersonation_token(session, payload.token)
    return _token_response(response, token, principal)


@auth_router.post("/impersonation/revert", response_model=TokenResponse)
async def impersonation_revert(
    response: Response,
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_async_session),
) -> TokenResponse:
    token, admin = await revert_impersonation(session, principal)
    return _token_response(response, token, admin)


__all__ = ["auth_router", "TokenResponse"]
