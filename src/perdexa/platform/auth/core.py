"""
Core authentication: principal model, JWT service, password hashing and
the FastAPI dependencies that turn a bearer token into a ``Principal``.
"""

import secrets
import string
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, cast

import structlog
from authlib.jose import JoseError, JsonWebToken
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from perdexa.platform.auth.models import User, UserRole
from perdexa.platform.db import get_async_session
from perdexa.platform.exceptions import Unauthenticated
from perdexa.platform.settings import settings

logger = structlog.get_logger(__name__)

# ============================================
# Configuration
# ============================================

pwd_context = CryptContext(
    schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.auth.bcrypt_rounds
)

bearer_scheme = HTTPBearer(auto_error=False)

ACCESS_TOKEN_COOKIE = "access_token"


class TokenType(str, Enum):
    """Token types."""

    ACCESS = "access"
    IMPERSONATE = "impersonate"


# ============================================
# Models
# ============================================


class Principal(BaseModel):
    """The authenticated caller of a request."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., description="User identifier")
    email: str | None = Field(None, description="User email")
    name: str | None = Field(None, description="Display name")
    role: str = Field(UserRole.USER.value, description="Global role")
    tenant_id: str | None = Field(None, description="Selected tenant")
    tenant_role: str | None = Field(None, description="Role inside the selected tenant")
    impersonator_id: str | None = Field(
        None, description="Administrator acting as this user, if impersonating"
    )

    @property
    def is_superadmin(self) -> bool:
        return self.role == UserRole.SUPERADMIN.value

    @property
    def is_impersonating(self) -> bool:
        return self.impersonator_id is not None


# ============================================
# JWT Service
# ============================================


class JWTService:
    """JWT service using Authlib, restricted to the configured algorithm."""

    def __init__(self, secret: str | None = None, algorithm: str | None = None):
        self.secret = secret or settings.jwt.secret_key
        self.algorithm = algorithm or settings.jwt.algorithm
        self.header = {"alg": self.algorithm}
        self._jwt = JsonWebToken([self.algorithm])

    def create_access_token(
        self,
        subject: str,
        additional_claims: dict[str, Any] | None = None,
        expire_minutes: int | None = None,
    ) -> str:
        """Create access token."""
        data: dict[str, Any] = {"sub": subject, "type": TokenType.ACCESS.value}
        if additional_claims:
            data.update(additional_claims)

        expires_delta = timedelta(
            minutes=expire_minutes or settings.jwt.access_token_expire_minutes
        )
        return self.create_token(data, expires_delta)

    def create_token(
        self, data: dict[str, Any], expires_delta: timedelta, now: datetime | None = None
    ) -> str:
        """Sign ``data`` adding exp/iat/iss and a fresh jti unless one is given."""
        to_encode = {k: v for k, v in data.items() if v is not None}
        issued_at = now or datetime.now(UTC)

        to_encode.update(
            {
                "exp": issued_at + expires_delta,
                "iat": issued_at,
                "iss": settings.jwt.issuer,
            }
        )
        to_encode.setdefault("jti", secrets.token_urlsafe(16))

        token = self._jwt.encode(self.header, to_encode, self.secret)
        return token.decode("utf-8") if isinstance(token, bytes) else token

    def verify_token(self, token: str, expected_type: TokenType | None = None) -> dict[str, Any]:
        """Verify signature, expiry and (optionally) the token type.

        Raises:
            Unauthenticated: If the token is invalid, expired or of the wrong type
        """
        try:
            claims_raw = self._jwt.decode(token, self.secret)
            claims_raw.validate()
            claims = cast(dict[str, Any], dict(claims_raw))
        except (JoseError, ValueError) as e:
            raise Unauthenticated(f"Invalid token: {e}", error_code="invalid_token") from e

        if expected_type and claims.get("type") != expected_type.value:
            raise Unauthenticated(
                f"Invalid token type. Expected {expected_type.value}, got {claims.get('type')}",
                error_code="invalid_token",
            )
        return claims


jwt_service = JWTService()


def issue_access_token(
    user: User,
    tenant_id: str | None = None,
    tenant_role: str | None = None,
    impersonator_id: str | None = None,
) -> str:
    """Access token for ``user`` with the selected tenant baked in."""
    return jwt_service.create_access_token(
        user.id,
        {
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "tenant_id": tenant_id,
            "tenant_role": tenant_role,
            "impersonator_id": impersonator_id,
        },
    )


# ============================================
# Passwords
# ============================================


def hash_password(password: str) -> str:
    """Hash password."""
    return str(pwd_context.hash(password))


def verify_password(plain_password: str, hashed_password: str | None) -> bool:
    """Verify password."""
    if not hashed_password:
        return False
    return bool(pwd_context.verify(plain_password, hashed_password))


def generate_initial_password(length: int | None = None) -> str:
    """Random password handed to newly created members."""
    alphabet = string.ascii_letters + string.digits
    size = length or settings.auth.initial_password_length
    return "".join(secrets.choice(alphabet) for _ in range(size))


# ============================================
# FastAPI dependencies
# ============================================


def _extract_token(
    request: Request, credentials: HTTPAuthorizationCredentials | None
) -> str | None:
    if credentials and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(ACCESS_TOKEN_COOKIE)


async def principal_from_claims(session: AsyncSession, claims: dict[str, Any]) -> Principal:
    """Build a principal from verified claims, re-reading role and membership.

    The user must still exist and be active. The tenant selection is kept
    only while the membership still exists (super admins may hold any tenant).
    """
    from perdexa.platform.tenant.models import Membership

    user = await session.get(User, claims.get("sub"))
    if user is None or not user.is_active:
        raise Unauthenticated("User not found or inactive")

    tenant_id = claims.get("tenant_id")
    tenant_role = None
    if tenant_id:
        membership = await session.scalar(
            select(Membership).where(
                Membership.user_id == user.id, Membership.tenant_id == tenant_id
            )
        )
        if membership is not None:
            tenant_role = membership.role
        elif not user.is_superadmin:
            tenant_id = None

    return Principal(
        user_id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        tenant_id=tenant_id,
        tenant_role=tenant_role,
        impersonator_id=claims.get("impersonator_id"),
    )


async def get_current_principal(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_async_session),
) -> Principal:
    """Authenticated principal from the bearer header or the access_token cookie."""
    token = _extract_token(request, credentials)
    if not token:
        raise Unauthenticated()
    claims = jwt_service.verify_token(token, expected_type=TokenType.ACCESS)
    return await principal_from_claims(session, claims)


__all__ = [
    "Principal",
    "TokenType",
    "JWTService",
    "jwt_service",
    "issue_access_token",
    "pwd_context",
    "hash_password",
    "verify_password",
    "generate_initial_password",
    "principal_from_claims",
    "get_current_principal",
]
