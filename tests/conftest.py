"""
Global pytest configuration and fixtures for the Perdexa platform tests.

Every test gets its own in-memory SQLite database; HTTP tests drive the real
application through ``httpx.AsyncClient`` with the session dependency
pointed at that database.
"""

import os
from datetime import datetime, timedelta
from unittest.mock import Mock

# Configure settings before any perdexa module is imported
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT__SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("AUTH__BCRYPT_ROUNDS", "4")
os.environ.setdefault("EMAIL__ENABLED", "false")
os.environ.setdefault("BILLING__CRON_SECRET", "test-cron-secret")
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "text")
os.environ.setdefault("OBSERVABILITY__LOG_LEVEL", "WARNING")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from perdexa.platform.auth.core import Principal, hash_password, issue_access_token
from perdexa.platform.auth.models import User, UserRole
from perdexa.platform.billing.models import Plan, Subscription, SubscriptionStatus
from perdexa.platform.communications.email_service import set_email_service
from perdexa.platform.db import (
    create_all_tables_async,
    drop_all_tables_async,
    get_async_session,
    set_session_factory,
    utcnow,
)
from perdexa.platform.settings import settings
from perdexa.platform.tenant.models import Membership, Tenant, TenantRole
from perdexa.platform.tenant.resolver import provision_tenant

DEFAULT_PASSWORD = "secret123"


# ============================================
# Database
# ============================================


@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database with every table created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    await create_all_tables_async(engine)

    yield engine

    await drop_all_tables_async(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    """Session factory bound to the test engine, installed as the app default."""
    factory = async_sessionmaker(
        db_engine, class_=AsyncSession, autoflush=False, expire_on_commit=False
    )
    set_session_factory(factory)
    yield factory
    set_session_factory(None)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ============================================
# Email
# ============================================


@pytest.fixture
def email_outbox(monkeypatch):
    """Enable email and capture every message instead of talking to SMTP."""
    sent = []

    def _send(message):
        sent.append(message)
        return f"<test-{len(sent)}@perdexa.test>"

    service = Mock()
    service.send.side_effect = _send
    monkeypatch.setattr(settings.email, "enabled", True)
    set_email_service(service)
    yield sent
    set_email_service(None)


# ============================================
# Factories
# ============================================


@pytest.fixture
def make_user(db_session):
    async def _make_user(
        email: str | None = None,
        name: str | None = "Test User",
        role: UserRole = UserRole.USER,
        password: str = DEFAULT_PASSWORD,
        is_active: bool = True,
        must_change_password: bool = False,
    ) -> User:
        user = User(
            email=email or f"user-{os.urandom(4).hex()}@example.com",
            name=name,
            role=role.value,
            password_hash=hash_password(password),
            is_active=is_active,
            must_change_password=must_change_password,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make_user


@pytest.fixture
def make_tenant(db_session):
    """Tenant owned by ``owner`` with its OWNER membership and default branch."""

    async def _make_tenant(owner: User, name: str | None = None) -> Tenant:
        tenant, _, _ = await provision_tenant(db_session, owner, name)
        await db_session.commit()
        return tenant

    return _make_tenant


@pytest.fixture
def add_membership(db_session):
    async def _add_membership(
        user: User,
        tenant: Tenant,
        role: TenantRole = TenantRole.MEMBER,
        created_at: datetime | None = None,
    ) -> Membership:
        membership = Membership(
            user_id=user.id,
            tenant_id=tenant.id,
            role=role.value,
            created_at=created_at or utcnow(),
        )
        db_session.add(membership)
        await db_session.commit()
        return membership

    return _add_membership


@pytest.fixture
def make_subscription(db_session):
    async def _make_subscription(
        tenant: Tenant,
        plan: Plan = Plan.FREE,
        status: SubscriptionStatus = SubscriptionStatus.TRIALING,
        trial_ends_at: datetime | None = None,
        current_period_end: datetime | None = None,
        grace_until: datetime | None = None,
    ) -> Subscription:
        now = utcnow()
        if plan is Plan.FREE and trial_ends_at is None:
            trial_ends_at = now + timedelta(days=14)
        subscription = Subscription(
            tenant_id=tenant.id,
            plan=plan.value,
            status=status.value,
            current_period_start=now,
            current_period_end=current_period_end or trial_ends_at or now + timedelta(days=30),
            trial_ends_at=trial_ends_at,
            grace_until=grace_until,
        )
        db_session.add(subscription)
        await db_session.commit()
        return subscription

    return _make_subscription


def principal_for(
    user: User,
    tenant_id: str | None = None,
    tenant_role: TenantRole | str | None = None,
    impersonator_id: str | None = None,
) -> Principal:
    role_value = tenant_role.value if isinstance(tenant_role, TenantRole) else tenant_role
    return Principal(
        user_id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        tenant_id=tenant_id,
        tenant_role=role_value,
        impersonator_id=impersonator_id,
    )


def auth_headers(
    user: User, tenant_id: str | None = None, tenant_role: TenantRole | str | None = None
) -> dict[str, str]:
    role_value = tenant_role.value if isinstance(tenant_role, TenantRole) else tenant_role
    token = issue_access_token(user, tenant_id=tenant_id, tenant_role=role_value)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def principal():
    return principal_for


@pytest.fixture
def headers_for():
    return auth_headers


# ============================================
# HTTP
# ============================================


@pytest_asyncio.fixture
async def client(db_session):
    """Async HTTP client against the full application."""
    from perdexa.platform.main import create_application

    app = create_application()

    async def override_get_session():
        yield db_session

    app.dependency_overrides[get_async_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client

    app.dependency_overrides.clear()
