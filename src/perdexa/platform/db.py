"""
SQLAlchemy 2.0 Database Configuration

Async engine, declarative base, shared mixins and session helpers.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote_plus
from uuid import uuid4

from sqlalchemy import DateTime, String
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from perdexa.platform.settings import settings

# ==========================================
# Database URLs from settings
# ==========================================


def get_async_database_url() -> str:
    """Get the async database URL from settings."""
    if settings.database.url:
        url = settings.database.url
    elif settings.is_development and not settings.database.password:
        # In development, use SQLite if PostgreSQL is not configured
        url = "sqlite:///./perdexa_dev.sqlite"
    else:
        username = quote_plus(settings.database.username)
        password = quote_plus(settings.database.password) if settings.database.password else ""
        url = (
            f"postgresql://{username}:{password}"
            f"@{settings.database.host}:{settings.database.port}/{settings.database.database}"
        )

    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


# ==========================================
# SQLAlchemy 2.0 Declarative Base
# ==========================================


class Base(DeclarativeBase):
    """Base class for all database models using SQLAlchemy 2.0 declarative mapping."""

    pass


def utcnow() -> datetime:
    """Timezone-aware current time; every timestamp in the store is UTC."""
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


class UTCDateTime(TypeDecorator):
    """DateTime that always round-trips as an aware UTC value.

    SQLite drops tzinfo on the way back, PostgreSQL keeps it; both come out
    aware so comparisons against ``utcnow()`` never mix naive and aware.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# ==========================================
# Common Mixins
# ==========================================


class IdMixin:
    """String UUID primary key."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)


class TimestampMixin:
    """Adds created_at and updated_at timestamps to models."""

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


# ==========================================
# Engine and Session Management
# ==========================================

_async_engine: AsyncEngine | None = None
_async_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_async_engine() -> AsyncEngine:
    """Get or create the asynchronous engine."""
    global _async_engine
    if _async_engine is None:
        url = get_async_database_url()
        options: dict[str, Any] = {"echo": settings.database.echo}
        if not url.startswith("sqlite"):
            options.update(
                pool_size=settings.database.pool_size,
                max_overflow=settings.database.max_overflow,
                pool_timeout=settings.database.pool_timeout,
                pool_recycle=settings.database.pool_recycle,
                pool_pre_ping=settings.database.pool_pre_ping,
            )
        _async_engine = create_async_engine(url, **options)
    return _async_engine


def AsyncSessionLocal() -> AsyncSession:
    """Open a new session from the configured session factory."""
    return get_session_factory()()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the application engine (can be overridden for testing)."""
    global _async_session_maker
    if _async_session_maker is None:
        _async_session_maker = async_sessionmaker(
            bind=get_async_engine(),
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )
    return _async_session_maker


def set_session_factory(factory: async_sessionmaker[AsyncSession] | None) -> None:
    """Replace the session factory; tests point it at an in-memory database."""
    global _async_session_maker
    _async_session_maker = factory


# ==========================================
# Session Context Managers
# ==========================================


@asynccontextmanager
async def get_async_db() -> AsyncIterator[AsyncSession]:
    """Get an asynchronous database session that commits on success."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_async_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency for getting an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# ==========================================
# Database Initialization
# ==========================================


def import_models() -> None:
    """Import every model module so the metadata is complete."""
    from perdexa.platform.auth import models as _auth_models  # noqa: F401
    from perdexa.platform.billing import models as _billing_models  # noqa: F401
    from perdexa.platform.tenant import models as _tenant_models  # noqa: F401


async def create_all_tables_async(engine: AsyncEngine | None = None) -> None:
    """Create all tables in the database asynchronously."""
    import_models()
    engine = engine or get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_all_tables_async(engine: AsyncEngine | None = None) -> None:
    """Drop all tables from the database asynchronously. Use with caution!"""
    import_models()
    engine = engine or get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def init_db() -> None:
    """Initialize the database (create tables if needed)."""
    await create_all_tables_async()


# ==========================================
# Exports
# ==========================================

__all__ = [
    "Base",
    "IdMixin",
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
    "new_id",
    "get_async_engine",
    "get_session_factory",
    "set_session_factory",
    "AsyncSessionLocal",
    "get_async_db",
    "get_async_session",
    "create_all_tables_async",
    "drop_all_tables_async",
    "init_db",
]
