"""
Tenant models: workspaces, memberships and branches.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from perdexa.platform.db import Base, IdMixin, TimestampMixin, UTCDateTime, utcnow


class TenantRole(str, Enum):
    """Role of a user inside one tenant."""

    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


ADMIN_TENANT_ROLES = frozenset({TenantRole.OWNER.value, TenantRole.ADMIN.value})


class Tenant(IdMixin, TimestampMixin, Base):
    """An isolated customer workspace. Never deleted automatically."""

    __tablename__ = "tenants"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_by_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, name={self.name})>"


class Membership(IdMixin, Base):
    """Binds a user to a tenant with a tenant-scoped role."""

    __tablename__ = "memberships"

    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=TenantRole.MEMBER.value)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "tenant_id", name="uq_memberships_user_tenant"),
        Index("ix_memberships_tenant", "tenant_id"),
    )

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_TENANT_ROLES


class Branch(IdMixin, TimestampMixin, Base):
    """A shop location of a tenant; one default branch is created with the tenant."""

    __tablename__ = "branches"

    tenant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
