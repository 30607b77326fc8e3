"""
Billing models: one subscription per tenant and its invoices.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from perdexa.platform.db import Base, IdMixin, TimestampMixin, UTCDateTime, utcnow


class Plan(str, Enum):
    FREE = "FREE"
    PRO = "PRO"
    BUSINESS = "BUSINESS"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class InvoiceStatus(str, Enum):
    OPEN = "open"
    PAID = "paid"
    VOID = "void"


class Subscription(IdMixin, TimestampMixin, Base):
    """Plan and lifecycle state of a tenant. At most one row per tenant."""

    __tablename__ = "subscriptions"

    tenant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    plan: Mapped[str] = mapped_column(String(20), nullable=False, default=Plan.FREE.value)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.TRIALING.value
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="manual")

    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    grace_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    seats: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    seat_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_subscriptions_status_plan", "status", "plan"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(tenant_id={self.tenant_id}, plan={self.plan}, status={self.status})>"


class Invoice(IdMixin, Base):
    """A recorded payment period. ``period_key`` (YYYY-MM) is unique per tenant."""

    __tablename__ = "invoices"

    tenant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    subscription_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=InvoiceStatus.OPEN.value)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="TRY")
    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="manual")
    provider_invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    period_key: Mapped[str | None] = mapped_column(String(7), nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    raw: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "period_key", name="uq_invoices_tenant_period"),
        Index("ix_invoices_tenant_created", "tenant_id", "created_at"),
    )
