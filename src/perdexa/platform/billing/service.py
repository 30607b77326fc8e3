"""
Subscription service.

Applies the lifecycle rules from ``state_machine`` against the database:
the per-request read path, the periodic sweep and the administrator write
paths (checkout, cancel, resume, plan changes and manual payments).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from perdexa.platform.billing.models import (
    Invoice,
    InvoiceStatus,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from perdexa.platform.billing.periods import (
    add_months,
    month_end,
    month_start,
    next_month_start,
    period_key,
)
from perdexa.platform.billing.state_machine import DenyReason, evaluate_access
from perdexa.platform.db import utcnow
from perdexa.platform.exceptions import (
    Conflict,
    NotFound,
    PaymentRequired,
    SubscriptionInactive,
    TrialExpired,
    ValidationError,
)
from perdexa.platform.logging import log_audit_event
from perdexa.platform.settings import settings
from perdexa.platform.tenant.models import Membership

logger = structlog.get_logger(__name__)


class CancelMode(str, Enum):
    NOW = "now"
    PERIOD_END = "period_end"


@dataclass(frozen=True)
class SweepResult:
    free_canceled: int
    paid_past_due: int

    def to_dict(self) -> dict[str, int]:
        return {"free_canceled": self.free_canceled, "paid_past_due": self.paid_past_due}


_DENY_ERRORS = {
    DenyReason.TRIAL_EXPIRED: TrialExpired,
    DenyReason.INACTIVE: SubscriptionInactive,
    DenyReason.PAYMENT_REQUIRED: PaymentRequired,
}


class SubscriptionService:
    """Subscription and invoice operations for one database session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ============================================
    # Lookups
    # ============================================

    async def get_subscription(self, tenant_id: str) -> Subscription | None:
        return await self.session.scalar(
            select(Subscription).where(Subscription.tenant_id == tenant_id)
        )

    async def count_seats(self, tenant_id: str) -> int:
        """One seat per membership."""
        count = await self.session.scalar(
            select(func.count()).select_from(Membership).where(Membership.tenant_id == tenant_id)
        )
        return int(count or 0)

    async def list_invoices(self, tenant_id: str, limit: int | None = None) -> list[Invoice]:
        result = await self.session.scalars(
            select(Invoice)
            .where(Invoice.tenant_id == tenant_id)
            .order_by(Invoice.created_at.desc())
            .limit(limit or settings.billing.invoice_history_limit)
        )
        return list(result)

    # ============================================
    # Read path
    # ============================================

    async def check_access(self, tenant_id: str, now: datetime | None = None) -> Subscription:
        """Gate a request on the tenant's subscription.

        A due transition (expired FREE trial to canceled, lapsed paid period to
        past_due) is written with a conditional UPDATE and committed before the
        denial is raised, so it lands exactly once even under concurrent checks.

        Raises:
            SubscriptionInactive: No subscription, or a canceled FREE plan
            TrialExpired: FREE trial ended
            PaymentRequired: Paid period ended
        """
        now = now or utcnow()
        subscription = await self.get_subscription(tenant_id)
        if subscription is None:
            raise SubscriptionInactive(context={"tenant_id": tenant_id})

        decision = evaluate_access(
            subscription.plan,
            subscription.status,
            subscription.trial_ends_at,
            subscription.current_period_end,
            now,
        )
        if decision.allowed:
            return subscription

        if decision.needs_transition:
            result = await self.session.execute(
                update(Subscription)
                .where(
                    Subscription.tenant_id == tenant_id,
                    Subscription.status == decision.transition_from,
                )
                .values(status=decision.transition_to, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
            await self.session.refresh(subscription)
            if result.rowcount:
                logger.info(
                    "subscription.transition",
                    tenant_id=tenant_id,
                    from_status=decision.transition_from,
                    to_status=decision.transition_to,
                    cause="read_path",
                )

        reason = decision.reason or DenyReason.PAYMENT_REQUIRED
        raise _DENY_ERRORS[reason](
            context={"tenant_id": tenant_id, "plan": subscription.plan}
        )

    # ============================================
    # Sweep path
    # ============================================

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        """Bulk-apply due transitions. Safe to repeat; converges with the read path.

        In-memory Subscription objects are not synchronized; re-read them.
        """
        now = now or utcnow()

        free_result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.plan == Plan.FREE.value,
                Subscription.status == SubscriptionStatus.TRIALING.value,
                Subscription.trial_ends_at < now,
            )
            .values(status=SubscriptionStatus.CANCELED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        paid_result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.plan != Plan.FREE.value,
                Subscription.status.in_(
                    [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value]
                ),
                Subscription.current_period_end < now,
            )
            .values(status=SubscriptionStatus.PAST_DUE.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        result = SweepResult(
            free_canceled=free_result.rowcount or 0,
            paid_past_due=paid_result.rowcount or 0,
        )
        logger.info("subscription.sweep.completed", **result.to_dict())
        return result

    # ============================================
    # Write paths
    # ============================================

    async def _get_or_create(
        self, tenant_id: str, defaults: dict[str, Any]
    ) -> tuple[Subscription, bool]:
        """Fetch the tenant's row or insert it; a concurrent insert wins the unique key."""
        subscription = await self.get_subscription(tenant_id)
        if subscription is not None:
            return subscription, False

        subscription = Subscription(tenant_id=tenant_id, **defaults)
        self.session.add(subscription)
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            subscription = await self.get_subscription(tenant_id)
            if subscription is None:
                raise
            return subscription, False
        return subscription, True

    async def _upsert(self, tenant_id: str, values: dict[str, Any]) -> Subscription:
        subscription, created = await self._get_or_create(tenant_id, values)
        if not created:
            for key, value in values.items():
                setattr(subscription, key, value)
        return subscription

    async def ensure_subscription(
        self, tenant_id: str, now: datetime | None = None
    ) -> Subscription:
        """Make sure the tenant has a row; new rows start as a FREE trial."""
        now = now or utcnow()
        trial_end = now + timedelta(days=settings.billing.signup_trial_days)
        subscription, _ = await self._get_or_create(
            tenant_id,
            {
                "plan": Plan.FREE.value,
                "status": SubscriptionStatus.TRIALING.value,
                "current_period_start": now,
                "current_period_end": trial_end,
                "trial_ends_at": trial_end,
                "seats": max(1, await self.count_seats(tenant_id)),
            },
        )
        return subscription

    async def request_plan(
        self,
        tenant_id: str,
        plan: Plan | str,
        now: datetime | None = None,
        actor_id: str | None = None,
    ) -> Subscription:
        """Record the plan a tenant asked for; status and period stay as they are.

        A tenant without a row gets a trialing one on the requested plan.
        """
        now = now or utcnow()
        plan_value = Plan(plan).value
        trial_end = now + timedelta(days=settings.billing.signup_trial_days)
        subscription, created = await self._get_or_create(
            tenant_id,
            {
                "plan": plan_value,
                "status": SubscriptionStatus.TRIALING.value,
                "current_period_start": now,
                "current_period_end": trial_end,
                "trial_ends_at": trial_end,
                "seats": max(1, await self.count_seats(tenant_id)),
            },
        )
        if not created:
            subscription.plan = plan_value
        await self.session.commit()
        log_audit_event(
            "billing.plan_requested",
            "billing",
            user_id=actor_id,
            tenant_id=tenant_id,
            resource_type="subscription",
            resource_id=subscription.id,
            plan=plan_value,
        )
        return subscription

    async def checkout(
        self,
        tenant_id: str,
        plan: Plan | str = Plan.PRO,
        now: datetime | None = None,
        actor_id: str | None = None,
    ) -> Subscription:
        """Activate ``plan`` for a fresh period."""
        now = now or utcnow()
        plan_value = Plan(plan).value
        subscription = await self._upsert(
            tenant_id,
            {
                "plan": plan_value,
                "status": SubscriptionStatus.ACTIVE.value,
                "current_period_start": now,
                "current_period_end": now + timedelta(days=settings.billing.paid_period_days),
                "cancel_at_period_end": False,
                "grace_until": None,
                "seats": await self.count_seats(tenant_id),
            },
        )
        await self.session.commit()
        log_audit_event(
            "billing.checkout",
            "billing",
            user_id=actor_id,
            tenant_id=tenant_id,
            resource_type="subscription",
            resource_id=subscription.id,
            plan=plan_value,
        )
        return subscription

    async def cancel(
        self,
        tenant_id: str,
        mode: CancelMode | str = CancelMode.PERIOD_END,
        now: datetime | None = None,
        actor_id: str | None = None,
    ) -> Subscription:
        """Cancel now (status and period end change) or flag cancel at period end."""
        now = now or utcnow()
        mode = CancelMode(mode)

        if mode is CancelMode.NOW:
            values: dict[str, Any] = {
                "status": SubscriptionStatus.CANCELED.value,
                "cancel_at_period_end": False,
                "current_period_end": now,
            }
            subscription, created = await self._get_or_create(
                tenant_id, {"plan": Plan.PRO.value, **values}
            )
        else:
            values = {"cancel_at_period_end": True}
            subscription, created = await self._get_or_create(
                tenant_id,
                {
                    "plan": Plan.PRO.value,
                    "status": SubscriptionStatus.ACTIVE.value,
                    "current_period_start": now,
                    "current_period_end": now + timedelta(days=settings.billing.paid_period_days),
                    **values,
                },
            )
        if not created:
            for key, value in values.items():
                setattr(subscription, key, value)

        await self.session.commit()
        log_audit_event(
            "billing.cancel",
            "billing",
            user_id=actor_id,
            tenant_id=tenant_id,
            resource_type="subscription",
            resource_id=subscription.id,
            mode=mode.value,
        )
        return subscription

    async def resume(
        self, tenant_id: str, now: datetime | None = None, actor_id: str | None = None
    ) -> Subscription:
        now = now or utcnow()
        values: dict[str, Any] = {
            "status": SubscriptionStatus.ACTIVE.value,
            "cancel_at_period_end": False,
            "current_period_start": now,
            "current_period_end": now + timedelta(days=settings.billing.paid_period_days),
            "grace_until": None,
            "seats": await self.count_seats(tenant_id),
        }
        subscription, created = await self._get_or_create(
            tenant_id, {"plan": Plan.PRO.value, **values}
        )
        if not created:
            for key, value in values.items():
                setattr(subscription, key, value)
        await self.session.commit()
        log_audit_event(
            "billing.resume",
            "billing",
            user_id=actor_id,
            tenant_id=tenant_id,
            resource_type="subscription",
            resource_id=subscription.id,
        )
        return subscription

    async def set_plan(
        self,
        tenant_id: str,
        plan: Plan | str,
        now: datetime | None = None,
        actor_id: str | None = None,
    ) -> Subscription:
        """Switch plan. FREE restarts a short trial; paid plans run one calendar month."""
        now = now or utcnow()
        plan_value = Plan(plan).value

        if plan_value == Plan.FREE.value:
            trial_end = now + timedelta(days=settings.billing.free_trial_days)
            values: dict[str, Any] = {
                "plan": plan_value,
                "status": SubscriptionStatus.TRIALING.value,
                "trial_ends_at": trial_end,
                "current_period_start": now,
                "current_period_end": trial_end,
            }
        else:
            values = {
                "plan": plan_value,
                "status": SubscriptionStatus.ACTIVE.value,
                "trial_ends_at": None,
                "current_period_start": now,
                "current_period_end": add_months(now, 1),
            }
        values.update(cancel_at_period_end=False, grace_until=None)

        subscription = await self._upsert(tenant_id, values)
        await self.session.commit()
        log_audit_event(
            "billing.plan_changed",
            "billing",
            user_id=actor_id,
            tenant_id=tenant_id,
            resource_type="subscription",
            resource_id=subscription.id,
            plan=plan_value,
        )
        return subscription

    async def set_subscription(
        self,
        tenant_id: str,
        plan: Plan | str,
        status: SubscriptionStatus | str | None = None,
        trial_days: int | None = None,
        current_period_end: datetime | None = None,
        now: datetime | None = None,
        actor_id: str | None = None,
    ) -> Subscription:
        """Explicitly set plan/status/period for a tenant (super admin tooling)."""
        now = now or utcnow()
        plan_value = Plan(plan).value
        if status is None:
            status_value = (
                SubscriptionStatus.TRIALING.value
                if plan_value == Plan.FREE.value
                else SubscriptionStatus.ACTIVE.value
            )
        else:
            status_value = SubscriptionStatus(status).value

        values: dict[str, Any] = {
            "plan": plan_value,
            "status": status_value,
            "cancel_at_period_end": False,
        }
        if status_value == SubscriptionStatus.TRIALING.value:
            days = trial_days if trial_days is not None else settings.billing.free_trial_days
            if days < 0:
                raise ValidationError("trial_days must not be negative")
            trial_end = now + timedelta(days=days)
            values.update(
                trial_ends_at=trial_end, current_period_start=now, current_period_end=trial_end
            )
        else:
            values.update(
                trial_ends_at=None,
                current_period_start=now,
                current_period_end=current_period_end
                or now + timedelta(days=settings.billing.paid_period_days),
            )

        subscription = await self._upsert(tenant_id, values)
        await self.session.commit()
        log_audit_event(
            "billing.subscription_set",
            "billing",
            user_id=actor_id,
            tenant_id=tenant_id,
            resource_type="subscription",
            resource_id=subscription.id,
            plan=plan_value,
            status=status_value,
        )
        return subscription

    # ============================================
    # Manual payments
    # ============================================

    async def _invoice_for_month(self, tenant_id: str, key: str) -> Invoice | None:
        return await self.session.scalar(
            select(Invoice).where(Invoice.tenant_id == tenant_id, Invoice.period_key == key)
        )

    async def _record_paid_month(
        self,
        tenant_id: str,
        year: int,
        month: int,
        amount: Decimal,
        due_at: datetime,
        now: datetime,
        subscription_id: str | None,
    ) -> Invoice:
        """Create the month's invoice as paid, or flip the existing one to paid."""
        key = period_key(year, month)
        invoice = await self._invoice_for_month(tenant_id, key)
        if invoice is None:
            invoice = Invoice(
                tenant_id=tenant_id,
                subscription_id=subscription_id,
                period_key=key,
                status=InvoiceStatus.PAID.value,
                amount=amount,
                currency=settings.billing.default_currency,
                provider="manual",
                due_at=due_at,
                paid_at=now,
            )
            self.session.add(invoice)
            try:
                await self.session.flush()
                return invoice
            except IntegrityError:
                await self.session.rollback()
                invoice = await self._invoice_for_month(tenant_id, key)
                if invoice is None:
                    raise

        invoice.status = InvoiceStatus.PAID.value
        invoice.amount = amount
        invoice.paid_at = now
        await self.session.flush()
        return invoice

    async def pay_month(
        self,
        tenant_id: str,
        year: int,
        month: int,
        amount: Decimal | int | str | None = None,
        now: datetime | None = None,
        actor_id: str | None = None,
    ) -> Invoice:
        """Record a manual payment for one month. Repeating it never duplicates the invoice."""
        now = now or utcnow()
        subscription = await self.get_subscription(tenant_id)
        value = Decimal(str(amount)) if amount is not None else settings.billing.monthly_price
        invoice = await self._record_paid_month(
            tenant_id,
            year,
            month,
            value,
            due_at=month_start(year, month),
            now=now,
            subscription_id=subscription.id if subscription else None,
        )
        await self.session.commit()
        log_audit_event(
            "billing.month_paid",
            "billing",
            user_id=actor_id,
            tenant_id=tenant_id,
            resource_type="invoice",
            resource_id=invoice.id,
            period=invoice.period_key,
        )
        return invoice

    async def pay_year(
        self,
        tenant_id: str,
        year: int,
        from_month: int = 1,
        amount: Decimal | int | str = 0,
        now: datetime | None = None,
        actor_id: str | None = None,
    ) -> list[Invoice]:
        """``pay_month`` for every month from ``from_month`` through December."""
        if not 1 <= from_month <= 12:
            raise ValidationError("from_month must be between 1 and 12")
        now = now or utcnow()
        return [
            await self.pay_month(tenant_id, year, month, amount, now=now, actor_id=actor_id)
            for month in range(from_month, 13)
        ]

    async def settle_month(
        self,
        tenant_id: str,
        year: int,
        month: int,
        now: datetime | None = None,
        actor_id: str | None = None,
    ) -> tuple[Subscription, Invoice]:
        """Record the monthly fee and pin the subscription active for that month.

        Raises:
            Conflict: The month already has a paid invoice
        """
        now = now or utcnow()
        key = period_key(year, month)
        existing = await self._invoice_for_month(tenant_id, key)
        if existing is not None and existing.status == InvoiceStatus.PAID.value:
            raise Conflict(
                f"{key} is already paid", error_code="already_paid", context={"period": key}
            )

        subscription = await self.ensure_subscription(tenant_id, now=now)
        invoice = await self._record_paid_month(
            tenant_id,
            year,
            month,
            settings.billing.monthly_price,
            due_at=month_end(year, month),
            now=now,
            subscription_id=subscription.id,
        )

        if subscription.plan == Plan.FREE.value:
            subscription.plan = Plan.PRO.value
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.current_period_start = month_start(year, month)
        subscription.current_period_end = next_month_start(year, month)
        subscription.trial_ends_at = None
        subscription.grace_until = None
        subscription.cancel_at_period_end = False

        await self.session.commit()
        log_audit_event(
            "billing.month_settled",
            "billing",
            user_id=actor_id,
            tenant_id=tenant_id,
            resource_type="invoice",
            resource_id=invoice.id,
            period=key,
        )
        return subscription, invoice

    # ============================================
    # Provider webhooks
    # ============================================

    async def handle_webhook_event(
        self,
        event_type: str,
        tenant_id: str | None,
        data: dict[str, Any] | None = None,
        raw: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Apply a provider event. Returns False for event types we ignore."""
        now = now or utcnow()
        data = data or {}
        handled = {"invoice.paid", "invoice.payment_failed", "customer.subscription.deleted"}
        if event_type not in handled:
            logger.info("billing.webhook.ignored", event_type=event_type)
            return False
        if not tenant_id:
            raise ValidationError("tenant_id is required", context={"event_type": event_type})

        subscription = await self.get_subscription(tenant_id)
        if subscription is None:
            raise NotFound("Subscription not found", context={"tenant_id": tenant_id})

        if event_type == "invoice.paid":
            self.session.add(
                Invoice(
                    tenant_id=tenant_id,
                    subscription_id=subscription.id,
                    status=InvoiceStatus.PAID.value,
                    amount=Decimal(str(data.get("amount") or 0)),
                    currency=data.get("currency") or settings.billing.default_currency,
                    provider=data.get("provider") or "manual",
                    provider_invoice_id=data.get("provider_invoice_id"),
                    paid_at=now,
                    raw=raw,
                )
            )
            subscription.status = SubscriptionStatus.ACTIVE.value
            if data.get("period_end") is not None:
                subscription.current_period_end = data["period_end"]
            subscription.grace_until = None
        elif event_type == "invoice.payment_failed":
            subscription.status = SubscriptionStatus.PAST_DUE.value
            subscription.grace_until = now + timedelta(days=settings.billing.grace_period_days)
        else:
            subscription.status = SubscriptionStatus.CANCELED.value

        await self.session.commit()
        logger.info(
            "billing.webhook.applied",
            event_type=event_type,
            tenant_id=tenant_id,
            status=subscription.status,
        )
        return True


__all__ = ["CancelMode", "SweepResult", "SubscriptionService"]
