"""
Subscription lifecycle rules.

The functions here are pure: they look at a subscription snapshot and the
current time and say whether access is allowed and which transition, if any,
should be persisted. ``SubscriptionService`` applies the transitions.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from perdexa.platform.billing.models import Plan, SubscriptionStatus


class DenyReason(str, Enum):
    TRIAL_EXPIRED = "trial_expired"
    INACTIVE = "inactive"
    PAYMENT_REQUIRED = "payment_required"


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of a read-path evaluation.

    ``transition_from``/``transition_to`` describe a status write the caller
    must persist; both are None when nothing changes.
    """

    allowed: bool
    reason: DenyReason | None = None
    transition_from: str | None = None
    transition_to: str | None = None

    @property
    def needs_transition(self) -> bool:
        return self.transition_to is not None


ALLOW = AccessDecision(allowed=True)


def evaluate_access(
    plan: str,
    status: str,
    trial_ends_at: datetime | None,
    current_period_end: datetime | None,
    now: datetime,
) -> AccessDecision:
    """Read-path evaluation run on every gated request."""
    if plan == Plan.FREE.value:
        if (
            status == SubscriptionStatus.TRIALING.value
            and trial_ends_at is not None
            and trial_ends_at < now
        ):
            return AccessDecision(
                allowed=False,
                reason=DenyReason.TRIAL_EXPIRED,
                transition_from=SubscriptionStatus.TRIALING.value,
                transition_to=SubscriptionStatus.CANCELED.value,
            )
        if status == SubscriptionStatus.CANCELED.value:
            return AccessDecision(allowed=False, reason=DenyReason.INACTIVE)
        return ALLOW

    if (
        current_period_end is not None
        and current_period_end < now
        and status != SubscriptionStatus.CANCELED.value
    ):
        # Already past_due: keep denying without another write.
        if status == SubscriptionStatus.PAST_DUE.value:
            return AccessDecision(allowed=False, reason=DenyReason.PAYMENT_REQUIRED)
        return AccessDecision(
            allowed=False,
            reason=DenyReason.PAYMENT_REQUIRED,
            transition_from=status,
            transition_to=SubscriptionStatus.PAST_DUE.value,
        )
    return ALLOW


def is_subscription_active(
    status: str | None, grace_until: datetime | None, now: datetime
) -> bool:
    """Display helper: active or trialing, or past_due still inside its grace window."""
    if status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value):
        return True
    if status == SubscriptionStatus.PAST_DUE.value and grace_until is not None:
        return grace_until > now
    return False
