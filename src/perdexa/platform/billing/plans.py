"""Plan limits consulted by business handlers."""

from dataclasses import dataclass

from perdexa.platform.billing.models import Plan


@dataclass(frozen=True)
class PlanLimits:
    monthly_orders: int
    reports: bool


PLAN_LIMITS: dict[str, PlanLimits] = {
    Plan.FREE.value: PlanLimits(monthly_orders=30, reports=False),
    Plan.PRO.value: PlanLimits(monthly_orders=300, reports=True),
    Plan.BUSINESS.value: PlanLimits(monthly_orders=5000, reports=True),
}


def get_plan_limits(plan: str | None) -> PlanLimits:
    """Limits for ``plan``; unknown or missing plans get FREE limits."""
    return PLAN_LIMITS.get(plan or Plan.FREE.value, PLAN_LIMITS[Plan.FREE.value])


def can_use_reports(plan: str | None) -> bool:
    return get_plan_limits(plan).reports
