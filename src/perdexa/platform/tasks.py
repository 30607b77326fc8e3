"""
Celery task definitions.
"""

import asyncio
from typing import Any

import structlog

from perdexa.platform.billing.service import SubscriptionService, SweepResult
from perdexa.platform.celery_app import celery_app
from perdexa.platform.db import get_async_db

logger = structlog.get_logger(__name__)


async def run_subscription_sweep() -> SweepResult:
    async with get_async_db() as session:
        return await SubscriptionService(session).sweep()


@celery_app.task(name="billing.sweep_subscriptions")
def sweep_subscriptions_task() -> dict[str, Any]:
    """Periodic task applying due trial expiries and lapsed paid periods."""
    result = asyncio.run(run_subscription_sweep())
    return {"status": "ok", **result.to_dict()}


__all__ = ["run_subscription_sweep", "sweep_subscriptions_task"]
