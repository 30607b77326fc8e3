"""
Celery application configuration.

Hosts the periodic subscription sweep; the HTTP cron endpoint is the
alternative for deployments without a worker.
"""

from typing import Any

import structlog
from celery import Celery

from perdexa.platform.settings import settings

logger = structlog.get_logger(__name__)

celery_app = Celery(
    "perdexa_platform",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["perdexa.platform.tasks"],
)

celery_app.conf.update(
    task_default_queue="default",
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.celery.timezone,
    enable_utc=True,
    result_expires=3600,  # 1 hour
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    task_soft_time_limit=240,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_always_eager=settings.celery.task_always_eager,
)


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Schedule the subscription sweep."""
    from perdexa.platform.tasks import sweep_subscriptions_task

    sender.add_periodic_task(
        settings.billing.sweep_interval_seconds,
        sweep_subscriptions_task.s(),
        name="billing-sweep-subscriptions",
    )
    logger.info(
        "celery.periodic_tasks.configured",
        sweep_interval_seconds=settings.billing.sweep_interval_seconds,
    )


__all__ = ["celery_app"]
