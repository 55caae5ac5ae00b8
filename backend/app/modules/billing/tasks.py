"""Celery tasks for recurring billing."""

import asyncio
import logging

from app.core.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    name="billing.run_subscription_scheduler",
)
def run_subscription_scheduler_task(self):
    """Generate due subscription invoices and run dunning.

    Scheduled by Celery beat every SCHEDULER_INTERVAL_MINUTES. Safe to retry:
    generation is idempotent per billing cycle.
    """
    from app.modules.billing.scheduler import run_subscription_scheduler

    try:
        summary = asyncio.run(run_subscription_scheduler())
    except Exception as e:
        logger.error(f"Subscription scheduler run failed: {e}")
        raise self.retry(exc=e)

    logger.info(f"Subscription scheduler summary: {summary}")
    return summary
