"""Celery tasks for payment reconciliation."""

import asyncio
import logging

from app.core.celery_app import celery_app
from app.core.database import async_session_maker
from app.core.logging import correlation_scope

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    name="payments.refresh_pending_transactions",
)
def refresh_pending_transactions_task(self, limit: int = 100):
    """Poll the processor for every non-terminal transaction.

    Backstop for missed or delayed webhooks; runs every
    PAYMENT_POLL_INTERVAL_MINUTES.
    """
    try:
        return asyncio.run(_refresh_pending_transactions(limit))
    except Exception as e:
        logger.error(f"Pending payment refresh failed: {e}")
        raise self.retry(exc=e)


async def _refresh_pending_transactions(limit: int) -> dict:
    """Async implementation of the pending refresh."""
    from app.modules.payment_gateway.gateways.nowpayments import NOWPaymentsGateway
    from app.modules.payment_gateway.reconciler import PaymentStatusPoller

    with correlation_scope(prefix="poll"):
        async with async_session_maker() as session:
            poller = PaymentStatusPoller(session, NOWPaymentsGateway())
            return await poller.refresh_pending(limit=limit)
