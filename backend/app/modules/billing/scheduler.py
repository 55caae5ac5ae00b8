"""Subscription scheduler driver.

Invoked periodically (Celery beat, the manual script, or the internal HTTP
trigger). Each due subscription is generated in its own session so that a
failure for one subscription never affects the others in the run.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import async_session_maker
from app.core.logging import correlation_scope
from app.core.metrics import SCHEDULER_RUN_DURATION_SECONDS, SCHEDULER_SUBSCRIPTIONS_FAILED
from app.modules.billing.generator import GenerationOutcome, InvoiceGenerator
from app.modules.billing.lifecycle import SubscriptionLifecycle
from app.modules.billing.repository import SubscriptionRepository

logger = logging.getLogger(__name__)


@dataclass
class SchedulerSummary:
    """Counts for one scheduler run."""
    run_at: datetime
    processed: int = 0
    created: int = 0
    existing: int = 0
    skipped: int = 0
    failed: int = 0
    dunning_sent: int = 0
    paused: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_at": self.run_at.isoformat(),
            "processed": self.processed,
            "created": self.created,
            "existing": self.existing,
            "skipped": self.skipped,
            "failed": self.failed,
            "dunning_sent": self.dunning_sent,
            "paused": self.paused,
            "errors": list(self.errors),
        }


class SubscriptionScheduler:
    """Runs invoice generation and dunning for every due subscription."""

    def __init__(
        self,
        session_factory: Callable[[], Any] = async_session_maker,
        generator_factory: Optional[Callable[[AsyncSession], InvoiceGenerator]] = None,
        lifecycle_factory: Optional[Callable[[AsyncSession], SubscriptionLifecycle]] = None,
        repository_factory: Optional[Callable[[AsyncSession], SubscriptionRepository]] = None,
        concurrency: Optional[int] = None,
        lookahead_days: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.generator_factory = generator_factory or InvoiceGenerator
        self.lifecycle_factory = lifecycle_factory or SubscriptionLifecycle
        self.repository_factory = repository_factory or SubscriptionRepository
        self.concurrency = concurrency or settings.SCHEDULER_CONCURRENCY
        self.lookahead_days = (
            lookahead_days if lookahead_days is not None else settings.SCHEDULER_LOOKAHEAD_DAYS
        )

    async def run(self, now: Optional[datetime] = None) -> SchedulerSummary:
        """Run one scheduler pass.

        Args:
            now: Reference time, defaults to the wall clock

        Returns:
            SchedulerSummary with per-outcome counts and error messages
        """
        now = now or datetime.now(timezone.utc)
        summary = SchedulerSummary(run_at=now)
        started = time.perf_counter()

        cutoff = now + timedelta(days=self.lookahead_days)
        async with self.session_factory() as session:
            due_ids = await self.repository_factory(session).get_due_subscription_ids(cutoff)

        logger.info(f"Scheduler run at {now.isoformat()}: {len(due_ids)} subscriptions due by {cutoff.isoformat()}")

        semaphore = asyncio.Semaphore(self.concurrency)
        await asyncio.gather(
            *(self._generate_one(subscription_id, now, semaphore, summary) for subscription_id in due_ids)
        )

        await self._run_dunning(now, summary)

        SCHEDULER_RUN_DURATION_SECONDS.observe(time.perf_counter() - started)
        logger.info(
            f"Scheduler run complete: processed={summary.processed} created={summary.created} "
            f"existing={summary.existing} skipped={summary.skipped} failed={summary.failed} "
            f"paused={summary.paused}"
        )
        return summary

    async def _generate_one(
        self,
        subscription_id: uuid.UUID,
        now: datetime,
        semaphore: asyncio.Semaphore,
        summary: SchedulerSummary,
    ) -> None:
        async with semaphore:
            summary.processed += 1
            try:
                async with self.session_factory() as session:
                    subscription = await self.repository_factory(session).get_by_id(subscription_id)
                    if subscription is None:
                        logger.warning(f"Subscription {subscription_id} disappeared before generation")
                        summary.skipped += 1
                        return

                    result = await self.generator_factory(session).generate(subscription, now=now)
            except Exception as e:
                logger.error(f"Invoice generation failed for subscription {subscription_id}: {e}", exc_info=True)
                SCHEDULER_SUBSCRIPTIONS_FAILED.inc()
                summary.failed += 1
                summary.errors.append(f"{subscription_id}: {e}")
                return

            if result.outcome == GenerationOutcome.CREATED:
                summary.created += 1
            elif result.outcome == GenerationOutcome.EXISTING:
                summary.existing += 1
            else:
                summary.skipped += 1
                logger.debug(f"Subscription {subscription_id} skipped: {result.reason}")

    async def _run_dunning(self, now: datetime, summary: SchedulerSummary) -> None:
        # Coarse filter; evaluate_dunning applies the per-subscription grace window
        due_before = now.date() + timedelta(days=1)
        async with self.session_factory() as session:
            candidate_ids = await self.repository_factory(session).get_ids_with_unpaid_invoices(due_before)

        for subscription_id in candidate_ids:
            try:
                async with self.session_factory() as session:
                    subscription = await self.repository_factory(session).get_by_id(subscription_id)
                    if subscription is None:
                        continue
                    result = await self.lifecycle_factory(session).evaluate_dunning(subscription, now)
            except Exception as e:
                logger.error(f"Dunning failed for subscription {subscription_id}: {e}", exc_info=True)
                summary.errors.append(f"{subscription_id}: dunning: {e}")
                continue

            if result.action == "paused":
                summary.paused += 1
            elif result.action == "dunning":
                summary.dunning_sent += 1


async def run_subscription_scheduler(now: Optional[datetime] = None) -> dict[str, Any]:
    """Run the scheduler with default collaborators and return a summary dict."""
    with correlation_scope(prefix="sched"):
        summary = await SubscriptionScheduler().run(now=now)
    return summary.to_dict()
