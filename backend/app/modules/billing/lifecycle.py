"""Subscription lifecycle controller.

Owns every subscription status transition:

    active  -> paused | completed | cancelled
    paused  -> active | completed | cancelled

completed and cancelled are terminal. Transition methods flush but do not
commit; the caller owns the transaction. ``evaluate_dunning`` is the
exception, since it runs as a standalone scheduler step.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.calendar import next_due_boundary
from app.modules.billing.exceptions import InvalidTransitionError, SubscriptionNotFoundError
from app.modules.billing.models import Subscription, SubscriptionStatus
from app.modules.billing.notifications import BillingEvent, BillingNotifier
from app.modules.billing.overrides import merchant_zone
from app.modules.billing.repository import InvoiceRepository, SubscriptionRepository

logger = logging.getLogger(__name__)

# Minimum spacing between dunning reminders for one subscription
DUNNING_REMINDER_INTERVAL = timedelta(days=1)

ALLOWED_TRANSITIONS = {
    SubscriptionStatus.ACTIVE.value: {
        SubscriptionStatus.PAUSED.value,
        SubscriptionStatus.COMPLETED.value,
        SubscriptionStatus.CANCELLED.value,
    },
    SubscriptionStatus.PAUSED.value: {
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.COMPLETED.value,
        SubscriptionStatus.CANCELLED.value,
    },
    SubscriptionStatus.COMPLETED.value: set(),
    SubscriptionStatus.CANCELLED.value: set(),
}


def next_billing_boundary(
    subscription: Subscription,
    now: datetime,
    after: Optional[datetime] = None,
) -> datetime:
    """Next anchor-aligned boundary of a subscription strictly after now (and after).

    The anchor is localized to the merchant timezone so month and day steps
    follow the merchant's wall clock. The result is returned in UTC.
    """
    anchor = subscription.billing_anchor.astimezone(merchant_zone(subscription))
    boundary = next_due_boundary(
        anchor,
        subscription.interval,
        subscription.interval_count,
        now,
        after=after,
    )
    return boundary.astimezone(timezone.utc)


@dataclass
class DunningResult:
    """Outcome of a dunning evaluation."""
    subscription_id: uuid.UUID
    action: str  # none, dunning, paused
    overdue_count: int = 0


class SubscriptionLifecycle:
    """Validates and applies subscription status transitions."""

    def __init__(
        self,
        session: AsyncSession,
        subscription_repo: Optional[SubscriptionRepository] = None,
        invoice_repo: Optional[InvoiceRepository] = None,
        notifier: Optional[BillingNotifier] = None,
    ):
        self.session = session
        self.subscription_repo = subscription_repo or SubscriptionRepository(session)
        self.invoice_repo = invoice_repo or InvoiceRepository(session)
        self.notifier = notifier or BillingNotifier()

    def _check_transition(self, subscription: Subscription, target: str) -> None:
        if target not in ALLOWED_TRANSITIONS.get(subscription.status, set()):
            raise InvalidTransitionError(subscription.status, target)

    async def get_subscription(self, subscription_id: uuid.UUID) -> Subscription:
        subscription = await self.subscription_repo.get_by_id(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    # ============================================
    # Transitions
    # ============================================

    async def enforce_cycle_cap(self, subscription: Subscription, now: datetime) -> bool:
        """Complete the subscription if billing another cycle would exceed max_cycles.

        Returns:
            bool: True if the cap was reached and the subscription completed
        """
        if not subscription.cycle_cap_reached():
            return False

        logger.info(
            f"Subscription {subscription.id} reached max cycles "
            f"({subscription.cycles_completed}/{subscription.max_cycles}), completing"
        )
        await self.complete(subscription, now)
        return True

    async def complete(self, subscription: Subscription, now: datetime) -> Subscription:
        """Mark a subscription completed and clear its billing pointer."""
        self._check_transition(subscription, SubscriptionStatus.COMPLETED.value)
        return await self.subscription_repo.update(
            subscription,
            status=SubscriptionStatus.COMPLETED.value,
            next_billing_at=None,
            completed_at=now,
        )

    async def pause(self, subscription: Subscription, now: datetime) -> Subscription:
        """Pause billing. The billing pointer is kept and re-derived on resume."""
        self._check_transition(subscription, SubscriptionStatus.PAUSED.value)
        logger.info(f"Pausing subscription {subscription.id}")
        return await self.subscription_repo.update(
            subscription,
            status=SubscriptionStatus.PAUSED.value,
            paused_at=now,
            resumed_at=None,
        )

    async def resume(self, subscription: Subscription, now: datetime) -> Subscription:
        """Resume a paused subscription.

        Cycles that fell entirely within the pause are not billed: a billing
        pointer in the past moves to the first boundary after now.
        """
        self._check_transition(subscription, SubscriptionStatus.ACTIVE.value)

        next_billing_at = subscription.next_billing_at
        if next_billing_at is None or next_billing_at <= now:
            next_billing_at = next_billing_boundary(subscription, now)

        logger.info(f"Resuming subscription {subscription.id}, next billing {next_billing_at.isoformat()}")
        return await self.subscription_repo.update(
            subscription,
            status=SubscriptionStatus.ACTIVE.value,
            resumed_at=now,
            paused_at=None,
            next_billing_at=next_billing_at,
        )

    async def cancel(self, subscription: Subscription, now: datetime) -> Subscription:
        """Cancel a subscription and void its unpaid invoices."""
        self._check_transition(subscription, SubscriptionStatus.CANCELLED.value)

        voided = await self.invoice_repo.void_unpaid(subscription.id)
        logger.info(f"Cancelling subscription {subscription.id}, voided {voided} unpaid invoices")
        return await self.subscription_repo.update(
            subscription,
            status=SubscriptionStatus.CANCELLED.value,
            next_billing_at=None,
            cancelled_at=now,
        )

    async def transition(self, subscription_id: uuid.UUID, target: str, now: Optional[datetime] = None) -> Subscription:
        """Apply a transition by target status name."""
        now = now or datetime.now(timezone.utc)
        subscription = await self.get_subscription(subscription_id)

        if target == SubscriptionStatus.PAUSED.value:
            return await self.pause(subscription, now)
        if target == SubscriptionStatus.ACTIVE.value:
            return await self.resume(subscription, now)
        if target == SubscriptionStatus.CANCELLED.value:
            return await self.cancel(subscription, now)
        if target == SubscriptionStatus.COMPLETED.value:
            return await self.complete(subscription, now)
        raise InvalidTransitionError(subscription.status, target)

    # ============================================
    # Payment-driven transitions
    # ============================================

    async def on_invoice_paid(self, subscription_id: uuid.UUID, now: datetime) -> bool:
        """Auto-resume a paused subscription when one of its invoices is paid.

        Returns:
            bool: True if the subscription was resumed
        """
        subscription = await self.subscription_repo.get_by_id(subscription_id)
        if subscription is None:
            logger.warning(f"Paid invoice references missing subscription {subscription_id}")
            return False

        if subscription.status != SubscriptionStatus.PAUSED.value or not subscription.auto_resume_on_payment:
            return False

        await self.resume(subscription, now)
        return True

    async def notify_resumed(self, subscription: Subscription, reason: str) -> None:
        """Send the subscription_resumed notification. Call after the resume is committed."""
        payload = {
            "reason": reason,
            "next_billing_at": subscription.next_billing_at.isoformat() if subscription.next_billing_at else None,
        }
        await self.notifier.send(BillingEvent.SUBSCRIPTION_RESUMED, subscription.id, payload)

    # ============================================
    # Dunning
    # ============================================

    async def evaluate_dunning(self, subscription: Subscription, now: datetime) -> DunningResult:
        """Remind or pause a subscription with overdue invoices.

        An invoice is overdue once ``due_date + past_due_after_days`` is before
        today in the merchant timezone. When the overdue count reaches
        ``pause_after_missed_payments`` (if set) the subscription is paused;
        otherwise at most one reminder per DUNNING_REMINDER_INTERVAL is sent
        for the oldest overdue invoice. Commits its own changes.

        Args:
            subscription: Active subscription to evaluate
            now: Current time

        Returns:
            DunningResult describing the action taken
        """
        if not subscription.is_active():
            return DunningResult(subscription.id, "none")

        today = now.astimezone(merchant_zone(subscription)).date()
        grace = timedelta(days=subscription.past_due_after_days)
        unpaid = await self.invoice_repo.get_unpaid_for_subscription(subscription.id)
        overdue = [invoice for invoice in unpaid if invoice.due_date + grace < today]

        if not overdue:
            return DunningResult(subscription.id, "none")

        oldest = overdue[0]
        days_past_due = (today - oldest.due_date).days
        payload = {
            "invoice_id": str(oldest.id),
            "invoice_number": oldest.invoice_number,
            "amount": str(oldest.amount),
            "currency": oldest.currency,
            "payment_url": oldest.payment_url,
            "days_past_due": days_past_due,
            "overdue_count": len(overdue),
        }

        threshold = subscription.pause_after_missed_payments
        if threshold and len(overdue) >= threshold:
            await self.pause(subscription, now)
            await self.session.commit()
            logger.warning(
                f"Subscription {subscription.id} paused after {len(overdue)} missed payments"
            )
            await self.notifier.send(BillingEvent.SUBSCRIPTION_PAUSED, subscription.id, payload)
            return DunningResult(subscription.id, "paused", len(overdue))

        if subscription.last_dunning_at and now - subscription.last_dunning_at < DUNNING_REMINDER_INTERVAL:
            return DunningResult(subscription.id, "none", len(overdue))

        await self.subscription_repo.update(subscription, last_dunning_at=now)
        await self.session.commit()
        logger.info(
            f"Dunning reminder for subscription {subscription.id}: "
            f"{len(overdue)} overdue, oldest {days_past_due} days past due"
        )
        await self.notifier.send(BillingEvent.DUNNING, subscription.id, payload)
        return DunningResult(subscription.id, "dunning", len(overdue))
