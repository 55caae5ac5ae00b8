"""Subscription invoice generation.

Produces at most one invoice per subscription billing cycle. Generation is
idempotent and safe to retry: the existing-invoice lookup short-circuits
repeated calls, and the ``(subscription_id, cycle_start_at)`` unique
constraint settles concurrent ones.

The invoice insert, the merchant invoice-number allocation and the
subscription pointer advance share one database transaction, so a failure
never leaves an invoice without its advance or an advance without its
invoice.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.metrics import INVOICE_GENERATION_TOTAL
from app.modules.billing.exceptions import DuplicateInvoiceError
from app.modules.billing.lifecycle import SubscriptionLifecycle, next_billing_boundary
from app.modules.billing.models import Invoice, InvoiceStatus, Subscription
from app.modules.billing.notifications import BillingEvent, BillingNotifier
from app.modules.billing.overrides import OverrideResolver, local_cycle_date, merchant_zone
from app.modules.billing.payment_links import PaymentLinkClient, PaymentLinkRequest
from app.modules.billing.repository import (
    InvoiceRepository,
    MerchantRepository,
    OverrideRepository,
    SubscriptionRepository,
)

logger = logging.getLogger(__name__)

# Days a payment link stays valid beyond the past-due grace window
PAYMENT_LINK_EXPIRY_BUFFER_DAYS = 14


class GenerationOutcome:
    """Invoice generation outcomes."""
    CREATED = "created"
    EXISTING = "existing"
    SKIPPED = "skipped"


@dataclass
class GenerationResult:
    """Result from an invoice generation attempt."""
    outcome: str
    invoice: Optional[Invoice] = None
    payment_url: Optional[str] = None
    reason: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.outcome == GenerationOutcome.CREATED

    @classmethod
    def skipped(cls, reason: str) -> "GenerationResult":
        return cls(outcome=GenerationOutcome.SKIPPED, reason=reason)

    @classmethod
    def existing(cls, invoice: Invoice) -> "GenerationResult":
        return cls(
            outcome=GenerationOutcome.EXISTING,
            invoice=invoice,
            payment_url=invoice.payment_url,
        )


def compute_due_date(subscription: Subscription, cycle_start: datetime):
    """Local due date: cycle date in the merchant timezone plus invoice_due_days."""
    cycle_date = local_cycle_date(cycle_start, merchant_zone(subscription))
    return cycle_date + timedelta(days=subscription.invoice_due_days)


def compute_expires_at(subscription: Subscription, cycle_start: datetime) -> datetime:
    """Payment link expiry: cycle start plus the grace window plus a fixed buffer."""
    return cycle_start + timedelta(
        days=subscription.past_due_after_days + PAYMENT_LINK_EXPIRY_BUFFER_DAYS
    )


class InvoiceGenerator:
    """Generates the invoice for a subscription's current billing cycle."""

    def __init__(
        self,
        session: AsyncSession,
        payment_links: Optional[PaymentLinkClient] = None,
        notifier: Optional[BillingNotifier] = None,
        subscription_repo: Optional[SubscriptionRepository] = None,
        invoice_repo: Optional[InvoiceRepository] = None,
        merchant_repo: Optional[MerchantRepository] = None,
        override_repo: Optional[OverrideRepository] = None,
    ):
        self.session = session
        self.payment_links = payment_links or PaymentLinkClient()
        self.notifier = notifier or BillingNotifier()
        self.subscription_repo = subscription_repo or SubscriptionRepository(session)
        self.invoice_repo = invoice_repo or InvoiceRepository(session)
        self.merchant_repo = merchant_repo or MerchantRepository(session)
        self.resolver = OverrideResolver(session, override_repo=override_repo)
        self.lifecycle = SubscriptionLifecycle(
            session,
            subscription_repo=self.subscription_repo,
            invoice_repo=self.invoice_repo,
            notifier=self.notifier,
        )

    async def generate(
        self,
        subscription: Subscription,
        now: Optional[datetime] = None,
    ) -> GenerationResult:
        """Generate the invoice for the subscription's next billing cycle.

        Args:
            subscription: Subscription to bill
            now: Current time, defaults to the wall clock

        Returns:
            GenerationResult: created, existing, or skipped with a reason

        Raises:
            PaymentLinkError: If the payment-link service fails (retryable)
            ConfigurationError: If collaborator settings are missing
        """
        now = now or datetime.now(timezone.utc)

        if not subscription.is_active() or subscription.next_billing_at is None:
            return self._record(GenerationResult.skipped("subscription not active"))

        subscription_id = subscription.id
        cycle_start = subscription.next_billing_at

        if await self.lifecycle.enforce_cycle_cap(subscription, now):
            await self.session.commit()
            await self.notifier.send(
                BillingEvent.COMPLETION,
                subscription.id,
                {"cycles_completed": subscription.cycles_completed},
            )
            return self._record(GenerationResult.skipped("max cycles reached"))

        if now < cycle_start - timedelta(days=subscription.generate_days_in_advance):
            return self._record(GenerationResult.skipped("too early"))

        existing = await self.invoice_repo.get_by_cycle(subscription.id, cycle_start)
        if existing is not None:
            logger.debug(f"Invoice {existing.id} already exists for {subscription.id} cycle {cycle_start.isoformat()}")
            return self._record(GenerationResult.existing(existing))

        amount = await self.resolver.resolve(subscription, cycle_start)
        due_date = compute_due_date(subscription, cycle_start)
        expires_at = compute_expires_at(subscription, cycle_start)
        cycle_number = subscription.cycles_completed + 1

        link = await self.payment_links.create(
            PaymentLinkRequest(
                merchant_id=subscription.merchant_id,
                title=subscription.title,
                amount=amount,
                currency=subscription.currency,
                expires_at=expires_at,
                accepted_cryptos=list(subscription.accepted_cryptos or []),
                max_uses=1,
                charge_customer_fee=bool(subscription.charge_customer_fee),
                auto_convert_enabled=bool(subscription.auto_convert_enabled),
                preferred_payout_currency=subscription.preferred_payout_currency,
                subscription_id=subscription.id,
                metadata={
                    "subscription_id": str(subscription.id),
                    "cycle_start_at": cycle_start.isoformat(),
                    "cycle_number": cycle_number,
                    "type": "subscription_invoice",
                },
            )
        )

        try:
            invoice_number = await self.merchant_repo.next_invoice_number(subscription.merchant_id)
            invoice = await self.invoice_repo.create(
                subscription_id=subscription.id,
                merchant_id=subscription.merchant_id,
                invoice_number=invoice_number,
                cycle_start_at=cycle_start,
                due_date=due_date,
                expires_at=expires_at,
                amount=amount,
                currency=subscription.currency,
                payment_link_id=link.id,
                payment_url=link.public_url,
                status=InvoiceStatus.SENT.value,
            )
            await self.subscription_repo.update(
                subscription,
                next_billing_at=next_billing_boundary(subscription, now, after=cycle_start),
                cycles_completed=subscription.cycles_completed + 1,
            )
            await self.session.commit()
        except DuplicateInvoiceError:
            await self.session.rollback()
            existing = await self.invoice_repo.get_by_cycle(subscription_id, cycle_start)
            logger.warning(
                f"Concurrent generation for subscription {subscription_id} cycle "
                f"{cycle_start.isoformat()}, payment link {link.id} is orphaned and should be expired",
                extra={"subscription_id": subscription_id, "payment_link_id": link.id},
            )
            if existing is None:
                return self._record(GenerationResult.skipped("invoice conflict"))
            return self._record(GenerationResult.existing(existing))
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            f"Created invoice #{invoice_number} for subscription {subscription.id} "
            f"cycle {cycle_start.isoformat()} amount {amount} {subscription.currency}, "
            f"next billing {subscription.next_billing_at.isoformat()}"
        )

        await self.notifier.send(
            BillingEvent.INVOICE,
            subscription.id,
            {
                "invoice_id": str(invoice.id),
                "invoice_number": invoice_number,
                "payment_url": link.public_url,
                "invoice_data": {
                    "amount": str(amount),
                    "currency": subscription.currency,
                    "due_date": due_date.isoformat(),
                },
            },
        )

        return self._record(
            GenerationResult(
                outcome=GenerationOutcome.CREATED,
                invoice=invoice,
                payment_url=link.public_url,
            )
        )

    def _record(self, result: GenerationResult) -> GenerationResult:
        INVOICE_GENERATION_TOTAL.labels(outcome=result.outcome).inc()
        return result
