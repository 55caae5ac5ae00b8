"""Repositories for recurring billing database operations.

Repositories flush but never commit; the calling service owns the
transaction boundary so that invoice insertion, the invoice-number counter
and the subscription pointer advance commit together.
"""

import uuid
from datetime import datetime, date
from typing import Optional

from sqlalchemy import select, update, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.exceptions import DuplicateInvoiceError
from app.modules.billing.models import (
    AmountOverride,
    Invoice,
    InvoiceStatus,
    Merchant,
    Subscription,
    SubscriptionStatus,
)


class MerchantRepository:
    """Repository for merchant operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, merchant_id: uuid.UUID) -> Optional[Merchant]:
        """Get merchant by ID."""
        result = await self.session.execute(
            select(Merchant).where(Merchant.id == merchant_id)
        )
        return result.scalar_one_or_none()

    async def next_invoice_number(self, merchant_id: uuid.UUID) -> int:
        """Allocate the next merchant-scoped invoice number.

        A single ``UPDATE ... RETURNING`` takes the merchant row lock, so
        concurrent allocations for one merchant serialize and never reuse or
        skip a number once their transactions commit.
        """
        result = await self.session.execute(
            update(Merchant)
            .where(Merchant.id == merchant_id)
            .values(last_invoice_number=Merchant.last_invoice_number + 1)
            .returning(Merchant.last_invoice_number)
        )
        number = result.scalar_one_or_none()
        if number is None:
            raise LookupError(f"Merchant {merchant_id} not found")
        return number


class SubscriptionRepository:
    """Repository for subscription operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        """Get subscription by ID, refreshing any stale identity-map copy."""
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_due_subscription_ids(
        self,
        cutoff: datetime,
        limit: Optional[int] = None,
    ) -> list[uuid.UUID]:
        """Get IDs of active subscriptions whose next billing is at or before cutoff."""
        query = (
            select(Subscription.id)
            .where(
                and_(
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Subscription.next_billing_at.is_not(None),
                    Subscription.next_billing_at <= cutoff,
                )
            )
            .order_by(Subscription.next_billing_at)
        )
        if limit:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_ids_with_unpaid_invoices(self, due_before: date) -> list[uuid.UUID]:
        """Get IDs of active subscriptions holding unpaid invoices due before a date."""
        result = await self.session.execute(
            select(Subscription.id)
            .join(Invoice, Invoice.subscription_id == Subscription.id)
            .where(
                and_(
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Invoice.status == InvoiceStatus.SENT.value,
                    Invoice.due_date < due_before,
                )
            )
            .distinct()
        )
        return list(result.scalars().all())

    async def update(self, subscription: Subscription, **kwargs) -> Subscription:
        """Apply attribute changes to a subscription and flush."""
        for key, value in kwargs.items():
            if hasattr(subscription, key):
                setattr(subscription, key, value)
        await self.session.flush()
        return subscription

    async def increment_paid_cycles(self, subscription_id: uuid.UUID) -> None:
        """Atomically increment the paid cycle counter."""
        await self.session.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id)
            .values(paid_cycles=Subscription.paid_cycles + 1)
        )


class OverrideRepository:
    """Repository for scheduled amount overrides."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_applicable(
        self,
        subscription_id: uuid.UUID,
        cycle_date: date,
    ) -> Optional[AmountOverride]:
        """Get the override with the latest effective_from on or before cycle_date."""
        result = await self.session.execute(
            select(AmountOverride)
            .where(
                and_(
                    AmountOverride.subscription_id == subscription_id,
                    AmountOverride.effective_from <= cycle_date,
                    (AmountOverride.effective_until.is_(None))
                    | (AmountOverride.effective_until >= cycle_date),
                )
            )
            .order_by(AmountOverride.effective_from.desc(), AmountOverride.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_for_subscription(self, subscription_id: uuid.UUID) -> list[AmountOverride]:
        """List overrides for a subscription ordered by effective_from."""
        result = await self.session.execute(
            select(AmountOverride)
            .where(AmountOverride.subscription_id == subscription_id)
            .order_by(AmountOverride.effective_from)
        )
        return list(result.scalars().all())

    async def create(self, **kwargs) -> AmountOverride:
        """Create an override."""
        override = AmountOverride(**kwargs)
        self.session.add(override)
        await self.session.flush()
        return override


class InvoiceRepository:
    """Repository for subscription invoice operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_cycle(
        self,
        subscription_id: uuid.UUID,
        cycle_start_at: datetime,
    ) -> Optional[Invoice]:
        """Get the invoice for a subscription cycle."""
        result = await self.session.execute(
            select(Invoice).where(
                and_(
                    Invoice.subscription_id == subscription_id,
                    Invoice.cycle_start_at == cycle_start_at,
                )
            )
        )
        return result.scalar_one_or_none()

    async def create(self, **kwargs) -> Invoice:
        """Insert an invoice.

        Raises:
            DuplicateInvoiceError: If the subscription cycle already has an invoice
        """
        invoice = Invoice(**kwargs)
        self.session.add(invoice)
        try:
            await self.session.flush()
        except IntegrityError as e:
            if "uq_invoice_subscription_cycle" in str(e.orig):
                raise DuplicateInvoiceError(
                    kwargs["subscription_id"], kwargs["cycle_start_at"]
                ) from e
            raise
        return invoice

    async def get_unpaid_for_subscription(self, subscription_id: uuid.UUID) -> list[Invoice]:
        """Get sent (unpaid) invoices ordered by due date."""
        result = await self.session.execute(
            select(Invoice)
            .where(
                and_(
                    Invoice.subscription_id == subscription_id,
                    Invoice.status == InvoiceStatus.SENT.value,
                )
            )
            .order_by(Invoice.due_date)
        )
        return list(result.scalars().all())

    async def list_for_subscription(
        self,
        subscription_id: uuid.UUID,
        limit: int = 50,
    ) -> list[Invoice]:
        """List invoices for a subscription, newest cycle first."""
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.subscription_id == subscription_id)
            .order_by(Invoice.cycle_start_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_paid_by_payment_link(
        self,
        payment_link_id: str,
        paid_at: datetime,
    ) -> Optional[uuid.UUID]:
        """Mark the invoice linked to a payment link as paid.

        Conditional on the invoice not already being paid, so at most one
        caller ever observes the transition.

        Returns:
            The invoice's subscription ID when this call marked it paid, else None
        """
        result = await self.session.execute(
            update(Invoice)
            .where(
                and_(
                    Invoice.payment_link_id == payment_link_id,
                    Invoice.status != InvoiceStatus.PAID.value,
                )
            )
            .values(status=InvoiceStatus.PAID.value, paid_at=paid_at)
            .returning(Invoice.subscription_id)
        )
        return result.scalars().first()

    async def void_unpaid(self, subscription_id: uuid.UUID) -> int:
        """Void all unpaid invoices of a subscription."""
        result = await self.session.execute(
            update(Invoice)
            .where(
                and_(
                    Invoice.subscription_id == subscription_id,
                    Invoice.status == InvoiceStatus.SENT.value,
                )
            )
            .values(status=InvoiceStatus.VOID.value)
        )
        return result.rowcount or 0
