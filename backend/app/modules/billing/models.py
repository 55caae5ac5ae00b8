"""Billing models for recurring subscriptions and their invoices.

Implements merchants, subscriptions, scheduled amount overrides and the
per-cycle subscription invoices.
"""

import uuid
from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.core.database import Base


class IntervalUnit(str, Enum):
    """Billing interval units."""
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InvoiceStatus(str, Enum):
    """Subscription invoice status values."""
    SENT = "sent"
    PAID = "paid"
    VOID = "void"


class Merchant(Base):
    """Merchant owning subscriptions.

    ``last_invoice_number`` is the merchant-scoped invoice counter. It is only
    ever advanced with a single ``UPDATE ... RETURNING`` statement so that
    concurrent generators for the same merchant serialize on the row lock.
    """

    __tablename__ = "merchants"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    last_invoice_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Merchant(id={self.id}, name={self.business_name})>"


class Subscription(Base):
    """Recurring billing agreement between a merchant and a customer.

    ``billing_anchor`` never changes after creation. ``next_billing_at`` is
    always one of ``anchor + k * interval`` and only moves forward.
    """

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    merchant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)

    # Pricing
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="USD")
    accepted_cryptos: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    charge_customer_fee: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_convert_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    preferred_payout_currency: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Cycle definition
    interval: Mapped[str] = mapped_column(String(10), nullable=False)
    interval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    billing_anchor: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    next_billing_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    # Status and counters
    status: Mapped[str] = mapped_column(
        String(20), default=SubscriptionStatus.ACTIVE.value, nullable=False, index=True
    )
    cycles_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_cycles: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_cycles: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Timing configuration
    invoice_due_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    generate_days_in_advance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    past_due_after_days: Mapped[int] = mapped_column(Integer, nullable=False, default=2)

    # Dunning
    pause_after_missed_payments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    auto_resume_on_payment: Mapped[bool] = mapped_column(Boolean, default=True)
    last_dunning_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Lifecycle timestamps
    paused_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resumed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    merchant: Mapped[Optional[Merchant]] = relationship(Merchant, lazy="joined")

    __table_args__ = (
        Index("ix_subscriptions_status_next_billing", "status", "next_billing_at"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, status={self.status}, next={self.next_billing_at})>"

    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE.value

    def is_terminal(self) -> bool:
        return self.status in (
            SubscriptionStatus.COMPLETED.value,
            SubscriptionStatus.CANCELLED.value,
        )

    def cycle_cap_reached(self) -> bool:
        """True when billing one more cycle would exceed ``max_cycles``."""
        return self.max_cycles is not None and self.cycles_completed + 1 > self.max_cycles


class AmountOverride(Base):
    """Scheduled price exception for a subscription.

    The applicable override for a cycle date is the one with the latest
    ``effective_from`` on or before that date whose ``effective_until`` (if
    any) has not passed.
    """

    __tablename__ = "subscription_amount_overrides"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_until: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notice_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_amount_overrides_subscription_from", "subscription_id", "effective_from"),
    )

    def __repr__(self) -> str:
        return f"<AmountOverride(subscription={self.subscription_id}, from={self.effective_from}, amount={self.amount})>"

    def applies_to(self, cycle_date: date) -> bool:
        if self.effective_from > cycle_date:
            return False
        return self.effective_until is None or self.effective_until >= cycle_date


class Invoice(Base):
    """One billing cycle's payment request.

    ``(subscription_id, cycle_start_at)`` is unique: at most one invoice ever
    exists per cycle. Once ``paid`` an invoice never changes status again.
    """

    __tablename__ = "subscription_invoices"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    merchant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    invoice_number: Mapped[int] = mapped_column(Integer, nullable=False)

    cycle_start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)

    payment_link_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payment_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), default=InvoiceStatus.SENT.value, nullable=False, index=True
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("subscription_id", "cycle_start_at", name="uq_invoice_subscription_cycle"),
        UniqueConstraint("merchant_id", "invoice_number", name="uq_invoice_merchant_number"),
    )

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, number={self.invoice_number}, cycle={self.cycle_start_at}, status={self.status})>"

    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID.value
