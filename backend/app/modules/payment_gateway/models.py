"""Payment gateway models for crypto payment reconciliation.

Implements PaymentTransaction (one attempt to pay a payment link or a
subscription invoice) and WebhookEvent (processor push deliveries).
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Integer, String, JSON, Numeric, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.core.database import Base


class GatewayProvider(str, Enum):
    """Supported payment processors."""
    NOWPAYMENTS = "nowpayments"


class PaymentStatus(str, Enum):
    """Local payment transaction status values.

    Progression is ranked (see reconciler.STATUS_RANK); failed and expired
    are terminal side exits.
    """
    WAITING = "waiting"
    CONFIRMING = "confirming"
    PARTIALLY_PAID = "partially_paid"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({
    PaymentStatus.CONFIRMED.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.EXPIRED.value,
})


class PaymentTransaction(Base):
    """Payment transaction tracked against the external processor."""

    __tablename__ = "payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # Processor identity
    provider: Mapped[str] = mapped_column(
        String(50), nullable=False, default=GatewayProvider.NOWPAYMENTS.value
    )
    payment_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Association
    payment_link_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    merchant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True, index=True
    )

    status: Mapped[str] = mapped_column(
        String(30), default=PaymentStatus.WAITING.value, nullable=False, index=True
    )

    # Requested amounts
    price_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8), nullable=True)
    price_currency: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    pay_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    pay_currency: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    pay_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Chain references
    payin_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payout_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    # Settlement
    amount_received: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    currency_received: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    payout_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    payout_currency: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    gateway_fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)

    # Last processor payload
    gateway_response: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_payment_tx_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<PaymentTransaction(payment_id={self.payment_id}, status={self.status})>"

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class WebhookEvent(Base):
    """Processor webhook delivery log.

    ``(provider, event_id)`` is unique; redeliveries increment ``attempts``.
    """

    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    result: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_event_provider_event"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent(provider={self.provider}, event_id={self.event_id}, attempts={self.attempts})>"
