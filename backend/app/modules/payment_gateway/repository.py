"""Repositories for payment transactions and webhook events."""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update, and_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.payment_gateway.models import (
    PaymentTransaction,
    TERMINAL_STATUSES,
    WebhookEvent,
)


class PaymentTransactionRepository:
    """Repository for payment transaction operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_transaction(self, **kwargs) -> PaymentTransaction:
        """Create a new payment transaction."""
        transaction = PaymentTransaction(**kwargs)
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def get_by_payment_id(self, payment_id: str) -> Optional[PaymentTransaction]:
        """Get transaction by processor payment ID.

        Always re-reads the row so a retry after a lost compare-and-set sees
        the winner's values rather than the identity-map copy.
        """
        result = await self.session.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.payment_id == payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def compare_and_set(
        self,
        transaction_id: uuid.UUID,
        expected_status: str,
        values: dict[str, Any],
    ) -> bool:
        """Update a transaction only if its status is still ``expected_status``.

        Returns:
            bool: True if the row was updated
        """
        result = await self.session.execute(
            update(PaymentTransaction)
            .where(
                and_(
                    PaymentTransaction.id == transaction_id,
                    PaymentTransaction.status == expected_status,
                )
            )
            .values(**values)
        )
        return result.rowcount == 1

    async def get_pending_payment_ids(self, limit: int = 100) -> list[str]:
        """Get processor IDs of non-terminal transactions, oldest first."""
        result = await self.session.execute(
            select(PaymentTransaction.payment_id)
            .where(PaymentTransaction.status.not_in(TERMINAL_STATUSES))
            .order_by(PaymentTransaction.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())


class WebhookEventRepository:
    """Repository for webhook delivery records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(self, provider: str, event_id: str, payload: dict) -> int:
        """Record a delivery, incrementing attempts on redelivery.

        Returns:
            int: Delivery attempt count for this event
        """
        statement = pg_insert(WebhookEvent).values(
            id=uuid.uuid4(),
            provider=provider,
            event_id=event_id,
            payload=payload,
            attempts=1,
        )
        statement = statement.on_conflict_do_update(
            constraint="uq_webhook_event_provider_event",
            set_={
                "attempts": WebhookEvent.attempts + 1,
                "payload": statement.excluded.payload,
            },
        ).returning(WebhookEvent.attempts)
        result = await self.session.execute(statement)
        return result.scalar_one()

    async def mark_processed(
        self,
        provider: str,
        event_id: str,
        result: str,
        processed_at: datetime,
    ) -> None:
        """Store the processing result of a delivery."""
        await self.session.execute(
            update(WebhookEvent)
            .where(
                and_(
                    WebhookEvent.provider == provider,
                    WebhookEvent.event_id == event_id,
                )
            )
            .values(result=result, processed_at=processed_at)
        )
