"""Amount override resolution.

Overrides are resolved against the cycle's local date in the merchant's
timezone, never against the wall-clock time of generation. A cycle anchored
to the 1st resolves overrides as of the 1st even when the invoice is
generated days early or late.
"""

import logging
import uuid
from datetime import datetime, date
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.modules.billing.exceptions import InvalidOverrideError
from app.modules.billing.models import AmountOverride, Subscription
from app.modules.billing.repository import OverrideRepository

logger = logging.getLogger(__name__)


def merchant_zone(subscription: Subscription) -> ZoneInfo:
    """Get the timezone of the subscription's merchant.

    Falls back to DEFAULT_MERCHANT_TIMEZONE when the merchant is not loaded,
    has no timezone, or names an unknown zone.
    """
    merchant = subscription.merchant
    name = (merchant.timezone if merchant is not None else None) or settings.DEFAULT_MERCHANT_TIMEZONE
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(
            f"Unknown timezone {name!r} for subscription {subscription.id}, "
            f"using {settings.DEFAULT_MERCHANT_TIMEZONE}"
        )
        return ZoneInfo(settings.DEFAULT_MERCHANT_TIMEZONE)


def local_cycle_date(instant: datetime, tz: ZoneInfo) -> date:
    """Get the calendar date of an instant in the given timezone."""
    return instant.astimezone(tz).date()


class OverrideResolver:
    """Resolves the billable amount of a subscription cycle."""

    def __init__(
        self,
        session: AsyncSession,
        override_repo: Optional[OverrideRepository] = None,
    ):
        self.session = session
        self.override_repo = override_repo or OverrideRepository(session)

    async def resolve(self, subscription: Subscription, cycle_start: datetime) -> Decimal:
        """Resolve the amount for the cycle starting at ``cycle_start``.

        Args:
            subscription: Subscription being billed
            cycle_start: Anchor-aligned cycle start instant

        Returns:
            Decimal: Applicable override amount, or the base amount
        """
        cycle_date = local_cycle_date(cycle_start, merchant_zone(subscription))
        return await self.resolve_for_date(subscription, cycle_date)

    async def resolve_for_date(self, subscription: Subscription, cycle_date: date) -> Decimal:
        """Resolve the amount for a local cycle date."""
        override = await self.override_repo.get_applicable(subscription.id, cycle_date)
        if override is None:
            return Decimal(subscription.amount)

        logger.debug(
            f"Override {override.id} applies to subscription {subscription.id} "
            f"on {cycle_date}: {override.amount}"
        )
        return Decimal(override.amount)

    async def schedule(
        self,
        subscription_id: uuid.UUID,
        effective_from: date,
        amount: Decimal,
        effective_until: Optional[date] = None,
        note: Optional[str] = None,
    ) -> AmountOverride:
        """Schedule an amount override.

        Raises:
            InvalidOverrideError: If the amount or date range is invalid
        """
        if amount is None or Decimal(amount) <= 0:
            raise InvalidOverrideError("Override amount must be positive")
        if effective_until is not None and effective_until <= effective_from:
            raise InvalidOverrideError("effective_until must be after effective_from")

        override = await self.override_repo.create(
            subscription_id=subscription_id,
            effective_from=effective_from,
            effective_until=effective_until,
            amount=Decimal(amount),
            note=note,
        )
        logger.info(
            f"Scheduled override for subscription {subscription_id} "
            f"from {effective_from}: {amount}"
        )
        return override
