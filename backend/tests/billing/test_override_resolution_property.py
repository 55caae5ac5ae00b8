"""Property-based tests for amount override resolution.

Tests that:
- The override with the latest effective_from on or before the cycle date wins
- Expired overrides no longer apply
- Resolution uses the cycle date in the merchant timezone, not generation time
- Invalid overrides are rejected before anything is stored
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from hypothesis import given, settings, strategies as st
import pytest

from app.modules.billing.exceptions import InvalidOverrideError
from app.modules.billing.overrides import OverrideResolver, local_cycle_date, merchant_zone
from fakes import FakeOverrideRepository, make_merchant, make_session, make_subscription


UTC = timezone.utc

amount_strategy = st.decimals(
    min_value=Decimal("0.01"), max_value=Decimal("10000"), places=2, allow_nan=False, allow_infinity=False
)
day_offset_strategy = st.integers(min_value=-200, max_value=200)


def _resolver() -> tuple[OverrideResolver, FakeOverrideRepository]:
    repo = FakeOverrideRepository()
    return OverrideResolver(make_session(), override_repo=repo), repo


class TestOverrideSelection:
    """Tests for choosing the applicable override."""

    @pytest.mark.asyncio
    async def test_base_amount_without_overrides(self) -> None:
        resolver, _ = _resolver()
        subscription = make_subscription(amount=Decimal("25.00"))

        amount = await resolver.resolve(subscription, datetime(2024, 2, 1, tzinfo=UTC))

        assert amount == Decimal("25.00")

    @pytest.mark.asyncio
    async def test_latest_effective_override_wins(self) -> None:
        resolver, _ = _resolver()
        subscription = make_subscription(amount=Decimal("25.00"))
        await resolver.schedule(subscription.id, date(2024, 2, 1), Decimal("30.00"))
        await resolver.schedule(subscription.id, date(2024, 4, 1), Decimal("35.00"))

        assert await resolver.resolve(subscription, datetime(2024, 1, 1, tzinfo=UTC)) == Decimal("25.00")
        assert await resolver.resolve(subscription, datetime(2024, 2, 1, tzinfo=UTC)) == Decimal("30.00")
        assert await resolver.resolve(subscription, datetime(2024, 3, 1, tzinfo=UTC)) == Decimal("30.00")
        assert await resolver.resolve(subscription, datetime(2024, 4, 1, tzinfo=UTC)) == Decimal("35.00")

    @pytest.mark.asyncio
    async def test_expired_override_falls_back_to_base(self) -> None:
        resolver, _ = _resolver()
        subscription = make_subscription(amount=Decimal("25.00"))
        await resolver.schedule(
            subscription.id, date(2024, 2, 1), Decimal("10.00"), effective_until=date(2024, 2, 28)
        )

        assert await resolver.resolve(subscription, datetime(2024, 2, 1, tzinfo=UTC)) == Decimal("10.00")
        assert await resolver.resolve(subscription, datetime(2024, 3, 1, tzinfo=UTC)) == Decimal("25.00")

    @given(
        base=amount_strategy,
        override_amount=amount_strategy,
        start_offset=day_offset_strategy,
        cycle_offset=day_offset_strategy,
    )
    @settings(max_examples=100)
    def test_override_applies_exactly_from_its_start(
        self,
        base: Decimal,
        override_amount: Decimal,
        start_offset: int,
        cycle_offset: int,
    ) -> None:
        """*For any* override, cycles before effective_from SHALL bill the base amount."""
        resolver, _ = _resolver()
        subscription = make_subscription(amount=base)
        reference = date(2024, 6, 1)
        effective_from = reference + timedelta(days=start_offset)
        cycle_date = reference + timedelta(days=cycle_offset)

        async def run() -> Decimal:
            await resolver.schedule(subscription.id, effective_from, override_amount)
            return await resolver.resolve_for_date(subscription, cycle_date)

        amount = asyncio.run(run())

        expected = override_amount if cycle_date >= effective_from else base
        assert amount == expected


class TestMerchantLocalCycleDate:
    """Overrides resolve against the merchant-local cycle date."""

    @pytest.mark.asyncio
    async def test_cycle_date_uses_merchant_timezone(self) -> None:
        resolver, _ = _resolver()
        # 2024-03-01 09:00 in Tokyo is still 2024-02-29 in UTC
        subscription = make_subscription(
            amount=Decimal("25.00"),
            merchant=make_merchant("Asia/Tokyo"),
        )
        await resolver.schedule(subscription.id, date(2024, 3, 1), Decimal("40.00"))

        cycle_start = datetime(2024, 3, 1, 0, 0, tzinfo=UTC) - timedelta(hours=9)
        assert cycle_start.date() == date(2024, 2, 29)

        assert await resolver.resolve(subscription, cycle_start) == Decimal("40.00")

    def test_local_cycle_date_conversion(self) -> None:
        subscription = make_subscription(merchant=make_merchant("America/Los_Angeles"))
        instant = datetime(2024, 7, 1, 3, 0, tzinfo=UTC)

        assert local_cycle_date(instant, merchant_zone(subscription)) == date(2024, 6, 30)


class TestOverrideValidation:
    """Invalid overrides are rejected."""

    @pytest.mark.asyncio
    async def test_rejects_non_positive_amount(self) -> None:
        resolver, repo = _resolver()
        with pytest.raises(InvalidOverrideError):
            await resolver.schedule(make_subscription().id, date(2024, 1, 1), Decimal("0"))
        assert repo.overrides == []

    @pytest.mark.asyncio
    async def test_rejects_inverted_range(self) -> None:
        resolver, repo = _resolver()
        with pytest.raises(InvalidOverrideError):
            await resolver.schedule(
                make_subscription().id, date(2024, 3, 1), Decimal("5"), effective_until=date(2024, 2, 1)
            )
        assert repo.overrides == []
