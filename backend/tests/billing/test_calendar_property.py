"""Property-based tests for billing calendar arithmetic.

Tests that:
- Month and year steps clamp to the end of shorter months
- Boundaries are always derived from the anchor, so clamping never drifts
- next_due_boundary returns the smallest boundary strictly after now
- Anchors far in the past catch up without per-cycle iteration
"""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from hypothesis import given, settings, strategies as st
import pytest

from app.modules.billing.calendar import (
    advance,
    boundary,
    is_boundary,
    next_due_boundary,
)
from app.modules.billing.lifecycle import next_billing_boundary
from fakes import make_merchant, make_subscription


UTC = timezone.utc

unit_strategy = st.sampled_from(["day", "week", "month", "year"])
count_strategy = st.integers(min_value=1, max_value=6)
anchor_strategy = st.datetimes(
    min_value=datetime(2000, 1, 1),
    max_value=datetime(2030, 12, 31),
).map(lambda value: value.replace(microsecond=0, tzinfo=UTC))
offset_strategy = st.timedeltas(min_value=timedelta(days=-30), max_value=timedelta(days=3650))


def _index_of(anchor, unit, count, instant) -> int:
    k = 0
    while boundary(anchor, unit, count, k) < instant:
        k += 1
    assert boundary(anchor, unit, count, k) == instant
    return k


class TestAdvance:
    """Tests for single-step calendar advance."""

    def test_month_end_clamps_in_leap_year(self) -> None:
        jan_31 = datetime(2024, 1, 31, 9, 0, tzinfo=UTC)
        assert advance(jan_31, "month", 1) == datetime(2024, 2, 29, 9, 0, tzinfo=UTC)

    def test_month_end_clamps_in_common_year(self) -> None:
        jan_31 = datetime(2023, 1, 31, tzinfo=UTC)
        assert advance(jan_31, "month", 1) == datetime(2023, 2, 28, tzinfo=UTC)

    def test_leap_day_yearly_clamps(self) -> None:
        leap_day = datetime(2024, 2, 29, tzinfo=UTC)
        assert advance(leap_day, "year", 1) == datetime(2025, 2, 28, tzinfo=UTC)
        assert advance(leap_day, "year", 4) == datetime(2028, 2, 29, tzinfo=UTC)

    def test_week_and_day(self) -> None:
        start = datetime(2024, 3, 1, tzinfo=UTC)
        assert advance(start, "week", 2) == datetime(2024, 3, 15, tzinfo=UTC)
        assert advance(start, "day", 30) == datetime(2024, 3, 31, tzinfo=UTC)

    def test_zero_count_is_identity(self) -> None:
        start = datetime(2024, 3, 1, tzinfo=UTC)
        assert advance(start, "month", 0) == start

    def test_rejects_unknown_unit(self) -> None:
        with pytest.raises(ValueError):
            advance(datetime(2024, 1, 1, tzinfo=UTC), "fortnight", 1)

    def test_rejects_negative_count(self) -> None:
        with pytest.raises(ValueError):
            advance(datetime(2024, 1, 1, tzinfo=UTC), "month", -1)


class TestAnchorDerivedBoundaries:
    """Boundaries are anchor + k * interval, never chained from clamped values."""

    def test_day_31_anchor_does_not_drift(self) -> None:
        anchor = datetime(2024, 1, 31, tzinfo=UTC)
        boundaries = [boundary(anchor, "month", 1, k) for k in range(4)]

        assert [b.date().isoformat() for b in boundaries] == [
            "2024-01-31",
            "2024-02-29",
            "2024-03-31",
            "2024-04-30",
        ]

    def test_rejects_non_positive_interval_count(self) -> None:
        anchor = datetime(2024, 1, 1, tzinfo=UTC)
        with pytest.raises(ValueError):
            boundary(anchor, "month", 0, 1)
        with pytest.raises(ValueError):
            next_due_boundary(anchor, "month", 0, anchor)

    @given(anchor=anchor_strategy, unit=unit_strategy, count=count_strategy, k=st.integers(0, 60))
    @settings(max_examples=100)
    def test_every_boundary_is_recognized(self, anchor, unit, count, k) -> None:
        """*For any* anchor and index, boundary k SHALL be recognized as a boundary."""
        assert is_boundary(anchor, unit, count, boundary(anchor, unit, count, k))

    @given(anchor=anchor_strategy, unit=unit_strategy, count=count_strategy, k=st.integers(0, 60))
    @settings(max_examples=100)
    def test_boundaries_strictly_increase(self, anchor, unit, count, k) -> None:
        assert boundary(anchor, unit, count, k) < boundary(anchor, unit, count, k + 1)


class TestNextDueBoundary:
    """Tests for catch-up to the next boundary after now."""

    @given(anchor=anchor_strategy, unit=unit_strategy, count=count_strategy, offset=offset_strategy)
    @settings(max_examples=100)
    def test_result_is_smallest_boundary_after_now(self, anchor, unit, count, offset) -> None:
        """*For any* anchor and now, the result SHALL be the first boundary strictly after now."""
        now = anchor + offset
        result = next_due_boundary(anchor, unit, count, now)

        if now < anchor:
            assert result == anchor
            return

        assert result > now
        k = _index_of(anchor, unit, count, result)
        assert k >= 1
        assert boundary(anchor, unit, count, k - 1) <= now

    @given(anchor=anchor_strategy, unit=unit_strategy, count=count_strategy, offset=offset_strategy)
    @settings(max_examples=100)
    def test_result_is_after_both_now_and_after(self, anchor, unit, count, offset) -> None:
        now = anchor + offset
        after = anchor + timedelta(days=400)
        result = next_due_boundary(anchor, unit, count, now, after=after)

        assert result > after
        assert result > now
        assert is_boundary(anchor, unit, count, result)

    def test_now_exactly_on_boundary_moves_to_next(self) -> None:
        anchor = datetime(2024, 1, 15, tzinfo=UTC)
        now = datetime(2024, 3, 15, tzinfo=UTC)
        assert next_due_boundary(anchor, "month", 1, now) == datetime(2024, 4, 15, tzinfo=UTC)

    def test_decades_of_missed_daily_cycles(self) -> None:
        anchor = datetime(1995, 6, 1, 12, 0, tzinfo=UTC)
        now = datetime(2024, 6, 1, 11, 59, tzinfo=UTC)
        assert next_due_boundary(anchor, "day", 1, now) == datetime(2024, 6, 1, 12, 0, tzinfo=UTC)

    def test_quarterly_from_month_end(self) -> None:
        anchor = datetime(2023, 11, 30, tzinfo=UTC)
        now = datetime(2024, 2, 1, tzinfo=UTC)
        assert next_due_boundary(anchor, "month", 3, now) == datetime(2024, 2, 29, tzinfo=UTC)


class TestMerchantLocalBoundaries:
    """Boundaries follow the merchant's wall clock across DST changes."""

    def test_local_time_is_stable_across_dst(self) -> None:
        new_york = ZoneInfo("America/New_York")
        anchor = datetime(2024, 1, 1, 9, 0, tzinfo=new_york)
        subscription = make_subscription(
            anchor=anchor.astimezone(UTC),
            merchant=make_merchant("America/New_York"),
        )

        result = next_billing_boundary(subscription, datetime(2024, 3, 15, tzinfo=UTC))

        assert result.tzinfo == UTC
        assert result == datetime(2024, 4, 1, 13, 0, tzinfo=UTC)
        assert result.astimezone(new_york).hour == 9

    def test_unknown_merchant_timezone_falls_back_to_default(self) -> None:
        subscription = make_subscription(merchant=make_merchant("Mars/Olympus_Mons"))

        result = next_billing_boundary(subscription, datetime(2024, 1, 10, tzinfo=UTC))

        assert result == datetime(2024, 2, 1, tzinfo=UTC)
