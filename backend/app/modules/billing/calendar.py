"""Billing calendar arithmetic.

Every cycle boundary is derived from the subscription's billing anchor:
boundary ``k`` is ``advance(anchor, unit, count * k)``. Boundaries are never
computed by advancing a previously clamped boundary, so an anchor on the
31st bills on Jan 31, Feb 29, Mar 31 rather than drifting to the 29th.

Arithmetic is wall-clock arithmetic in the tzinfo carried by the anchor.
Callers localize the anchor to the merchant timezone first so that a cycle
on "the 1st at 09:00" stays there across DST changes.
"""

import calendar
import logging
from datetime import datetime, timedelta
from typing import Optional, Union

from app.modules.billing.exceptions import CatchUpLimitExceeded
from app.modules.billing.models import IntervalUnit

logger = logging.getLogger(__name__)

# Stepping iterations allowed after jumping to the estimated boundary index
MAX_CATCH_UP_ITERATIONS = 1000

UnitLike = Union[IntervalUnit, str]


def _unit(unit: UnitLike) -> IntervalUnit:
    try:
        return IntervalUnit(unit)
    except ValueError:
        raise ValueError(f"Unsupported interval unit: {unit!r}") from None


def _check_count(count: int) -> None:
    if not isinstance(count, int) or count < 1:
        raise ValueError(f"Interval count must be a positive integer, got {count!r}")


def _add_months(instant: datetime, months: int) -> datetime:
    month_index = instant.month - 1 + months
    year = instant.year + month_index // 12
    month = month_index % 12 + 1
    day = min(instant.day, calendar.monthrange(year, month)[1])
    return instant.replace(year=year, month=month, day=day)


def advance(instant: datetime, unit: UnitLike, count: int) -> datetime:
    """Advance an instant by ``count`` interval units.

    Month and year steps clamp to the end of the target month when the
    original day does not exist there (Jan 31 + 1 month is Feb 28/29,
    Feb 29 + 1 year is Feb 28).

    Args:
        instant: Starting instant
        unit: Interval unit (day, week, month, year)
        count: Number of units, zero or positive

    Returns:
        datetime: Advanced instant in the same tzinfo
    """
    unit = _unit(unit)
    if not isinstance(count, int) or count < 0:
        raise ValueError(f"Advance count must be a non-negative integer, got {count!r}")

    if unit == IntervalUnit.DAY:
        return instant + timedelta(days=count)
    if unit == IntervalUnit.WEEK:
        return instant + timedelta(weeks=count)
    if unit == IntervalUnit.MONTH:
        return _add_months(instant, count)
    return _add_months(instant, 12 * count)


def boundary(anchor: datetime, unit: UnitLike, count: int, k: int) -> datetime:
    """Return the k-th cycle boundary of an anchor (k = 0 is the anchor)."""
    _check_count(count)
    if k < 0:
        raise ValueError(f"Boundary index must be non-negative, got {k}")
    return advance(anchor, unit, count * k)


def _estimate_index(anchor: datetime, unit: IntervalUnit, count: int, target: datetime) -> int:
    """Estimate the index of the last boundary at or before ``target``.

    The estimate may be off by one in either direction; callers step from it.
    """
    if target <= anchor:
        return 0

    if unit in (IntervalUnit.DAY, IntervalUnit.WEEK):
        step_days = count if unit == IntervalUnit.DAY else count * 7
        return (target - anchor).days // step_days

    local_target = target.astimezone(anchor.tzinfo) if anchor.tzinfo else target
    months = (local_target.year - anchor.year) * 12 + (local_target.month - anchor.month)
    if unit == IntervalUnit.YEAR:
        return (months // 12) // count
    return months // count


def next_due_boundary(
    anchor: datetime,
    unit: UnitLike,
    count: int,
    now: datetime,
    after: Optional[datetime] = None,
) -> datetime:
    """Return the smallest anchor-aligned boundary strictly after ``now``.

    When ``after`` is given the result is also strictly after it, which lets
    the generator advance past a cycle billed ahead of time.

    Jumps to an estimated boundary index and steps from there, so a
    subscription whose anchor is years in the past costs a handful of
    iterations rather than one per missed cycle.

    Args:
        anchor: Billing anchor
        unit: Interval unit
        count: Interval count
        now: Reference instant
        after: Optional lower bound that the result must also exceed

    Returns:
        datetime: Next boundary

    Raises:
        CatchUpLimitExceeded: If stepping does not converge
    """
    unit = _unit(unit)
    _check_count(count)

    target = now if after is None or now >= after else after
    if target < anchor:
        return anchor

    k = max(0, _estimate_index(anchor, unit, count, target) - 1)
    candidate = boundary(anchor, unit, count, k)

    iterations = 0
    while candidate <= target:
        iterations += 1
        if iterations > MAX_CATCH_UP_ITERATIONS:
            logger.error(
                f"Catch-up did not converge: anchor={anchor.isoformat()} "
                f"unit={unit.value} count={count} target={target.isoformat()}"
            )
            raise CatchUpLimitExceeded(MAX_CATCH_UP_ITERATIONS)
        k += 1
        candidate = boundary(anchor, unit, count, k)

    return candidate


def is_boundary(anchor: datetime, unit: UnitLike, count: int, instant: datetime) -> bool:
    """Check whether an instant is one of ``anchor + k * interval`` for k >= 0."""
    unit = _unit(unit)
    _check_count(count)

    if instant < anchor:
        return False

    k = _estimate_index(anchor, unit, count, instant)
    for candidate_k in range(max(0, k - 1), k + 2):
        if boundary(anchor, unit, count, candidate_k) == instant:
            return True
    return False
