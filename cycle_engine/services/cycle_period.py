"""
Cycle period arithmetic.

Pure functions, no I/O. Every tenant has a UTC anchor date (start of cycle 0)
and a fixed cycle length in days. For a given instant:

    days          = utc_date(now) - anchor
    cycle_number  = floor(days / length)
    due_today     = days >= 0 and days % length == 0

Sub-day components of ``now`` are dropped before any arithmetic, so the
result only changes at UTC midnight. Before the anchor the tenant is never
due and ``cycle_number`` is negative.

Usage:
    from cycle_engine.services.cycle_period import calculate_cycle_period

    period = calculate_cycle_period(date(2025, 1, 5), 7, now=datetime.now(timezone.utc))
    if period.due_today:
        ...
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union


@dataclass(frozen=True)
class CyclePeriod:
    """Position of ``as_of`` within a tenant's cycle sequence."""

    anchor: date
    cycle_length_days: int
    as_of: date
    cycle_number: int
    due_today: bool
    cycle_start_date: date
    cycle_end_date: date  # inclusive
    next_due_date: date

    @property
    def started(self) -> bool:
        return self.as_of >= self.anchor

    @property
    def day_in_cycle(self) -> int:
        return (self.as_of - self.cycle_start_date).days


def to_utc_date(value: Union[date, datetime]) -> date:
    """
    Truncate an instant to its UTC calendar date.

    Naive datetimes are taken to be UTC already.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def calculate_cycle_period(
    anchor: Union[date, datetime],
    cycle_length_days: int,
    now: Optional[Union[date, datetime]] = None,
) -> CyclePeriod:
    """
    Compute the cycle index and due flag for ``now``.

    Args:
        anchor: Start of cycle 0 (normalised to its UTC date)
        cycle_length_days: Fixed cycle length, at least 1
        now: Reference instant (default: current UTC time)

    Returns:
        CyclePeriod for the reference date

    Raises:
        ValueError: If cycle_length_days < 1
    """
    if cycle_length_days < 1:
        raise ValueError(f"cycle_length_days must be >= 1, got {cycle_length_days}")

    anchor_date = to_utc_date(anchor)
    today = to_utc_date(now if now is not None else datetime.now(timezone.utc))

    days = (today - anchor_date).days
    # Python floor division/modulo keep negatives consistent:
    # cycle -1 covers the days right before the anchor.
    cycle_number, offset = divmod(days, cycle_length_days)
    due_today = days >= 0 and offset == 0

    cycle_start = anchor_date + timedelta(days=cycle_number * cycle_length_days)
    cycle_end = cycle_start + timedelta(days=cycle_length_days - 1)

    if days < 0:
        next_due = anchor_date
    elif due_today:
        next_due = today
    else:
        next_due = cycle_start + timedelta(days=cycle_length_days)

    return CyclePeriod(
        anchor=anchor_date,
        cycle_length_days=cycle_length_days,
        as_of=today,
        cycle_number=cycle_number,
        due_today=due_today,
        cycle_start_date=cycle_start,
        cycle_end_date=cycle_end,
        next_due_date=next_due,
    )


def is_due(anchor: Union[date, datetime], cycle_length_days: int, now: Optional[Union[date, datetime]] = None) -> bool:
    return calculate_cycle_period(anchor, cycle_length_days, now).due_today
