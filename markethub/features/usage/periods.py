"""
markethub/features/usage/periods.py

Metering period rollover.

Periods are UTC calendar windows: a daily period ends at midnight UTC, a
monthly period at the start of the next calendar month. period_start only
moves forward.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from markethub.models.usage import Cadence, Category, UsageRecord


def as_utc(moment: Optional[datetime] = None) -> datetime:
    """Normalize to an aware UTC datetime (naive values are taken as UTC)."""
    if moment is None:
        return datetime.now(timezone.utc)
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _period_key(moment: datetime, cadence: Cadence) -> Tuple[int, ...]:
    if cadence == Cadence.DAILY:
        return (moment.year, moment.month, moment.day)
    return (moment.year, moment.month)


def is_new_period(period_start: datetime, cadence: Cadence, now: datetime) -> bool:
    """True when `now` falls in a later window than `period_start`."""
    start = as_utc(period_start)
    current = as_utc(now)
    if current <= start:
        return False
    return _period_key(current, cadence) > _period_key(start, cadence)


def next_period_start(period_start: datetime, cadence: Cadence) -> datetime:
    """Start of the window following the one containing `period_start`."""
    start = as_utc(period_start)
    if cadence == Cadence.DAILY:
        day = datetime(start.year, start.month, start.day, tzinfo=timezone.utc)
        return day + timedelta(days=1)
    if start.month == 12:
        return datetime(start.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(start.year, start.month + 1, 1, tzinfo=timezone.utc)


def roll_if_needed(record: UsageRecord, cadence: Cadence, now: Optional[datetime] = None) -> UsageRecord:
    """
    Reset every counter and move period_start to `now` if a new period began.

    Pure: returns a new record, the caller decides whether to persist it.
    """
    current = as_utc(now)
    if not is_new_period(record.period_start, cadence, current):
        return record
    reset = {category.column: 0 for category in Category}
    reset["period_start"] = current
    return record.model_copy(update=reset)
