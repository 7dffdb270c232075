"""
Step deadline arithmetic.

All computations happen at day granularity on UTC calendar dates, so the time
of day never changes a result. Business days are Monday to Friday; holidays
are not modelled.

The two functions are inverses of each other for any start date::

    elapsed_days(start, compute_due_date(start, n, flag), flag) == n
"""

from datetime import date, datetime, timedelta, timezone

SATURDAY = 5


def to_utc_date(value: date | datetime) -> date:
    """Reduce a timestamp to its UTC calendar date (naive values are UTC)."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def is_business_day(day: date) -> bool:
    return day.weekday() < SATURDAY


def add_business_days(start: date, days: int) -> date:
    """Move forward ``days`` weekdays from ``start`` (``start`` itself is not counted)."""
    if days <= 0:
        return start
    current = start
    # Weekdays after a weekend start are the weekdays after the preceding Friday
    while not is_business_day(current):
        current -= timedelta(days=1)
    # Whole weeks first: five business days per seven calendar days
    weeks, remaining = divmod(days, 5)
    current += timedelta(weeks=weeks)
    while remaining > 0:
        current += timedelta(days=1)
        if is_business_day(current):
            remaining -= 1
    return current


def business_days_between(start: date, end: date) -> int:
    """Count weekdays in the half-open interval (start, end]; negative if end < start."""
    if end < start:
        return -business_days_between(end, start)
    total_days = (end - start).days
    weeks, rest = divmod(total_days, 7)
    count = weeks * 5
    current = start + timedelta(weeks=weeks)
    for _ in range(rest):
        current += timedelta(days=1)
        if is_business_day(current):
            count += 1
    return count


def compute_due_date(
    start: date | datetime,
    time_limit_days: int,
    is_calendar_days: bool,
) -> date:
    """
    Due date of a step that starts on ``start``.

    A zero time limit means "no real deadline" and returns the start date
    unchanged regardless of the day type.
    """
    if time_limit_days < 0:
        raise ValueError("time_limit_days must be >= 0")
    start_day = to_utc_date(start)
    if time_limit_days == 0:
        return start_day
    if is_calendar_days:
        return start_day + timedelta(days=time_limit_days)
    return add_business_days(start_day, time_limit_days)


def elapsed_days(
    start: date | datetime,
    end: date | datetime,
    is_calendar_days: bool,
) -> int:
    """Whole days from ``start`` to ``end`` under the same day-type rule."""
    start_day = to_utc_date(start)
    end_day = to_utc_date(end)
    if is_calendar_days:
        return (end_day - start_day).days
    return business_days_between(start_day, end_day)
