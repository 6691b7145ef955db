"""
Date and Time Module

Clock access and calendar arithmetic used by the loan engine and the
scheduler. Timestamps are timezone-aware UTC; due dates are plain dates.
"""

from datetime import datetime, date, timedelta, timezone
from typing import Iterator, Optional, Union

DateLike = Union[date, datetime, str]


def utc_now() -> datetime:
    """Current UTC timestamp"""
    return datetime.now(timezone.utc)


def today() -> date:
    """Current UTC calendar date"""
    return utc_now().date()


def to_date(value: DateLike) -> date:
    """Normalise a date, datetime or ISO string to a date"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        # accepts both "2024-01-31" and full ISO timestamps
        if len(value) > 10:
            return datetime.fromisoformat(value.replace('Z', '+00:00')).date()
        return date.fromisoformat(value)
    raise TypeError(f"Cannot convert {type(value).__name__} to date")


def to_datetime(value: Union[datetime, str]) -> datetime:
    """Normalise a datetime or ISO string to an aware UTC datetime"""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def add_days(value: DateLike, days: int) -> date:
    return to_date(value) + timedelta(days=days)


def days_between(start: DateLike, end: DateLike) -> int:
    """Whole days from start to end (negative when end is before start)"""
    return (to_date(end) - to_date(start)).days


def calculate_days_overdue(due_date: DateLike, as_of: Optional[date] = None) -> int:
    """Days past the due date; negative while the loan is not yet due"""
    return days_between(due_date, as_of or today())


def days_until(due_date: DateLike, as_of: Optional[date] = None) -> int:
    return days_between(as_of or today(), due_date)


def date_range(start: DateLike, end: DateLike) -> Iterator[date]:
    """Yield every date from start to end inclusive"""
    current = to_date(start)
    last = to_date(end)
    while current <= last:
        yield current
        current += timedelta(days=1)


def calculate_link_expiry(hours_valid: float = 24, now: Optional[datetime] = None) -> datetime:
    """Expiry timestamp for an application link (fractional hours allowed)"""
    return (now or utc_now()) + timedelta(hours=hours_valid)


def is_expired(expires_at: Union[datetime, str], now: Optional[datetime] = None) -> bool:
    return to_datetime(expires_at) < (now or utc_now())
