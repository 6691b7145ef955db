"""
Tests for calendar arithmetic and link expiry
"""

from datetime import date, datetime, timedelta, timezone

from microloans.dates import (
    add_days, calculate_days_overdue, calculate_link_expiry, date_range, days_between, days_until,
    is_expired, to_date, to_datetime,
)


class TestConversions:
    def test_to_date_from_strings(self):
        assert to_date("2024-01-31") == date(2024, 1, 31)
        assert to_date("2024-01-31T10:15:00Z") == date(2024, 1, 31)

    def test_to_date_from_datetime(self):
        assert to_date(datetime(2024, 1, 31, 23, 0, tzinfo=timezone.utc)) == date(2024, 1, 31)

    def test_naive_datetime_becomes_utc(self):
        value = to_datetime("2024-01-31T10:15:00")
        assert value.tzinfo == timezone.utc


class TestDayCounts:
    def test_days_between_crosses_month_end(self):
        assert days_between(date(2024, 1, 30), date(2024, 2, 2)) == 3

    def test_days_overdue_is_negative_before_due(self):
        due = date(2024, 3, 10)
        assert calculate_days_overdue(due, date(2024, 3, 8)) == -2
        assert calculate_days_overdue(due, date(2024, 3, 10)) == 0
        assert calculate_days_overdue(due, date(2024, 3, 14)) == 4

    def test_days_until(self):
        assert days_until(date(2024, 3, 10), date(2024, 3, 7)) == 3

    def test_add_days_and_range(self):
        assert add_days(date(2024, 2, 28), 1) == date(2024, 2, 29)
        assert list(date_range(date(2024, 1, 1), date(2024, 1, 3))) == [
            date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3)
        ]


class TestLinkExpiry:
    def test_fractional_hours(self):
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert calculate_link_expiry(0.5, now) == now + timedelta(minutes=30)

    def test_is_expired(self):
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert is_expired(now - timedelta(seconds=1), now)
        assert not is_expired((now + timedelta(hours=1)).isoformat(), now)
