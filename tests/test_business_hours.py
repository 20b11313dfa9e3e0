"""
Tests for business hours arithmetic

Tests cover:
- Working time inside one day, across nights and across weekends
- Timezone-shifted working windows
- Business time checks and the next opening
"""
from datetime import datetime, time
from zoneinfo import ZoneInfo

import pytest

from app.core.config import settings
from app.services.business_hours import BusinessCalendar, parse_business_days


def calendar(tz: str = "UTC", days=(1, 2, 3, 4, 5)) -> BusinessCalendar:
    return BusinessCalendar(days=frozenset(days), start=time(9), end=time(18), tz=ZoneInfo(tz))


# 2026-01-15 is a Thursday
THURSDAY = 15


def jan(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 1, day, hour, minute)


class TestBusinessHours:
    """Tests for working time between two timestamps."""

    def test_same_day(self):
        assert calendar().business_hours(jan(THURSDAY, 10), jan(THURSDAY, 12, 30)) == 2.5

    def test_outside_hours_are_not_counted(self):
        assert calendar().business_hours(jan(THURSDAY, 7), jan(THURSDAY, 20)) == 9.0

    def test_overnight(self):
        assert calendar().business_hours(jan(THURSDAY, 17), jan(16, 10)) == 2.0

    def test_over_weekend(self):
        # Friday 17:00 to Monday 10:00
        assert calendar().business_hours(jan(16, 17), jan(19, 10)) == 2.0

    def test_weekend_only(self):
        assert calendar().business_seconds(jan(17, 10), jan(18, 14)) == 0.0

    def test_reversed_range_is_zero(self):
        assert calendar().business_seconds(jan(THURSDAY, 12), jan(THURSDAY, 10)) == 0.0

    def test_timezone_shifts_window(self):
        # New York in January is UTC-5: 09:00-18:00 local is 14:00-23:00 UTC
        new_york = calendar("America/New_York")

        assert new_york.business_hours(jan(THURSDAY, 13), jan(THURSDAY, 15)) == 1.0
        assert new_york.business_hours(jan(THURSDAY, 22), jan(16, 2)) == 1.0

    def test_from_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "BUSINESS_DAYS", "1,2,3,4,5,6")
        monkeypatch.setattr(settings, "BUSINESS_HOURS_START", "08:30")
        monkeypatch.setattr(settings, "BUSINESS_HOURS_END", "12:00")
        monkeypatch.setattr(settings, "BUSINESS_TIMEZONE", "Europe/Berlin")

        configured = BusinessCalendar.from_settings()

        assert configured.days == frozenset({1, 2, 3, 4, 5, 6})
        assert configured.start == time(8, 30)
        assert configured.end == time(12)
        # Saturday 07:30-11:00 UTC is 08:30-12:00 in Berlin
        assert configured.business_hours(jan(17, 6), jan(17, 13)) == 3.5

    def test_invalid_business_days(self):
        with pytest.raises(ValueError):
            parse_business_days("1,2,8")


class TestBusinessTime:
    """Tests for business time checks."""

    def test_is_business_time(self):
        hours = calendar()

        assert hours.is_business_time(jan(THURSDAY, 9))
        assert not hours.is_business_time(jan(THURSDAY, 18))
        assert not hours.is_business_time(jan(17, 12))

    def test_next_start_inside_hours_is_now(self):
        assert calendar().next_business_start(jan(THURSDAY, 10, 15)) == jan(THURSDAY, 10, 15)

    def test_next_start_later_today(self):
        assert calendar().next_business_start(jan(THURSDAY, 7)) == jan(THURSDAY, 9)

    def test_next_start_after_weekend(self):
        assert calendar().next_business_start(jan(16, 19)) == jan(19, 9)

    def test_next_start_in_other_timezone(self):
        assert calendar("America/New_York").next_business_start(jan(THURSDAY, 3)) == jan(THURSDAY, 14)

    def test_no_business_days(self):
        assert calendar(days=()).next_business_start(jan(THURSDAY, 7)) is None
