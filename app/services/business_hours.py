"""
Business hours arithmetic.

Ticket timestamps are stored as naive UTC. A BusinessCalendar converts them to
the support team's timezone and counts only the time that falls inside the
working window of a working day.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from typing import FrozenSet, Optional
from zoneinfo import ZoneInfo

from app.core.config import settings
from app.services.notification_preferences import parse_clock


def parse_business_days(value: str) -> FrozenSet[int]:
    """Parse "1,2,3,4,5" into ISO weekday numbers (Monday=1, Sunday=7)."""
    days = frozenset(int(part) for part in value.split(",") if part.strip())
    invalid = [day for day in days if not 1 <= day <= 7]
    if invalid:
        raise ValueError(f"Invalid business days: {sorted(invalid)}")
    return days


@dataclass(frozen=True)
class BusinessCalendar:
    days: FrozenSet[int]
    start: time
    end: time
    tz: ZoneInfo

    @classmethod
    def from_settings(cls) -> "BusinessCalendar":
        return cls(
            days=parse_business_days(settings.BUSINESS_DAYS),
            start=parse_clock(settings.BUSINESS_HOURS_START),
            end=parse_clock(settings.BUSINESS_HOURS_END),
            tz=ZoneInfo(settings.BUSINESS_TIMEZONE),
        )

    def _local(self, value: datetime) -> datetime:
        return value.replace(tzinfo=dt_timezone.utc).astimezone(self.tz)

    def _window(self, day: date):
        """UTC bounds of the working window on a local calendar day."""
        opens = datetime.combine(day, self.start, tzinfo=self.tz).astimezone(dt_timezone.utc)
        closes = datetime.combine(day, self.end, tzinfo=self.tz).astimezone(dt_timezone.utc)
        return opens, closes

    def business_seconds(self, start: datetime, end: datetime) -> float:
        """Working seconds between two naive UTC datetimes; 0 when end <= start."""
        if end <= start:
            return 0.0

        start_utc = start.replace(tzinfo=dt_timezone.utc)
        end_utc = end.replace(tzinfo=dt_timezone.utc)
        day = self._local(start).date()
        last_day = self._local(end).date()

        total = 0.0
        while day <= last_day:
            if day.isoweekday() in self.days:
                opens, closes = self._window(day)
                overlap = (min(closes, end_utc) - max(opens, start_utc)).total_seconds()
                if overlap > 0:
                    total += overlap
            day += timedelta(days=1)
        return total

    def business_hours(self, start: datetime, end: datetime) -> float:
        return round(self.business_seconds(start, end) / 3600, 2)

    def is_business_time(self, moment: datetime) -> bool:
        local = self._local(moment)
        if local.isoweekday() not in self.days:
            return False
        return self.start <= local.time().replace(tzinfo=None) < self.end

    def next_business_start(self, moment: datetime) -> Optional[datetime]:
        """
        The moment itself when inside business hours, otherwise the next
        opening (naive UTC). None when no weekday is a business day.
        """
        if self.is_business_time(moment):
            return moment

        day = self._local(moment).date()
        moment_utc = moment.replace(tzinfo=dt_timezone.utc)
        for offset in range(8):
            candidate = day + timedelta(days=offset)
            if candidate.isoweekday() not in self.days:
                continue
            opens, _ = self._window(candidate)
            if opens > moment_utc:
                return opens.replace(tzinfo=None)
        return None
