"""
Cron schedule evaluation for scheduled reports.

Parses standard 5-field crontab expressions with APScheduler's CronTrigger and
computes next fire times in the schedule's timezone. Stored timestamps are
naive UTC, like every other timestamp in the database.
"""

import re
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Dict, List

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger

from app.core.exceptions import InvalidCronExpression

# crontab numbering: 0 (and 7) is Sunday
CRON_DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]

COMMON_SCHEDULES: Dict[str, str] = {
    "0 0 * * *": "Daily at midnight",
    "0 6 * * *": "Daily at 6:00 AM",
    "0 9 * * *": "Daily at 9:00 AM",
    "0 12 * * *": "Daily at 12:00 PM",
    "0 18 * * *": "Daily at 6:00 PM",
    "0 0 * * 1": "Weekly on Mondays",
    "0 0 * * 0": "Weekly on Sundays",
    "0 9 * * 1-5": "Weekdays at 9:00 AM",
    "0 0 1 * *": "Monthly on the 1st",
    "0 0 15 * *": "Monthly on the 15th",
}

_DAILY_AT_HOUR = re.compile(r"^0 (\d{1,2}) \* \* \*$")


def _day_number(token: str) -> int:
    token = token.strip().lower()
    if token.isdigit():
        number = int(token)
        if not 0 <= number <= 7:
            raise InvalidCronExpression(f"Day of week out of range: {token}")
        return number
    if token[:3] in CRON_DAY_NAMES:
        return CRON_DAY_NAMES.index(token[:3])
    raise InvalidCronExpression(f"Invalid day of week: {token}")


def translate_day_of_week(field: str) -> str:
    """Convert a crontab day-of-week field to APScheduler weekday names."""
    if field in ("*", "?"):
        return "*"

    names: List[str] = []
    for part in field.split(","):
        step = 1
        if "/" in part:
            part, raw_step = part.split("/", 1)
            if not raw_step.isdigit() or int(raw_step) == 0:
                raise InvalidCronExpression(f"Invalid step: {raw_step}")
            step = int(raw_step)

        # crontab day-of-week runs 0-7, so "*/2" and "5/2" both reach Sunday
        if part == "*":
            start, end = 0, 7
        elif "-" in part:
            first, last = part.split("-", 1)
            start, end = _day_number(first), _day_number(last)
        else:
            start = _day_number(part)
            end = start if step == 1 else 7

        if end < start:
            raise InvalidCronExpression(f"Invalid day-of-week range: {part}")

        for day in range(start, end + 1, step):
            name = CRON_DAY_NAMES[day % 7]
            if name not in names:
                names.append(name)

    return ",".join(names)


def build_trigger(expression: str, timezone: str = "UTC") -> BaseTrigger:
    """
    Build a trigger from a crontab expression, raising InvalidCronExpression.

    CronTrigger requires day-of-month and day-of-week to both match, while
    crontab fires when either matches once both are restricted. That case
    becomes an OrTrigger over one CronTrigger per day field.
    """
    fields = (expression or "").split()
    if len(fields) != 5:
        raise InvalidCronExpression(
            f"Cron expression must have 5 fields, got {len(fields)}: '{expression}'"
        )

    minute, hour, day, month, day_of_week = fields
    weekdays = translate_day_of_week(day_of_week)

    def cron(day_field: str, day_of_week_field: str) -> CronTrigger:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day_field,
            month=month,
            day_of_week=day_of_week_field,
            timezone=timezone or "UTC",
        )

    try:
        if day.startswith("*") or day_of_week.startswith("*"):
            return cron(day, weekdays)
        return OrTrigger([cron(day, "*"), cron("*", weekdays)])
    except InvalidCronExpression:
        raise
    except (ValueError, TypeError, KeyError) as e:
        raise InvalidCronExpression(f"Invalid cron expression '{expression}': {e}")


def validate_cron_expression(expression: str, timezone: str = "UTC") -> None:
    build_trigger(expression, timezone)


def next_run_time(expression: str, timezone: str, after: datetime) -> datetime:
    """
    Compute the first fire time strictly after `after`.

    Args:
        expression: 5-field crontab expression
        timezone: IANA timezone the expression is evaluated in
        after: Naive UTC reference time

    Returns:
        Naive UTC datetime of the next run
    """
    trigger = build_trigger(expression, timezone)
    reference = (after + timedelta(seconds=1)).replace(tzinfo=dt_timezone.utc)
    fire_time = trigger.get_next_fire_time(None, reference)
    if fire_time is None:
        raise InvalidCronExpression(f"Cron expression '{expression}' never fires")
    return fire_time.astimezone(dt_timezone.utc).replace(tzinfo=None)


def describe_cron_expression(expression: str) -> str:
    """Human readable description for display next to a schedule."""
    expression = " ".join((expression or "").split())
    if expression in COMMON_SCHEDULES:
        return COMMON_SCHEDULES[expression]

    match = _DAILY_AT_HOUR.match(expression)
    if match and int(match.group(1)) < 24:
        hour = int(match.group(1))
        suffix = "AM" if hour < 12 else "PM"
        display_hour = hour % 12 or 12
        return f"Daily at {display_hour}:00 {suffix}"

    return f"Custom: {expression}"


def get_common_schedules() -> List[Dict[str, str]]:
    return [
        {"expression": expression, "description": description}
        for expression, description in COMMON_SCHEDULES.items()
    ]
