"""Cron expression parsing and next-fire computation (APScheduler triggers)."""

from __future__ import annotations

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from cronbot.core.cron.types import CronValidation
from cronbot.core.errors import ValidationError
from cronbot.store.models import utcnow

_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def check_timezone(timezone: str) -> str:
    """Return ``timezone`` if it names a known IANA zone."""
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as e:
        raise ValidationError(f"Unknown timezone: {timezone!r}") from e
    return timezone


def parse_cron(expr: str, timezone: str = "UTC") -> CronTrigger:
    """Build a CronTrigger from a standard 5-field crontab expression.

    Raises
    ------
    ValidationError
        Wrong field count, out-of-range values, or unknown timezone.
    """
    if not isinstance(expr, str) or len(expr.split()) != 5:
        raise ValidationError(f"Invalid cron expression {expr!r}: expected 5 fields")
    check_timezone(timezone)
    minute, hour, day, month, day_of_week = expr.split()
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_crontab_day_of_week(day_of_week),
            timezone=timezone,
        )
    except (ValueError, KeyError) as e:
        raise ValidationError(f"Invalid cron expression {expr!r}: {e}") from e


def get_next_run_time(
    expr: str, timezone: str = "UTC", now: datetime | None = None
) -> datetime | None:
    """Next fire of ``expr`` strictly after ``now``, in the job's timezone."""
    trigger = parse_cron(expr, timezone)
    now = now or utcnow()
    # Fire times have whole-second resolution; +1µs excludes a fire at exactly ``now``
    return trigger.get_next_fire_time(None, now + timedelta(microseconds=1))


def min_fire_interval(
    expr: str, timezone: str = "UTC", now: datetime | None = None
) -> timedelta | None:
    """Gap between the next two fires — how often the job runs."""
    first = get_next_run_time(expr, timezone, now)
    if first is None:
        return None
    second = get_next_run_time(expr, timezone, first)
    if second is None:
        return None
    return second - first


def validate_cron(expr: str, timezone: str = "UTC") -> CronValidation:
    """Check a cron expression without raising."""
    try:
        next_run = get_next_run_time(expr, timezone)
    except ValidationError as e:
        return CronValidation(valid=False, error=str(e))
    return CronValidation(valid=True, next_run=next_run)


def _crontab_day_of_week(field: str) -> str:
    """Crontab day-of-week (0/7 = Sunday) to APScheduler day names.

    APScheduler counts 0 as Monday, so numeric values are spelled out:
    ``1-5`` becomes ``mon,tue,wed,thu,fri``.
    """
    if not any(c.isdigit() for c in field):
        return field

    days: list[str] = []
    for part in field.split(","):
        base, _, step = part.partition("/")
        stride = int(step) if step else 1
        if base == "*":
            numbers = range(0, 7, stride)
        elif "-" in base:
            start, end = (int(v) for v in base.split("-", 1))
            numbers = range(start, end + 1, stride)
        elif step:
            numbers = range(int(base), 7, stride)
        else:
            numbers = [int(base)]
        for n in numbers:
            if not 0 <= n <= 7:
                raise ValueError(f"day of week {n} out of range 0-7")
            name = _DAY_NAMES[n % 7]
            if name not in days:
                days.append(name)
    if not days:
        raise ValueError(f"empty day of week field {field!r}")
    return ",".join(days)
