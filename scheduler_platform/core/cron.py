"""Cron expression evaluation.

Accepts three dialects and evaluates them with APScheduler's ``CronTrigger``:

- 5 fields, Unix style: ``min hour dom month dow`` (dow 0/7 = Sunday)
- 6 fields, Quartz style: ``sec min hour dom month dow`` (dow 1 = Sunday)
- 7 fields, Quartz style with a trailing ``year``

The trigger walks local wall-clock time; every candidate is then mapped
through the schedule's zone. Wall times inside a spring-forward gap do not
exist and are skipped; ambiguous wall times on a fall-back day resolve to
their first occurrence, so they fire once.
"""

import re
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from scheduler_platform.core.datetime_utils import as_aware_utc
from scheduler_platform.core.errors import ScheduleConfigurationError

# Expressions with no occurrence inside this horizon are rejected
HORIZON = timedelta(days=5 * 366)

DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]

ORDINALS = {1: "1st", 2: "2nd", 3: "3rd", 4: "4th", 5: "5th"}

_WILDCARDS = {"*", "?"}
_NTH_WEEKDAY = re.compile(r"^(?P<day>\w+)#(?P<nth>[1-5])$")
_LAST_WEEKDAY = re.compile(r"^(?P<day>\w+)L$", re.IGNORECASE)


def _weekday_name(token: str, quartz: bool) -> str:
    token = token.lower()
    if token in DAY_NAMES:
        return token
    if not token.isdigit():
        raise ScheduleConfigurationError(f"Invalid day of week '{token}'")
    number = int(token)
    if quartz:
        if not 1 <= number <= 7:
            raise ScheduleConfigurationError(f"Day of week {number} out of range 1-7")
        return DAY_NAMES[number - 1]
    if not 0 <= number <= 7:
        raise ScheduleConfigurationError(f"Day of week {number} out of range 0-7")
    return DAY_NAMES[number % 7]


def _translate_day_of_week(field: str, quartz: bool) -> tuple[str, str | None]:
    """Translate a day-of-week field.

    Returns ``(day_of_week, day)``; ``day`` is set when the field uses a
    positional form (``6#3``, ``5L``) that APScheduler expresses on the
    day-of-month field instead.
    """
    if field in _WILDCARDS:
        return "*", None
    if field.startswith("*/"):
        return field, None

    nth = _NTH_WEEKDAY.match(field)
    if nth:
        name = _weekday_name(nth.group("day"), quartz)
        return "*", f"{ORDINALS[int(nth.group('nth'))]} {name}"
    last = _LAST_WEEKDAY.match(field)
    if last:
        return "*", f"last {_weekday_name(last.group('day'), quartz)}"
    if field.upper() == "L":
        return "sat", None

    parts = []
    for token in field.split(","):
        if "/" in token:
            raise ScheduleConfigurationError(f"Unsupported day-of-week step '{token}'")
        if "-" in token:
            first, last_day = token.split("-", 1)
            parts.append(f"{_weekday_name(first, quartz)}-{_weekday_name(last_day, quartz)}")
        else:
            parts.append(_weekday_name(token, quartz))
    return ",".join(parts), None


def _translate_day_of_month(field: str) -> str:
    if field in _WILDCARDS:
        return "*"
    if "W" in field.upper():
        raise ScheduleConfigurationError("Nearest-weekday ('W') day-of-month is not supported")
    if field.upper() == "L":
        return "last"
    if "L" in field.upper():
        raise ScheduleConfigurationError(f"Unsupported day-of-month '{field}'")
    return field


def parse_cron_fields(expression: str) -> dict[str, str]:
    """Split a cron expression into APScheduler ``CronTrigger`` keyword fields."""
    if not expression or not expression.strip():
        raise ScheduleConfigurationError("Cron expression is empty")

    fields = expression.split()
    if len(fields) == 5:
        quartz = False
        second = "0"
        minute, hour, day, month, dow = fields
        year = "*"
    elif len(fields) in (6, 7):
        quartz = True
        second, minute, hour, day, month, dow = fields[:6]
        year = fields[6] if len(fields) == 7 else "*"
    else:
        raise ScheduleConfigurationError(
            f"Cron expression must have 5, 6 or 7 fields, got {len(fields)}: '{expression}'"
        )

    day_of_week, positional_day = _translate_day_of_week(dow, quartz)
    day = _translate_day_of_month(day)
    if positional_day:
        if day != "*":
            raise ScheduleConfigurationError(
                "Positional day-of-week cannot be combined with a day-of-month value"
            )
        day = positional_day

    return {
        "year": year,
        "month": month.lower(),
        "day": day,
        "day_of_week": day_of_week,
        "hour": hour,
        "minute": minute,
        "second": second,
    }


def _zone(time_zone: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(time_zone or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleConfigurationError(f"Unknown time zone '{time_zone}'") from e


def _build_trigger(fields: dict[str, str], start: datetime, end: datetime) -> CronTrigger:
    try:
        return CronTrigger(**fields, timezone=ZoneInfo("UTC"), start_time=start, end_time=end)
    except (ValueError, TypeError) as e:
        raise ScheduleConfigurationError(f"Invalid cron expression: {e}") from e


def _resolve_wall_time(wall: datetime, tz: ZoneInfo) -> datetime | None:
    """Map a naive local wall time to UTC, or None if it falls in a DST gap."""
    aware = wall.replace(tzinfo=tz, fold=0)
    utc = aware.astimezone(UTC)
    if utc.astimezone(tz).replace(tzinfo=None) != wall:
        return None
    return utc


def validate_cron_expression(expression: str, time_zone: str | None = "UTC") -> None:
    """Raise ScheduleConfigurationError if the expression or zone is unusable."""
    fields = parse_cron_fields(expression)
    _zone(time_zone)
    now = datetime.now(UTC)
    _build_trigger(fields, now, now + HORIZON)


def next_fire_times(
    expression: str,
    time_zone: str | None,
    after: datetime,
    count: int = 1,
) -> list[datetime]:
    """Compute the next ``count`` fire instants strictly after ``after``.

    Args:
        expression: Cron expression (5, 6 or 7 fields)
        time_zone: IANA zone the expression is written in
        after: Reference instant (naive values are taken as UTC)
        count: Number of occurrences to return

    Returns:
        Aware UTC datetimes in ascending order

    Raises:
        ScheduleConfigurationError: Unparsable expression, unknown zone, or
            no occurrence within the horizon
    """
    fields = parse_cron_fields(expression)
    tz = _zone(time_zone)
    after_utc = as_aware_utc(after)

    wall_after = after_utc.astimezone(tz).replace(tzinfo=None, microsecond=0)
    # Wall clock is fed to the trigger as if it were UTC; no DST inside it
    start = (wall_after + timedelta(seconds=1)).replace(tzinfo=UTC)
    trigger = _build_trigger(fields, start, start + HORIZON)

    results: list[datetime] = []
    while len(results) < count:
        candidate = trigger.next()
        if candidate is None:
            if results:
                break
            raise ScheduleConfigurationError(
                f"Cron expression '{expression}' has no occurrence within {HORIZON.days} days"
            )
        fire_time = _resolve_wall_time(candidate.replace(tzinfo=None), tz)
        if fire_time is None or fire_time <= after_utc:
            continue
        if results and fire_time <= results[-1]:
            continue
        results.append(fire_time)
    return results


def next_fire_time(expression: str, time_zone: str | None, after: datetime) -> datetime:
    """Next fire instant strictly after ``after``, as an aware UTC datetime."""
    return next_fire_times(expression, time_zone, after, count=1)[0]
