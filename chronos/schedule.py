"""
Schedule expressions and time zones.

Translates a task's schedule string into an APScheduler trigger.
Supported forms:

    "*/5 * * * *"        5-field crontab (minute hour day month weekday)
    "30 */5 * * * *"     6-field crontab with a leading seconds field
    "@hourly"            descriptors: @yearly @annually @monthly @weekly
                         @daily @midnight @hourly
    "@every 2h15m"       fixed interval, units h, m and s

Weekdays use crontab numbering (0 or 7 = Sunday) and are converted to
day names before they reach APScheduler, whose own numbering starts at
Monday. As in crontab, an expression restricting both the day of month
and the day of week fires when either of them matches.
"""

import logging
import re
from datetime import datetime, timedelta, timezone as dt_timezone, tzinfo
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from tzlocal import get_localzone

from chronos.config import ConfigError

logger = logging.getLogger(__name__)

DESCRIPTORS = {
    '@yearly': "0 0 1 1 *",
    '@annually': "0 0 1 1 *",
    '@monthly': "0 0 1 * *",
    '@weekly': "0 0 * * 0",
    '@daily': "0 0 * * *",
    '@midnight': "0 0 * * *",
    '@hourly': "0 * * * *",
}

CRON_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")

EVERY_RE = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")


def resolve_timezone(name: Optional[str] = None) -> tzinfo:
    """
    Resolve the time zone schedules are evaluated in.

    Args:
        name: IANA time zone name. If empty, the local zone is used.

    Raises:
        ConfigError: If the name is not a known time zone
    """
    if not name:
        return get_localzone()
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"failed to get timezone '{name}': {e}") from e


def parse_every(value: str) -> timedelta:
    """Parse an ``@every`` duration such as ``1h30m`` or ``45s``."""
    match = EVERY_RE.match(value.strip())
    if not value.strip() or not match:
        raise ValueError(f"Invalid @every duration: {value!r}")
    hours, minutes, seconds = (int(g or 0) for g in match.groups())
    delta = timedelta(hours=hours, minutes=minutes, seconds=seconds)
    if delta.total_seconds() <= 0:
        raise ValueError(f"@every duration must be positive: {value!r}")
    return delta


def _day_number(token: str) -> int:
    """Crontab number of a weekday given as a number (0-7) or a name."""
    token = token.lower()
    if token in CRON_DAY_NAMES:
        return CRON_DAY_NAMES.index(token)
    if not token.isdigit() or not 0 <= int(token) <= 7:
        raise ValueError(f"Invalid day of week: {token}")
    return int(token)


def convert_day_of_week(field: str) -> str:
    """
    Convert a crontab weekday field to APScheduler day names.

    Numbers and names are accepted alike. Ranges and steps are expanded to
    explicit lists so that ranges running through Sunday keep their
    crontab meaning.
    """
    if field in ('*', '?'):
        return '*'

    names: List[str] = []
    for item in field.split(','):
        step = 1
        if '/' in item:
            item, step_text = item.split('/', 1)
            if not step_text.isdigit() or int(step_text) <= 0:
                raise ValueError(f"Invalid step in day of week: {field}")
            step = int(step_text)

        if item == '*':
            start, end = 0, 6
        elif '-' in item:
            start_text, end_text = item.split('-', 1)
            start, end = _day_number(start_text), _day_number(end_text)
            if start > end:
                raise ValueError(f"Invalid day of week range: {item}")
        else:
            start = _day_number(item)
            # N/step runs to the end of the week
            end = 6 if step > 1 else start

        for number in range(start, end + 1, step):
            name = CRON_DAY_NAMES[number % 7]
            if name not in names:
                names.append(name)

    return ','.join(names)


def build_trigger(expression: str, timezone: tzinfo) -> BaseTrigger:
    """
    Build an APScheduler trigger from a schedule expression.

    Args:
        expression: Schedule string (crontab, descriptor or @every)
        timezone: Time zone the schedule is evaluated in

    Returns:
        APScheduler trigger

    Raises:
        ValueError: If the expression is malformed
    """
    expr = expression.strip()

    if expr.startswith('@every'):
        delta = parse_every(expr[len('@every'):])
        return IntervalTrigger(seconds=int(delta.total_seconds()), timezone=timezone)

    if expr.startswith('@'):
        if expr not in DESCRIPTORS:
            raise ValueError(f"Unknown schedule descriptor: {expr}")
        expr = DESCRIPTORS[expr]

    parts = expr.split()
    if len(parts) == 5:
        second = '0'
        minute, hour, day, month, day_of_week = parts
    elif len(parts) == 6:
        second, minute, hour, day, month, day_of_week = parts
    else:
        raise ValueError(
            f"Invalid cron expression {expression!r}: expected 5 or 6 fields, got {len(parts)}"
        )

    day = '*' if day == '?' else day
    day_of_week = convert_day_of_week(day_of_week)

    def cron(day: str, day_of_week: str) -> CronTrigger:
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            timezone=timezone
        )

    # Crontab fires when either day field matches if both are restricted;
    # CronTrigger alone would require both
    if day != '*' and day_of_week != '*':
        return OrTrigger([cron(day, '*'), cron('*', day_of_week)])
    return cron(day, day_of_week)


def next_fire_times(trigger: BaseTrigger, count: int, now: Optional[datetime] = None) -> List[datetime]:
    """Return up to ``count`` upcoming fire times of a trigger."""
    now = now or datetime.now(dt_timezone.utc)
    times: List[datetime] = []
    previous = None
    current = now
    for _ in range(count):
        fire_time = trigger.get_next_fire_time(previous, current)
        if fire_time is None:
            break
        times.append(fire_time)
        previous = fire_time
        current = fire_time
    return times
