"""Cron helpers shared by the scheduler and the missed-schedule check.

APScheduler's ``CronTrigger.from_crontab`` passes the day-of-week field through
unchanged, where ``0`` means Monday. Standard crontab uses ``0`` (and ``7``) for
Sunday, so numeric day-of-week values are rewritten to day names first.
"""

from __future__ import annotations

from datetime import datetime
from datetime import timedelta
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from dependabot_server.utils.time import as_utc

DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _day_name(value: str) -> str:
    number = int(value)
    if number < 0 or number > 7:
        raise ValueError(f"Day-of-week value {value} is out of range")
    return DAY_NAMES[number]


def _normalize_day_of_week(field: str) -> str:
    names: list[str] = []
    for part in field.split(","):
        if part.startswith("*/"):
            # Steps count from Sunday in crontab
            part = "0-6" + part[1:]
        if part == "*" or not any(ch.isdigit() for ch in part.split("/")[0]):
            names.append(part)
            continue

        span, _, step = part.partition("/")
        first, _, last = span.partition("-")
        if not last:
            if step:
                last = "6"
            else:
                names.append(_day_name(first))
                continue
        stride = int(step) if step else 1
        for number in range(int(first), int(last) + 1, stride):
            name = _day_name(str(number))
            if name not in names:
                names.append(name)
    return ",".join(names)


def normalize_crontab(expression: str) -> str:
    """Rewrite numeric day-of-week values of a 5-field crontab into day names."""
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Wrong number of fields; got {len(fields)}, expected 5")
    fields[4] = _normalize_day_of_week(fields[4])
    return " ".join(fields)


def validate_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"'{name}' is not a valid IANA timezone") from exc
    return name


def make_trigger(expression: str, timezone: str = "Etc/UTC") -> CronTrigger:
    return CronTrigger.from_crontab(normalize_crontab(expression), timezone=ZoneInfo(timezone))


def next_occurrence(trigger: CronTrigger, after: datetime) -> datetime | None:
    """Next fire time strictly after ``after``.

    ``get_next_fire_time`` is inclusive of ``now``; a run stamped exactly on a
    fire time must not count as due again, hence the one second offset.
    """
    start = as_utc(after) + timedelta(seconds=1)
    return trigger.get_next_fire_time(None, start)
