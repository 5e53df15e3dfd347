"""Timezone helpers for local-time windows and display strings."""

from __future__ import annotations

import logging
from datetime import date, datetime, time
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from interview_autopilot.schemas import WorkingHours

log = logging.getLogger(__name__)

UTC = ZoneInfo("UTC")


@lru_cache(maxsize=128)
def get_zone(name: str | None) -> ZoneInfo:
    """Resolve an IANA zone name, falling back to UTC for unknown names."""
    if not name:
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        log.warning("Unknown timezone %r, using UTC", name)
        return UTC


def is_valid_timezone(name: str) -> bool:
    if not name or not isinstance(name, str):
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def parse_hhmm(value: str) -> time:
    hour, minute = value.split(":", 1)
    return time(int(hour), int(minute))


def local_date(value: datetime, tz_name: str | None) -> date:
    return value.astimezone(get_zone(tz_name)).date()


def within_local_window(
    start: datetime, end: datetime, tz_name: str | None, earliest: str, latest: str
) -> bool:
    """True if [start, end) lies inside ``earliest``-``latest`` on the local day of ``start``."""
    zone = get_zone(tz_name)
    start_local = start.astimezone(zone)
    end_local = end.astimezone(zone)
    window_start = datetime.combine(start_local.date(), parse_hhmm(earliest), tzinfo=zone)
    window_end = datetime.combine(start_local.date(), parse_hhmm(latest), tzinfo=zone)
    return start_local >= window_start and end_local <= window_end


def within_working_hours(start: datetime, end: datetime, hours: WorkingHours) -> bool:
    zone = get_zone(hours.time_zone)
    weekday = (start.astimezone(zone).weekday() + 1) % 7  # 0=Sun
    if weekday not in hours.days_of_week:
        return False
    return within_local_window(start, end, hours.time_zone, hours.start, hours.end)


def format_in_timezone(value: datetime, tz_name: str | None) -> str:
    """e.g. ``Tue, Mar 3 at 9:30 AM EST``."""
    local = value.astimezone(get_zone(tz_name))
    hour = local.strftime("%I").lstrip("0") or "12"
    return f"{local:%a, %b} {local.day} at {hour}:{local:%M %p} {local.tzname()}"


def format_time(value: datetime, tz_name: str | None) -> str:
    local = value.astimezone(get_zone(tz_name))
    hour = local.strftime("%I").lstrip("0") or "12"
    return f"{hour}:{local:%M %p}"


def format_date(value: datetime, tz_name: str | None) -> str:
    local = value.astimezone(get_zone(tz_name))
    return f"{local:%a, %b} {local.day}"
