"""Clock and calendar helpers shared by the billing services."""

from __future__ import annotations

import calendar
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Callable, Optional, Tuple
from zoneinfo import ZoneInfo


Clock = Callable[[], datetime]

# Expiry at or beyond this instant counts as "never expires".
FAR_FUTURE = datetime(2099, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a timestamp to aware UTC. SQLite hands back naive values."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 month -> Feb 28/29)."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _zone(name: str) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def day_window(now: datetime, tz_name: str = "UTC") -> Tuple[datetime, datetime]:
    """Return [start of today, start of tomorrow) in the reference zone, as UTC instants."""
    zone = _zone(tz_name)
    local = as_utc(now).astimezone(zone)
    start = datetime.combine(local.date(), time.min, tzinfo=zone)
    end = datetime.combine(local.date() + timedelta(days=1), time.min, tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def month_key(now: datetime) -> str:
    return as_utc(now).strftime("%Y-%m")


def next_month_start(now: datetime) -> datetime:
    current = as_utc(now)
    first = current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return add_months(first, 1)
