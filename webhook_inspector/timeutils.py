"""Display-timezone helpers.

Deliveries are stored in UTC; everything shown to a human (stats day
boundaries, hourly buckets, humanized timestamps) uses the configured
display timezone so that daily boundaries match local business hours.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

_WEEKDAYS_FR = ["lundi", "mardi", "mercredi", "jeudi", "vendredi", "samedi", "dimanche"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_display(value: datetime, tz: ZoneInfo) -> datetime:
    return ensure_utc(value).astimezone(tz)


def start_of_day(tz: ZoneInfo, now: datetime | None = None) -> datetime:
    """Local midnight of the current day in *tz*, expressed in UTC."""
    local = to_display(now or utcnow(), tz)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)


def hour_buckets(tz: ZoneInfo, now: datetime | None = None, hours: int = 24) -> list[datetime]:
    """Start instants (UTC) of the last *hours* local clock hours, oldest first.

    The last bucket is the current (partial) hour.
    """
    local = to_display(now or utcnow(), tz).replace(minute=0, second=0, microsecond=0)
    current = local.astimezone(timezone.utc)
    return [current - timedelta(hours=offset) for offset in range(hours - 1, -1, -1)]


def humanize(value: datetime, tz: ZoneInfo, now: datetime | None = None) -> str:
    """Relative, French-language rendering used by the dashboard."""
    target = to_display(value, tz)
    current = to_display(now or utcnow(), tz)
    delta = current - target

    minutes = int(delta.total_seconds() // 60)
    hours = int(delta.total_seconds() // 3600)
    days = delta.days

    if minutes < 1:
        return "Maintenant"
    if minutes < 60:
        return f"Il y a {minutes} min"
    if hours < 24:
        return f"Il y a {hours}h"
    if days == 1:
        return f"Hier à {target:%H:%M}"
    if days < 7:
        return f"{_WEEKDAYS_FR[target.weekday()]} à {target:%H:%M}"
    return f"{target:%d/%m/%Y} à {target:%H:%M}"
