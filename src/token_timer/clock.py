"""Datetime helpers shared by the engines.

All engine calls take an explicit ``now``; nothing here reads the wall clock.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Optional


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def from_iso(value: Optional[str], tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """Parse an ISO timestamp. Naive values are taken to be in ``tz`` (UTC if None)."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz or timezone.utc)
    return parsed


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Same instant in UTC. Durations between local times are only correct in UTC."""
    return value.astimezone(timezone.utc) if value is not None else None


def local_date(moment: datetime, tz: Optional[tzinfo] = None) -> date:
    """Calendar date of ``moment`` in ``tz`` (or its own zone)."""
    return moment.astimezone(tz).date() if tz is not None else moment.date()


def day_key(day: date) -> str:
    """Bucket key for a calendar day: YYYY-MM-DD."""
    return day.isoformat()


def week_start(day: date, first_weekday: int) -> date:
    """First day of the calendar week containing ``day``.

    ``first_weekday`` uses Python numbering (Monday=0, Sunday=6).
    """
    offset = (day.weekday() - first_weekday) % 7
    return day - timedelta(days=offset)
