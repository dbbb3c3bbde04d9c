"""Usage ledger and analytics over finished sessions.

Minutes are bucketed per calendar day in the reference timezone; session
records are kept in a bounded history (newest last).
"""

from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Optional

from .clock import day_key, from_iso, local_date, to_iso, week_start
from .config import SUNDAY

MAX_SESSION_HISTORY = 100
AVERAGE_WINDOW = 20
PATTERN_WINDOW = 50
RECENT_ACTIVITY_WINDOW = 5
TOP_N = 3


@dataclass(frozen=True)
class SessionRecord:
    start_time: datetime
    end_time: datetime
    original_tokens: int
    actual_minutes: int
    was_completed: bool
    was_in_grace_period: bool
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["start_time"] = to_iso(self.start_time)
        data["end_time"] = to_iso(self.end_time)
        return data

    @classmethod
    def from_dict(cls, data: dict, tz: Optional[tzinfo] = None) -> "SessionRecord":
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            start_time=from_iso(data["start_time"], tz),
            end_time=from_iso(data["end_time"], tz),
            original_tokens=int(data["original_tokens"]),
            actual_minutes=int(data["actual_minutes"]),
            was_completed=bool(data.get("was_completed", False)),
            was_in_grace_period=bool(data.get("was_in_grace_period", False)),
        )


def goal_progress(used_minutes: int, goal_minutes: Optional[int]) -> float:
    """Fraction of a goal reached, capped at 1.0. No goal means 0.0."""
    if not goal_minutes:
        return 0.0
    return min(1.0, used_minutes / goal_minutes)


class UsageAnalytics:
    """Per-day minute buckets plus the last 100 session records."""

    def __init__(self, tz: tzinfo = timezone.utc, first_weekday: int = SUNDAY):
        self.tz = tz
        self.first_weekday = first_weekday
        self.daily_minutes: dict[str, int] = {}
        self.sessions: list[SessionRecord] = []

    # ---- Recording ----

    def record_usage(self, minutes: int, day: date | datetime) -> None:
        if minutes <= 0:
            return
        if isinstance(day, datetime):
            day = local_date(day, self.tz)
        key = day_key(day)
        self.daily_minutes[key] = self.daily_minutes.get(key, 0) + minutes

    def record_session(self, record: SessionRecord) -> None:
        self.sessions.append(record)
        if len(self.sessions) > MAX_SESSION_HISTORY:
            self.sessions = self.sessions[-MAX_SESSION_HISTORY:]

    def reset(self) -> None:
        self.daily_minutes = {}
        self.sessions = []

    # ---- Aggregates ----

    def minutes_on(self, day: date) -> int:
        return self.daily_minutes.get(day_key(day), 0)

    def today_minutes(self, now: datetime) -> int:
        return self.minutes_on(local_date(now, self.tz))

    def total_minutes_this_week(self, now: datetime) -> int:
        start = week_start(local_date(now, self.tz), self.first_weekday)
        return sum(self.minutes_on(start + timedelta(days=i)) for i in range(7))

    def total_hours_this_week(self, now: datetime) -> float:
        return self.total_minutes_this_week(now) / 60.0

    def total_minutes_this_month(self, now: datetime) -> int:
        today = local_date(now, self.tz)
        prefix = f"{today.year:04d}-{today.month:02d}-"
        return sum(minutes for key, minutes in self.daily_minutes.items() if key.startswith(prefix))

    # ---- Behavioural statistics ----

    def average_session_length(self) -> int:
        recent = self.sessions[-AVERAGE_WINDOW:]
        if not recent:
            return 0
        return sum(r.actual_minutes for r in recent) // len(recent)

    def favorite_session_lengths(self) -> list[int]:
        """Most frequent original token counts in the last 50 sessions.

        Ties keep first-seen order.
        """
        counts = Counter(r.original_tokens for r in self.sessions[-PATTERN_WINDOW:])
        return [tokens for tokens, _ in counts.most_common(TOP_N)]

    def peak_usage_hours(self) -> list[int]:
        counts = Counter(r.start_time.astimezone(self.tz).hour for r in self.sessions[-PATTERN_WINDOW:])
        return [hour for hour, _ in counts.most_common(TOP_N)]

    def recent_average_tokens(self, count: int = RECENT_ACTIVITY_WINDOW) -> Optional[int]:
        """Average original tokens over the last ``count`` sessions, or None if fewer exist."""
        if len(self.sessions) < count:
            return None
        recent = self.sessions[-count:]
        return sum(r.original_tokens for r in recent) // len(recent)

    # ---- Serialization ----

    def to_dict(self) -> dict:
        return {
            "daily_minutes": dict(self.daily_minutes),
            "sessions": [r.to_dict() for r in self.sessions],
        }

    @classmethod
    def from_dict(cls, data: dict, tz: tzinfo = timezone.utc, first_weekday: int = SUNDAY) -> "UsageAnalytics":
        usage = cls(tz=tz, first_weekday=first_weekday)
        usage.daily_minutes = {str(k): int(v) for k, v in (data.get("daily_minutes") or {}).items()}
        for item in data.get("sessions") or []:
            usage.record_session(SessionRecord.from_dict(item, tz))
        return usage
