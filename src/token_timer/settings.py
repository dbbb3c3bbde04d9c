"""User settings snapshot read by the core engines."""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Optional


class TimeDisplayFormat(str, Enum):
    MINUTES_ONLY = "minutesOnly"
    HOURS_MINUTES = "hoursMinutes"


DEFAULT_GRACE_PERIOD_MINUTES = 2
DEFAULT_AUTO_PAUSE_MINUTES = 10


def _optional_limit(value) -> Optional[int]:
    """Older records used 0 for "no goal" / "no limit"; map that to None."""
    if value is None:
        return None
    value = int(value)
    return value if value > 0 else None


@dataclass(frozen=True)
class Settings:
    grace_period_minutes: int = DEFAULT_GRACE_PERIOD_MINUTES
    auto_pause_enabled: bool = True
    auto_pause_minutes: int = DEFAULT_AUTO_PAUSE_MINUTES
    daily_goal_minutes: Optional[int] = None
    weekly_goal_minutes: Optional[int] = None
    monthly_goal_minutes: Optional[int] = None
    max_wallet_tokens: Optional[int] = None
    time_display_format: TimeDisplayFormat = TimeDisplayFormat.HOURS_MINUTES

    def updated(self, **changes) -> "Settings":
        """Return a copy with ``changes`` applied (limits normalised)."""
        for key in ("daily_goal_minutes", "weekly_goal_minutes", "monthly_goal_minutes", "max_wallet_tokens"):
            if key in changes:
                changes[key] = _optional_limit(changes[key])
        if "time_display_format" in changes:
            changes["time_display_format"] = TimeDisplayFormat(changes["time_display_format"])
        return replace(self, **changes)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["time_display_format"] = self.time_display_format.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        return cls(
            grace_period_minutes=max(0, int(data.get("grace_period_minutes", DEFAULT_GRACE_PERIOD_MINUTES))),
            auto_pause_enabled=bool(data.get("auto_pause_enabled", True)),
            auto_pause_minutes=max(1, int(data.get("auto_pause_minutes", DEFAULT_AUTO_PAUSE_MINUTES))),
            daily_goal_minutes=_optional_limit(data.get("daily_goal_minutes")),
            weekly_goal_minutes=_optional_limit(data.get("weekly_goal_minutes")),
            monthly_goal_minutes=_optional_limit(data.get("monthly_goal_minutes")),
            max_wallet_tokens=_optional_limit(data.get("max_wallet_tokens")),
            time_display_format=TimeDisplayFormat(
                data.get("time_display_format", TimeDisplayFormat.HOURS_MINUTES.value)
            ),
        )
