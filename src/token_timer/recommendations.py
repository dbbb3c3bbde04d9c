"""Session-size suggestions derived from usage history, settings and the wallet."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum

from .settings import Settings
from .usage import RECENT_ACTIVITY_WINDOW, UsageAnalytics
from .wallet import MINUTES_PER_TOKEN

MAX_RECOMMENDATIONS = 3
DEFAULT_FAVORITE_TOKENS = 2
PEAK_MIN_TOKENS = 3


class RecommendationType(str, Enum):
    TIME_OPTIMAL = "time_optimal"
    LENGTH_BASED = "length_based"
    GOAL_BASED = "goal_based"
    RECENT_ACTIVITY = "recent_activity"


@dataclass(frozen=True)
class Recommendation:
    type: RecommendationType
    suggested_tokens: int
    message: str
    reason: str

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        return data


def recommend(
    usage: UsageAnalytics,
    settings: Settings,
    wallet_balance: int,
    now: datetime,
) -> list[Recommendation]:
    """Build suggestions in fixed priority order and keep the first three.

    Order: peak hour, usual length, daily goal, recent activity. The recent
    activity signal only shows up when fewer than three of the others apply.
    """
    recommendations: list[Recommendation] = []

    favorites = usage.favorite_session_lengths()
    favorite_length = favorites[0] if favorites else DEFAULT_FAVORITE_TOKENS
    average_length = usage.average_session_length()
    current_hour = now.astimezone(usage.tz).hour

    if current_hour in usage.peak_usage_hours():
        recommendations.append(Recommendation(
            type=RecommendationType.TIME_OPTIMAL,
            suggested_tokens=max(favorite_length, PEAK_MIN_TOKENS),
            message="Peak usage time detected! Consider a longer session.",
            reason="Based on your usage patterns, you're most active around this time.",
        ))

    if average_length > 0:
        recommendations.append(Recommendation(
            type=RecommendationType.LENGTH_BASED,
            suggested_tokens=average_length // MINUTES_PER_TOKEN,
            message="Your usual session length",
            reason=f"Based on your recent {average_length}-minute average sessions.",
        ))

    if settings.daily_goal_minutes is not None:
        remaining_today = settings.daily_goal_minutes - usage.today_minutes(now)
        if remaining_today > 0:
            tokens_needed = remaining_today // MINUTES_PER_TOKEN + 1
            recommendations.append(Recommendation(
                type=RecommendationType.GOAL_BASED,
                suggested_tokens=min(tokens_needed, wallet_balance),
                message="Stay on track with your daily goal",
                reason=f"You need {remaining_today} more minutes to reach your daily goal.",
            ))

    recent_average = usage.recent_average_tokens()
    if recent_average is not None:
        recommendations.append(Recommendation(
            type=RecommendationType.RECENT_ACTIVITY,
            suggested_tokens=recent_average,
            message="Based on your recent activity",
            reason=f"Your last {RECENT_ACTIVITY_WINDOW} sessions averaged {recent_average} tokens.",
        ))

    return recommendations[:MAX_RECOMMENDATIONS]
