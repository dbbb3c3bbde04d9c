"""Tests for recommend(): priority order, the three-item cap and each signal."""

from datetime import datetime, timedelta, timezone

from token_timer.recommendations import MAX_RECOMMENDATIONS, RecommendationType, recommend
from token_timer.settings import Settings
from token_timer.usage import SessionRecord, UsageAnalytics

NOW = datetime(2026, 3, 18, 15, 10, tzinfo=timezone.utc)


def usage_with_sessions(hour: int, tokens: int = 2, count: int = 5) -> UsageAnalytics:
    usage = UsageAnalytics()
    for i in range(count):
        start = datetime(2026, 3, 10 + i, hour, 0, tzinfo=timezone.utc)
        usage.record_session(SessionRecord(
            start_time=start,
            end_time=start + timedelta(minutes=tokens * 15),
            original_tokens=tokens,
            actual_minutes=tokens * 15,
            was_completed=True,
            was_in_grace_period=False,
        ))
    return usage


class TestRecommend:
    def test_no_history_no_goal(self):
        assert recommend(UsageAnalytics(), Settings(), 5, NOW) == []

    def test_goal_based_limited_by_wallet(self):
        settings = Settings(daily_goal_minutes=60)
        recs = recommend(UsageAnalytics(), settings, 3, NOW)
        assert [r.type for r in recs] == [RecommendationType.GOAL_BASED]
        assert recs[0].suggested_tokens == 3
        assert "60 more minutes" in recs[0].reason

    def test_goal_based_tokens_needed(self):
        settings = Settings(daily_goal_minutes=60)
        recs = recommend(UsageAnalytics(), settings, 10, NOW)
        assert recs[0].suggested_tokens == 5

    def test_goal_already_met(self):
        usage = UsageAnalytics()
        usage.record_usage(90, NOW)
        recs = recommend(usage, Settings(daily_goal_minutes=60), 10, NOW)
        assert all(r.type != RecommendationType.GOAL_BASED for r in recs)

    def test_all_signals_capped_at_three_in_priority_order(self):
        usage = usage_with_sessions(hour=15, tokens=2)
        recs = recommend(usage, Settings(daily_goal_minutes=60), 10, NOW)
        assert len(recs) == MAX_RECOMMENDATIONS
        assert [r.type for r in recs] == [
            RecommendationType.TIME_OPTIMAL,
            RecommendationType.LENGTH_BASED,
            RecommendationType.GOAL_BASED,
        ]

    def test_peak_suggests_at_least_three_tokens(self):
        usage = usage_with_sessions(hour=15, tokens=2)
        recs = recommend(usage, Settings(), 10, NOW)
        assert recs[0].type == RecommendationType.TIME_OPTIMAL
        assert recs[0].suggested_tokens == 3

    def test_recent_activity_fills_free_slot(self):
        usage = usage_with_sessions(hour=8, tokens=4)
        recs = recommend(usage, Settings(), 10, NOW)
        assert [r.type for r in recs] == [
            RecommendationType.LENGTH_BASED,
            RecommendationType.RECENT_ACTIVITY,
        ]
        assert recs[0].suggested_tokens == 4
        assert recs[1].suggested_tokens == 4

    def test_to_dict(self):
        recs = recommend(UsageAnalytics(), Settings(daily_goal_minutes=30), 10, NOW)
        data = recs[0].to_dict()
        assert data["type"] == "goal_based"
        assert data["suggested_tokens"] == 3
