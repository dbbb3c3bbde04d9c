"""Tests for reminder planning and the in-memory notifier."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from token_timer.notifications import LoggingNotifier, plan_reminders
from token_timer.timer import TimerSession

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class TestPlanReminders:
    def test_hour_session_gets_all_updates(self):
        session = TimerSession.create(4, T0)
        reminders = plan_reminders(session, T0)
        by_id = {r.identifier: r for r in reminders}

        assert by_id["timer_complete"].fire_at == T0 + timedelta(minutes=60)
        assert by_id["timer_complete"].silent is False
        assert by_id["timer_update_5"].fire_at == T0 + timedelta(minutes=55)
        assert by_id["timer_update_30"].fire_at == T0 + timedelta(minutes=30)
        assert all(by_id[f"timer_update_{m}"].silent for m in (5, 10, 15, 30))

    def test_lead_must_be_shorter_than_remaining(self):
        session = TimerSession.create(1, T0)
        ids = {r.identifier for r in plan_reminders(session, T0)}
        assert ids == {"timer_complete", "timer_update_5", "timer_update_10"}

    def test_planned_from_current_remaining_time(self):
        session = TimerSession.create(4, T0)
        now = T0 + timedelta(minutes=40)
        ids = {r.identifier for r in plan_reminders(session, now)}
        assert ids == {"timer_complete", "timer_update_5", "timer_update_10", "timer_update_15"}

    def test_body_mentions_tokens(self):
        session = TimerSession.create(3, T0)
        complete = plan_reminders(session, T0)[0]
        assert "3 token" in complete.body

    def test_fire_times_are_real_minutes_across_dst(self):
        start = datetime(2026, 3, 8, 1, 30, tzinfo=ZoneInfo("America/New_York"))
        session = TimerSession.create(4, start)
        by_id = {r.identifier: r for r in plan_reminders(session, start)}
        assert by_id["timer_complete"].fire_at == datetime(2026, 3, 8, 7, 30, tzinfo=timezone.utc)
        assert by_id["timer_update_30"].fire_at == datetime(2026, 3, 8, 7, 0, tzinfo=timezone.utc)


class TestLoggingNotifier:
    def test_schedule_sorts_by_fire_time(self):
        notifier = LoggingNotifier()
        notifier.schedule(plan_reminders(TimerSession.create(4, T0), T0))
        fire_times = [r.fire_at for r in notifier.pending]
        assert fire_times == sorted(fire_times)
        assert notifier.pending[-1].identifier == "timer_complete"

    def test_cancel_all(self):
        notifier = LoggingNotifier()
        notifier.schedule(plan_reminders(TimerSession.create(4, T0), T0))
        notifier.cancel_all()
        assert notifier.pending == []
