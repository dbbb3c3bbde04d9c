"""Host that owns the wallet, timer, grant scheduler and usage ledger.

This is the command surface the server and tests drive. Components never hold
a reference back to the host; the host reads their transition results and
fans them out to subscribers as ``(event_name, payload)`` callbacks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Optional

from .clock import to_utc
from .config import SUNDAY
from .errors import CorruptedSessionError, SessionError
from .grants import GrantReport, ScheduledGrant, ScheduledGrantScheduler, next_occurrence
from .notifications import LoggingNotifier, Notifier, plan_reminders
from .recommendations import Recommendation, recommend
from .settings import Settings
from .store import StateStore
from .timer import (
    TimerEvent,
    TimerSessionEngine,
    TimerState,
    TimerTransition,
    format_countdown,
    format_total_time,
    recovery_refund,
)
from .usage import SessionRecord, UsageAnalytics, goal_progress
from .wallet import MINUTES_PER_TOKEN, WalletLedger

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict], None]


@dataclass
class StartResult:
    started: bool
    reason: Optional[str] = None
    transition: Optional[TimerTransition] = None


class TokenTimerHost:
    def __init__(
        self,
        wallet: Optional[WalletLedger] = None,
        usage: Optional[UsageAnalytics] = None,
        settings: Optional[Settings] = None,
        grants: Optional[list[ScheduledGrant]] = None,
        notifier: Optional[Notifier] = None,
        tz: tzinfo = timezone.utc,
        first_weekday: int = SUNDAY,
    ):
        self.tz = tz
        self.wallet = wallet or WalletLedger()
        self.usage = usage or UsageAnalytics(tz=tz, first_weekday=first_weekday)
        self.settings = settings or Settings()
        self.timer = TimerSessionEngine()
        self.scheduler = ScheduledGrantScheduler(grants)
        self.notifier: Notifier = notifier or LoggingNotifier()
        self._listeners: list[Listener] = []
        self._last_activity: Optional[datetime] = None

    # ── Loading / saving ───────────────────────────────────────

    @classmethod
    async def load(cls, store: StateStore, now: datetime, notifier: Optional[Notifier] = None) -> "TokenTimerHost":
        """Build a host from persisted state, folding in anything that happened while offline."""
        host = cls(
            wallet=await store.load_wallet(),
            usage=await store.load_usage(),
            settings=await store.load_settings(),
            grants=await store.load_grants(),
            notifier=notifier,
            tz=store.tz,
            first_weekday=store.first_weekday,
        )
        session = await store.load_session()
        if session is not None:
            host.restore_session(session, now)
        host.process_grants(now)
        await host.save(store)
        return host

    async def save(self, store: StateStore) -> bool:
        saved = await store.save_all(
            wallet=self.wallet,
            session=self.timer.session,
            usage=self.usage,
            settings=self.settings,
            grants=self.scheduler.grants,
        )
        if not saved:
            logger.warning("Host: state was only partially saved")
        return saved

    def restore_session(self, session, now: datetime) -> Optional[TimerTransition]:
        """Install a persisted session; completes expired ones and refunds corrupted ones."""
        try:
            transition = self.timer.restore(session, now)
        except CorruptedSessionError as e:
            refund = recovery_refund(e.session, now)
            self.timer.discard()
            self.wallet.add_tokens(refund)
            logger.warning(f"{e}; refunded {refund} tokens and discarded it")
            self._emit("session_recovered", {"session_id": e.session.id, "refunded_tokens": refund})
            return None
        if transition.finished:
            logger.info(f"Restored session {session.id} had already finished; recording it")
            self._handle(transition, now)
        elif self.timer.state == TimerState.RUNNING:
            self._last_activity = now
            self.notifier.schedule(plan_reminders(self.timer.session, now))
        return transition

    # ── Subscribers ────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, name: str, payload: dict) -> None:
        for listener in list(self._listeners):
            try:
                listener(name, payload)
            except Exception:
                logger.exception(f"Listener failed on '{name}'")

    # ── Wallet commands ────────────────────────────────────────

    def add_tokens(self, count: int) -> int:
        balance = self.wallet.add_tokens(count)
        self._emit("wallet_changed", {"balance": balance, "delta": count})
        return balance

    def add_tokens_up_to_max(self, count: int) -> int:
        added = self.wallet.add_tokens_up_to_max(count, self.settings.max_wallet_tokens)
        self._emit("wallet_changed", {"balance": self.wallet.balance, "delta": added})
        return added

    # ── Timer commands ─────────────────────────────────────────

    def start_timer(self, tokens: int, now: datetime) -> StartResult:
        """Redeem ``tokens`` and start a session. No state changes when it can't."""
        if self.timer.session is not None:
            return StartResult(started=False, reason="session_active")
        if tokens <= 0:
            return StartResult(started=False, reason="invalid_tokens")
        if not self.wallet.redeem_tokens(tokens):
            logger.info(f"Start refused: {tokens} tokens requested, {self.wallet.balance} available")
            return StartResult(started=False, reason="insufficient_tokens")
        try:
            transition = self.timer.start(tokens, now)
        except SessionError:
            self.wallet.add_tokens(tokens)
            raise
        self._handle(transition, now)
        return StartResult(started=True, transition=transition)

    def pause_timer(self, now: datetime) -> TimerTransition:
        return self._handle(self.timer.pause(now), now)

    def resume_timer(self, now: datetime) -> TimerTransition:
        return self._handle(self.timer.resume(now), now)

    def end_timer_early(self, now: datetime) -> TimerTransition:
        return self._handle(self.timer.end_early(self.settings.grace_period_minutes, now), now)

    def tick(self, now: datetime) -> TimerTransition:
        return self._handle(self.timer.tick(now), now)

    def fast_forward_timer(self, now: datetime, seconds: int = 5) -> TimerTransition:
        return self._handle(self.timer.fast_forward(now, seconds), now)

    def record_activity(self, now: datetime) -> None:
        self._last_activity = now

    def check_inactivity(self, now: datetime) -> Optional[TimerTransition]:
        """Auto-pause a running session after the configured idle time."""
        if not self.settings.auto_pause_enabled or self.timer.state != TimerState.RUNNING:
            return None
        if self._last_activity is None:
            self._last_activity = now
            return None
        idle = to_utc(now) - to_utc(self._last_activity)
        if idle < timedelta(minutes=self.settings.auto_pause_minutes):
            return None
        logger.info(f"Auto-pausing after {int(idle.total_seconds() // 60)} idle minutes")
        transition = self.pause_timer(now)
        self._emit("auto_paused", {"idle_seconds": idle.total_seconds()})
        return transition

    def _handle(self, transition: TimerTransition, now: datetime) -> TimerTransition:
        for event in transition.events:
            if event in (TimerEvent.STARTED, TimerEvent.RESUMED, TimerEvent.FAST_FORWARDED):
                self._last_activity = now
                self.notifier.schedule(plan_reminders(self.timer.session, now))
            elif event == TimerEvent.PAUSED:
                self.notifier.cancel_all()
            elif event == TimerEvent.COMPLETED:
                self._record_completion(transition)
                self.notifier.cancel_all()
            elif event == TimerEvent.ENDED_EARLY:
                self._record_early_end(transition)
                self.notifier.cancel_all()
            self._emit(event.value, self._transition_payload(transition))
        return transition

    def _record_completion(self, transition: TimerTransition) -> None:
        session = transition.session
        minutes = session.original_tokens * MINUTES_PER_TOKEN
        self.usage.record_session(SessionRecord(
            start_time=session.start_time,
            end_time=transition.ended_at,
            original_tokens=session.original_tokens,
            actual_minutes=minutes,
            was_completed=True,
            was_in_grace_period=False,
        ))
        self.usage.record_usage(minutes, transition.ended_at)
        logger.info(f"Session completed: {session.original_tokens} tokens, {minutes} minutes")

    def _record_early_end(self, transition: TimerTransition) -> None:
        session = transition.session
        if transition.returned_tokens > 0:
            self.wallet.add_tokens(transition.returned_tokens)
        if transition.redeemed_tokens > 0:
            minutes = transition.redeemed_tokens * MINUTES_PER_TOKEN
            self.usage.record_session(SessionRecord(
                start_time=session.start_time,
                end_time=transition.ended_at,
                original_tokens=session.original_tokens,
                actual_minutes=minutes,
                was_completed=False,
                was_in_grace_period=transition.was_in_grace_period,
            ))
            self.usage.record_usage(minutes, transition.ended_at)
        logger.info(
            f"Session ended early: {transition.returned_tokens} returned, "
            f"{transition.redeemed_tokens} redeemed (grace={transition.was_in_grace_period})"
        )

    @staticmethod
    def _transition_payload(transition: TimerTransition) -> dict:
        return {
            "state": transition.state.value,
            "session_id": transition.session.id if transition.session else None,
            "returned_tokens": transition.returned_tokens,
            "redeemed_tokens": transition.redeemed_tokens,
            "was_in_grace_period": transition.was_in_grace_period,
        }

    # ── Scheduled grants ───────────────────────────────────────

    def process_grants(self, now: datetime) -> GrantReport:
        report = self.scheduler.process(now, self.wallet)
        if report.changed:
            self._emit("grants_processed", {
                "tokens_added": report.tokens_added,
                "balance": self.wallet.balance,
            })
        return report

    def add_scheduled_grant(self, grant: ScheduledGrant) -> ScheduledGrant:
        return self.scheduler.add(grant)

    def update_scheduled_grant(self, grant: ScheduledGrant) -> bool:
        return self.scheduler.update(grant)

    def remove_scheduled_grant(self, grant_id: str) -> bool:
        return self.scheduler.remove(grant_id)

    def toggle_scheduled_grant(self, grant_id: str) -> Optional[ScheduledGrant]:
        return self.scheduler.toggle(grant_id)

    def grant_view(self, grant: ScheduledGrant, now: datetime) -> dict:
        data = grant.to_dict()
        upcoming = next_occurrence(grant, now)
        data["next_occurrence"] = upcoming.isoformat() if upcoming else None
        return data

    # ── Settings / analytics ───────────────────────────────────

    def update_settings(self, **changes) -> Settings:
        self.settings = self.settings.updated(**changes)
        self._emit("settings_changed", self.settings.to_dict())
        return self.settings

    def get_recommendations(self, now: datetime) -> list[Recommendation]:
        return recommend(self.usage, self.settings, self.wallet.balance, now)

    def stats(self, now: datetime) -> dict:
        today = self.usage.today_minutes(now)
        week = self.usage.total_minutes_this_week(now)
        month = self.usage.total_minutes_this_month(now)
        fmt = self.settings.time_display_format
        return {
            "today_minutes": today,
            "week_minutes": week,
            "week_hours": round(week / 60.0, 1),
            "week_display": format_total_time(week, fmt),
            "month_minutes": month,
            "tokens_used_this_week": week // MINUTES_PER_TOKEN,
            "daily_goal_progress": goal_progress(today, self.settings.daily_goal_minutes),
            "weekly_goal_progress": goal_progress(week, self.settings.weekly_goal_minutes),
            "monthly_goal_progress": goal_progress(month, self.settings.monthly_goal_minutes),
            "average_session_length": self.usage.average_session_length(),
            "favorite_session_lengths": self.usage.favorite_session_lengths(),
            "peak_usage_hours": self.usage.peak_usage_hours(),
            "session_count": len(self.usage.sessions),
        }

    def snapshot(self, now: datetime) -> dict:
        session = self.timer.session
        data = {
            "balance": self.wallet.balance,
            "max_wallet_tokens": self.settings.max_wallet_tokens,
            "state": self.timer.state.value,
            "session": None,
            "countdown": None,
        }
        if session is not None:
            data["session"] = session.to_export_dict(now, self.settings.grace_period_minutes)
            data["countdown"] = format_countdown(
                session.remaining_seconds(now), self.settings.time_display_format
            )
        return data

    # ── Debug ──────────────────────────────────────────────────

    def reset_wallet(self) -> None:
        self.wallet.reset()
        self._emit("wallet_changed", {"balance": 0, "delta": None})

    def reset_stats(self) -> None:
        self.usage.reset()
        logger.warning("Usage stats reset")
