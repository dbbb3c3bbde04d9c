"""Timer session engine: pure logic, no I/O.

Time source is injected via ``now`` parameters for deterministic testing.
The engine owns at most one live TimerSession; every public transition returns
a TimerTransition describing what happened so the host can persist, credit
refunds, record usage and reschedule reminders.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from typing import Optional

from .clock import from_iso, to_iso, to_utc
from .errors import CorruptedSessionError, SessionError
from .settings import TimeDisplayFormat
from .wallet import MINUTES_PER_TOKEN


class TimerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ENDED_EARLY = "ended_early"


class TimerEvent(Enum):
    STARTED = "started"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"
    ENDED_EARLY = "ended_early"
    FAST_FORWARDED = "fast_forwarded"


FAST_FORWARD_SECONDS = 5


@dataclass
class TimerSession:
    original_tokens: int
    total_minutes: int
    start_time: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    is_active: bool = True
    is_paused: bool = False
    paused_at: Optional[datetime] = None
    total_paused_duration: float = 0.0  # seconds

    def __post_init__(self):
        # All session instants are held in UTC
        self.start_time = to_utc(self.start_time)
        self.paused_at = to_utc(self.paused_at)

    @classmethod
    def create(cls, tokens: int, now: datetime) -> "TimerSession":
        return cls(original_tokens=tokens, total_minutes=tokens * MINUTES_PER_TOKEN, start_time=now)

    # ---- Derived values ----

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(seconds=self.total_minutes * 60 + self.total_paused_duration)

    def is_corrupted(self) -> bool:
        return self.original_tokens <= 0 or self.total_minutes <= 0

    def current_pause_seconds(self, now: datetime) -> float:
        now = to_utc(now)
        if self.is_paused and self.paused_at is not None:
            return (now - self.paused_at).total_seconds()
        return 0.0

    def remaining_seconds(self, now: datetime) -> float:
        """Seconds left, frozen at the pause moment while paused. Never negative."""
        reference = self.paused_at if self.is_paused and self.paused_at is not None else to_utc(now)
        return max(0.0, (self.end_time - reference).total_seconds())

    def remaining_minutes(self, now: datetime) -> int:
        return int(self.remaining_seconds(now) // 60)

    def effective_elapsed(self, now: datetime) -> float:
        """Seconds the countdown has actually run, excluding every pause."""
        now = to_utc(now)
        return (
            (now - self.start_time).total_seconds()
            - self.total_paused_duration
            - self.current_pause_seconds(now)
        )

    def is_in_grace_period(self, grace_period_minutes: int, now: datetime) -> bool:
        return self.effective_elapsed(now) <= grace_period_minutes * 60

    def is_completed(self, now: datetime) -> bool:
        if self.is_paused:
            return False
        return to_utc(now) >= self.end_time

    def refund_split(self, grace_period_minutes: int, now: datetime) -> tuple[int, int, bool]:
        """(returned_tokens, redeemed_tokens, was_in_grace_period) if ended at ``now``.

        Inside the grace period everything comes back. After it, only whole
        tokens of remaining time are returned; partial minutes are forfeited.
        """
        if self.is_in_grace_period(grace_period_minutes, now):
            return self.original_tokens, 0, True
        full_tokens_remaining = self.remaining_minutes(now) // MINUTES_PER_TOKEN
        full_tokens_remaining = min(full_tokens_remaining, self.original_tokens)
        return full_tokens_remaining, self.original_tokens - full_tokens_remaining, False

    # ---- Serialization ----

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "original_tokens": self.original_tokens,
            "total_minutes": self.total_minutes,
            "start_time": to_iso(self.start_time),
            "is_active": self.is_active,
            "is_paused": self.is_paused,
            "paused_at": to_iso(self.paused_at),
            "total_paused_duration": self.total_paused_duration,
        }

    def to_export_dict(self, now: datetime, grace_period_minutes: int) -> dict:
        """Snapshot for API consumers, including derived countdown values."""
        data = self.to_dict()
        data.update({
            "end_time": to_iso(self.end_time),
            "remaining_seconds": int(self.remaining_seconds(now)),
            "remaining_minutes": self.remaining_minutes(now),
            "in_grace_period": self.is_in_grace_period(grace_period_minutes, now),
        })
        return data

    @classmethod
    def from_dict(cls, data: dict, tz: Optional[tzinfo] = None) -> "TimerSession":
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            original_tokens=int(data.get("original_tokens", 0)),
            total_minutes=int(data.get("total_minutes", 0)),
            start_time=from_iso(data["start_time"], tz),
            is_active=bool(data.get("is_active", True)),
            is_paused=bool(data.get("is_paused", False)),
            paused_at=from_iso(data.get("paused_at"), tz),
            total_paused_duration=float(data.get("total_paused_duration", 0.0)),
        )


@dataclass
class TimerTransition:
    """Outcome of one engine call. Empty ``events`` means nothing changed."""

    events: list[TimerEvent] = field(default_factory=list)
    state: TimerState = TimerState.IDLE
    session: Optional[TimerSession] = None
    returned_tokens: int = 0
    redeemed_tokens: int = 0
    was_in_grace_period: bool = False
    ended_at: Optional[datetime] = None

    @property
    def changed(self) -> bool:
        return bool(self.events)

    @property
    def finished(self) -> bool:
        return TimerEvent.COMPLETED in self.events or TimerEvent.ENDED_EARLY in self.events


def recovery_refund(session: TimerSession, now: datetime) -> int:
    """Best-effort refund for a corrupted session. Always at least one token."""
    if session.original_tokens > 0:
        nominal = session.original_tokens
    elif session.total_minutes > 0:
        nominal = math.ceil(session.total_minutes / MINUTES_PER_TOKEN)
    else:
        nominal = 0
    elapsed_minutes = max(0.0, session.effective_elapsed(now)) // 60
    used_tokens = int(elapsed_minutes // MINUTES_PER_TOKEN)
    return max(1, nominal - used_tokens)


class TimerSessionEngine:
    """Encapsulates the single active session and its state machine.

    Pure computation: no wallet access, no persistence, no globals.
    """

    def __init__(self):
        self._session: Optional[TimerSession] = None

    # ---- Read-only properties ----

    @property
    def session(self) -> Optional[TimerSession]:
        return self._session

    @property
    def state(self) -> TimerState:
        if self._session is None:
            return TimerState.IDLE
        if self._session.is_paused:
            return TimerState.PAUSED
        return TimerState.RUNNING

    # ---- Core methods ----

    def start(self, tokens: int, now: datetime) -> TimerTransition:
        """Start a session for tokens the caller has already redeemed."""
        if tokens <= 0:
            raise SessionError(f"Cannot start a session with {tokens} tokens")
        if self._session is not None:
            raise SessionError("A timer session is already active")
        self._session = TimerSession.create(tokens, now)
        return self._result([TimerEvent.STARTED])

    def tick(self, now: datetime) -> TimerTransition:
        """Complete the session once its end time has passed. Paused sessions never complete."""
        session = self._session
        if session is None or session.is_paused or not session.is_active:
            return TimerTransition(state=self.state)
        if (session.end_time - to_utc(now)).total_seconds() > 0:
            return TimerTransition(state=self.state, session=replace(session))
        return self._complete(now)

    def pause(self, now: datetime) -> TimerTransition:
        session = self._session
        if session is None or session.is_paused:
            return TimerTransition(state=self.state)
        session.is_paused = True
        session.paused_at = to_utc(now)
        return self._result([TimerEvent.PAUSED])

    def resume(self, now: datetime) -> TimerTransition:
        session = self._session
        if session is None or not session.is_paused:
            return TimerTransition(state=self.state)
        if session.paused_at is not None:
            session.total_paused_duration += max(0.0, (to_utc(now) - session.paused_at).total_seconds())
        session.is_paused = False
        session.paused_at = None
        return self._result([TimerEvent.RESUMED])

    def end_early(self, grace_period_minutes: int, now: datetime) -> TimerTransition:
        """End the session now and split its tokens into returned and redeemed."""
        session = self._session
        if session is None:
            return TimerTransition(state=TimerState.IDLE)
        returned, redeemed, in_grace = session.refund_split(grace_period_minutes, now)
        self._session = None
        session.is_active = False
        return TimerTransition(
            events=[TimerEvent.ENDED_EARLY],
            state=TimerState.ENDED_EARLY,
            session=session,
            returned_tokens=returned,
            redeemed_tokens=redeemed,
            was_in_grace_period=in_grace,
            ended_at=now,
        )

    def restore(self, session: TimerSession, now: datetime) -> TimerTransition:
        """Install a persisted session.

        A session that is inactive or already past its end time is completed on
        the spot (the returned transition carries COMPLETED) and not kept.
        Raises CorruptedSessionError for non-positive token or minute counts.
        """
        if self._session is not None:
            raise SessionError("Cannot restore over an active session")
        if session.is_corrupted():
            raise CorruptedSessionError(session)
        self._session = session
        if not session.is_active or session.is_completed(now):
            return self._complete(min(to_utc(now), session.end_time))
        return TimerTransition(state=self.state, session=replace(session))

    def discard(self) -> Optional[TimerSession]:
        """Drop the live session without emitting anything (corrupted-state recovery)."""
        session, self._session = self._session, None
        return session

    def fast_forward(self, now: datetime, seconds: int = FAST_FORWARD_SECONDS) -> TimerTransition:
        """Debug helper: make the session end ``seconds`` from now.

        This is the one operation allowed to shrink total_paused_duration.
        """
        session = self._session
        if session is None:
            return TimerTransition(state=TimerState.IDLE)
        session.is_paused = False
        session.paused_at = None
        desired_end = to_utc(now) + timedelta(seconds=seconds)
        session.total_paused_duration = (
            (desired_end - session.start_time).total_seconds() - session.total_minutes * 60
        )
        return self._result([TimerEvent.FAST_FORWARDED])

    # ---- Internal ----

    def _complete(self, now: datetime) -> TimerTransition:
        session = self._session
        self._session = None
        session.is_active = False
        return TimerTransition(
            events=[TimerEvent.COMPLETED],
            state=TimerState.COMPLETED,
            session=session,
            returned_tokens=0,
            redeemed_tokens=session.original_tokens,
            ended_at=now,
        )

    def _result(self, events: list[TimerEvent]) -> TimerTransition:
        return TimerTransition(
            events=events,
            state=self.state,
            session=replace(self._session) if self._session is not None else None,
        )


# ---- Display helpers ----

def format_countdown(total_seconds: float, fmt: TimeDisplayFormat = TimeDisplayFormat.HOURS_MINUTES) -> str:
    """Format a countdown as H:MM:SS / M:SS (or total minutes M:SS)."""
    safe_seconds = max(0, int(total_seconds))
    if fmt == TimeDisplayFormat.MINUTES_ONLY:
        return f"{safe_seconds // 60}:{safe_seconds % 60:02d}"
    hours = safe_seconds // 3600
    minutes = (safe_seconds % 3600) // 60
    seconds = safe_seconds % 60
    if hours > 0:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"


def format_total_time(minutes: int, fmt: TimeDisplayFormat = TimeDisplayFormat.HOURS_MINUTES) -> str:
    """Format a minute total as 'Xh Ym' / 'Ym', or 'N minutes'."""
    if fmt == TimeDisplayFormat.MINUTES_ONLY:
        return f"{minutes} minutes"
    hours, mins = divmod(max(0, minutes), 60)
    if hours > 0:
        return f"{hours}h {mins}m"
    return f"{mins}m"
