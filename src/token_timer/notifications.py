"""Reminder planning for a running session.

The core only decides *when* reminders should fire; delivering them is up to
whatever Notifier the host is given.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from .clock import to_utc
from .timer import TimerSession, format_total_time

logger = logging.getLogger(__name__)

# Silent updates this many minutes before completion
REMINDER_LEAD_MINUTES = (5, 10, 15, 30)


@dataclass(frozen=True)
class Reminder:
    identifier: str
    fire_at: datetime
    title: str
    body: str
    silent: bool

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "fire_at": self.fire_at.isoformat(),
            "title": self.title,
            "body": self.body,
            "silent": self.silent,
        }


def plan_reminders(session: TimerSession, now: datetime) -> list[Reminder]:
    """Completion reminder plus silent "N minutes left" updates.

    Lead times that are not strictly shorter than the remaining time are dropped.
    """
    remaining = session.remaining_minutes(now)
    now = to_utc(now)
    reminders = [
        Reminder(
            identifier="timer_complete",
            fire_at=now + timedelta(minutes=remaining),
            title="Leisure Time Complete",
            body=f"Your {session.original_tokens} token timer has finished!",
            silent=False,
        )
    ]
    for lead in REMINDER_LEAD_MINUTES:
        if lead < remaining:
            reminders.append(Reminder(
                identifier=f"timer_update_{lead}",
                fire_at=now + timedelta(minutes=remaining - lead),
                title="Leisure Time Remaining",
                body=f"{format_total_time(lead)} remaining",
                silent=True,
            ))
    return reminders


class Notifier(Protocol):
    def schedule(self, reminders: list[Reminder]) -> None: ...

    def cancel_all(self) -> None: ...


class LoggingNotifier:
    """Keeps pending reminders in memory and logs scheduling changes."""

    def __init__(self):
        self.pending: list[Reminder] = []

    def schedule(self, reminders: list[Reminder]) -> None:
        self.pending = sorted(reminders, key=lambda r: r.fire_at)
        logger.info(f"Notifications: {len(self.pending)} reminders scheduled")

    def cancel_all(self) -> None:
        if self.pending:
            logger.info(f"Notifications: cancelled {len(self.pending)} reminders")
        self.pending = []
