"""Recurring scheduled grants with catch-up.

Each ScheduledGrant fires on its ``scheduled_date`` and then every day, week or
calendar month after it. ``process`` credits every period that elapsed since
the last run in one batch and moves the rule's date past ``now``.
"""

from __future__ import annotations

import calendar
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import MAXYEAR, datetime, timedelta, tzinfo
from enum import Enum
from typing import Optional

from .clock import from_iso, to_iso
from .errors import GrantAdvanceError, GrantNotFoundError
from .wallet import WalletLedger

logger = logging.getLogger(__name__)


class Recurrence(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass
class ScheduledGrant:
    token_count: int
    scheduled_date: datetime
    title: str
    recurrence: Recurrence = Recurrence.DAILY
    notes: Optional[str] = None
    is_active: bool = True
    created_date: Optional[datetime] = None
    max_wallet_tokens: Optional[int] = None  # None = no cap
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if self.token_count <= 0:
            raise ValueError(f"Grant token_count must be positive: {self.token_count}")
        self.recurrence = Recurrence(self.recurrence)
        if self.created_date is None:
            self.created_date = self.scheduled_date

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "token_count": self.token_count,
            "scheduled_date": to_iso(self.scheduled_date),
            "title": self.title,
            "notes": self.notes,
            "recurrence": self.recurrence.value,
            "is_active": self.is_active,
            "created_date": to_iso(self.created_date),
            "max_wallet_tokens": self.max_wallet_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict, tz: Optional[tzinfo] = None) -> "ScheduledGrant":
        scheduled = from_iso(data["scheduled_date"], tz)
        if tz is not None:
            scheduled = scheduled.astimezone(tz)
        cap = data.get("max_wallet_tokens")
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            token_count=int(data["token_count"]),
            scheduled_date=scheduled,
            title=data.get("title", ""),
            notes=data.get("notes"),
            recurrence=Recurrence(data.get("recurrence", Recurrence.DAILY.value)),
            is_active=bool(data.get("is_active", True)),
            created_date=from_iso(data.get("created_date"), tz),
            max_wallet_tokens=int(cap) if cap is not None else None,
        )


# ---- Calendar stepping ----

def _add_months(moment: datetime, months: int) -> datetime:
    """Same wall-clock time ``months`` later, clamped to the last day of short months."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    if year > MAXYEAR:
        raise GrantAdvanceError(f"Cannot advance {moment.isoformat()} past year {MAXYEAR}")
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def advance(moment: datetime, recurrence: Recurrence) -> datetime:
    """One recurrence step. Raises GrantAdvanceError if no valid date exists."""
    try:
        if recurrence == Recurrence.DAILY:
            return moment + timedelta(days=1)
        if recurrence == Recurrence.WEEKLY:
            return moment + timedelta(weeks=1)
        return _add_months(moment, 1)
    except OverflowError as e:
        raise GrantAdvanceError(f"Cannot advance {moment.isoformat()} by one {recurrence.value} step: {e}") from e


def next_occurrence(grant: ScheduledGrant, now: datetime) -> Optional[datetime]:
    """Smallest fire date strictly after ``now``, or None for inactive grants.

    Pure query: the grant is not modified.
    """
    if not grant.is_active:
        return None
    cursor = grant.scheduled_date
    while cursor <= now:
        cursor = advance(cursor, grant.recurrence)
    return cursor


@dataclass
class GrantResult:
    grant_id: str
    title: str
    tokens_due: int = 0
    tokens_added: int = 0
    next_date: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class GrantReport:
    results: list[GrantResult] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return any(r.tokens_due > 0 and r.error is None for r in self.results)

    @property
    def tokens_added(self) -> int:
        return sum(r.tokens_added for r in self.results)


class ScheduledGrantScheduler:
    """Owns the grant rules and turns elapsed periods into wallet credits."""

    def __init__(self, grants: Optional[list[ScheduledGrant]] = None):
        self._grants: list[ScheduledGrant] = list(grants or [])

    @property
    def grants(self) -> list[ScheduledGrant]:
        return list(self._grants)

    # ---- Processing ----

    def process(self, now: datetime, wallet: WalletLedger) -> GrantReport:
        """Credit every due period of every active grant.

        A grant whose calendar step fails is left exactly as it was and retried
        on the next call; nothing is credited for it this cycle.
        """
        report = GrantReport()
        for index, grant in enumerate(self._grants):
            if not grant.is_active or grant.scheduled_date > now:
                continue

            result = GrantResult(grant_id=grant.id, title=grant.title)
            cursor = grant.scheduled_date
            tokens_due = 0
            try:
                while cursor <= now:
                    tokens_due += grant.token_count
                    cursor = advance(cursor, grant.recurrence)
            except GrantAdvanceError as e:
                logger.warning(f"Grant '{grant.title}' ({grant.id}) skipped this cycle: {e}")
                result.error = str(e)
                report.results.append(result)
                continue

            if tokens_due <= 0:
                continue

            result.tokens_due = tokens_due
            result.tokens_added = self._credit(grant, tokens_due, wallet)
            result.next_date = cursor
            self._grants[index] = replace(grant, scheduled_date=cursor)
            report.results.append(result)
            logger.info(
                f"Grant '{grant.title}': {tokens_due} tokens due, {result.tokens_added} added, "
                f"next at {cursor.isoformat()}"
            )
        return report

    @staticmethod
    def _credit(grant: ScheduledGrant, tokens_due: int, wallet: WalletLedger) -> int:
        cap = grant.max_wallet_tokens
        if cap is None:
            wallet.add_tokens(tokens_due)
            return tokens_due
        if cap <= 0:
            return 0
        return wallet.add_tokens_up_to_max(tokens_due, cap)

    def next_occurrence(self, grant_id: str, now: datetime) -> Optional[datetime]:
        return next_occurrence(self.get(grant_id), now)

    # ---- CRUD ----

    def get(self, grant_id: str) -> ScheduledGrant:
        for grant in self._grants:
            if grant.id == grant_id:
                return grant
        raise GrantNotFoundError(f"No scheduled grant with id {grant_id}")

    def add(self, grant: ScheduledGrant) -> ScheduledGrant:
        if any(g.id == grant.id for g in self._grants):
            raise ValueError(f"Grant {grant.id} already exists")
        self._grants.append(grant)
        logger.info(f"Grant added: '{grant.title}' ({grant.token_count} tokens {grant.recurrence.value})")
        return grant

    def update(self, grant: ScheduledGrant) -> bool:
        for index, existing in enumerate(self._grants):
            if existing.id == grant.id:
                self._grants[index] = grant
                logger.info(f"Grant updated: '{grant.title}' ({grant.id})")
                return True
        return False

    def remove(self, grant_id: str) -> bool:
        before = len(self._grants)
        self._grants = [g for g in self._grants if g.id != grant_id]
        removed = len(self._grants) < before
        if removed:
            logger.info(f"Grant removed: {grant_id}")
        return removed

    def toggle(self, grant_id: str) -> Optional[ScheduledGrant]:
        for index, grant in enumerate(self._grants):
            if grant.id == grant_id:
                self._grants[index] = replace(grant, is_active=not grant.is_active)
                return self._grants[index]
        return None

    # ---- Serialization ----

    def to_list(self) -> list[dict]:
        return [g.to_dict() for g in self._grants]

    def load(self, grants: list[ScheduledGrant]) -> None:
        self._grants = list(grants)
