"""SQLite-backed load/save for the core entities.

Each entity is one JSON value in a key/value table. Load failures fall back to
the default entity; save failures are logged and reported as False. Neither
ever raises into the host.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from .config import SUNDAY
from .grants import ScheduledGrant, ScheduledGrantScheduler
from .settings import Settings
from .timer import TimerSession
from .usage import UsageAnalytics
from .wallet import WalletLedger

logger = logging.getLogger(__name__)

WALLET_KEY = "wallet"
SESSION_KEY = "current_session"
USAGE_KEY = "usage"
GRANTS_KEY = "scheduled_grants"
SETTINGS_KEY = "settings"

# Errors that mean "this record is unusable", not "the program is broken"
_DECODE_ERRORS = (json.JSONDecodeError, KeyError, ValueError, TypeError, AttributeError)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    """Persists wallet, session, usage, grants and settings in one SQLite file."""

    def __init__(self, db_path: Path, tz: tzinfo = timezone.utc, first_weekday: int = SUNDAY):
        self.db_path = Path(db_path)
        self.tz = tz
        self.first_weekday = first_weekday

    # ── Schema ─────────────────────────────────────────────────

    async def init(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout=5000")
            await db.execute("""
                CREATE TABLE IF NOT EXISTS kv_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await db.commit()

    # ── Raw access ─────────────────────────────────────────────

    async def _get(self, key: str) -> Optional[Any]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT value FROM kv_state WHERE key = ?", (key,))
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            logger.warning(f"Store: could not read '{key}': {e}")
            return None
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            logger.warning(f"Store: '{key}' is not valid JSON, using default: {e}")
            return None

    async def _put(self, key: str, value: Any) -> bool:
        try:
            payload = json.dumps(value)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA busy_timeout=5000")
                await db.execute("""
                    INSERT INTO kv_state (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                """, (key, payload, _now_iso()))
                await db.commit()
            return True
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.error(f"Store: could not save '{key}': {e}")
            return False

    async def _delete(self, key: str) -> bool:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("DELETE FROM kv_state WHERE key = ?", (key,))
                await db.commit()
            return True
        except sqlite3.Error as e:
            logger.error(f"Store: could not delete '{key}': {e}")
            return False

    # ── Load ───────────────────────────────────────────────────

    async def load_wallet(self) -> WalletLedger:
        data = await self._get(WALLET_KEY)
        if data is None:
            return WalletLedger()
        try:
            return WalletLedger.from_dict(data)
        except _DECODE_ERRORS as e:
            logger.warning(f"Store: bad wallet record, starting empty: {e}")
            return WalletLedger()

    async def load_session(self) -> Optional[TimerSession]:
        data = await self._get(SESSION_KEY)
        if data is None:
            return None
        try:
            return TimerSession.from_dict(data, self.tz)
        except _DECODE_ERRORS as e:
            logger.warning(f"Store: bad session record, discarding: {e}")
            return None

    async def load_usage(self) -> UsageAnalytics:
        data = await self._get(USAGE_KEY)
        if data is None:
            return UsageAnalytics(tz=self.tz, first_weekday=self.first_weekday)
        try:
            return UsageAnalytics.from_dict(data, tz=self.tz, first_weekday=self.first_weekday)
        except _DECODE_ERRORS as e:
            logger.warning(f"Store: bad usage record, starting empty: {e}")
            return UsageAnalytics(tz=self.tz, first_weekday=self.first_weekday)

    async def load_grants(self) -> list[ScheduledGrant]:
        data = await self._get(GRANTS_KEY)
        if not isinstance(data, list):
            return []
        grants = []
        for item in data:
            try:
                grants.append(ScheduledGrant.from_dict(item, self.tz))
            except _DECODE_ERRORS as e:
                logger.warning(f"Store: skipping bad grant record {item!r}: {e}")
        return grants

    async def load_settings(self) -> Settings:
        data = await self._get(SETTINGS_KEY)
        if data is None:
            return Settings()
        try:
            return Settings.from_dict(data)
        except _DECODE_ERRORS as e:
            logger.warning(f"Store: bad settings record, using defaults: {e}")
            return Settings()

    # ── Save ───────────────────────────────────────────────────

    async def save_wallet(self, wallet: WalletLedger) -> bool:
        return await self._put(WALLET_KEY, wallet.to_dict())

    async def save_session(self, session: Optional[TimerSession]) -> bool:
        if session is None:
            return await self._delete(SESSION_KEY)
        return await self._put(SESSION_KEY, session.to_dict())

    async def save_usage(self, usage: UsageAnalytics) -> bool:
        return await self._put(USAGE_KEY, usage.to_dict())

    async def save_grants(self, grants: list[ScheduledGrant]) -> bool:
        return await self._put(GRANTS_KEY, ScheduledGrantScheduler(grants).to_list())

    async def save_settings(self, settings: Settings) -> bool:
        return await self._put(SETTINGS_KEY, settings.to_dict())

    async def save_all(
        self,
        wallet: WalletLedger,
        session: Optional[TimerSession],
        usage: UsageAnalytics,
        settings: Settings,
        grants: list[ScheduledGrant],
    ) -> bool:
        """Write every entity in one transaction.

        Payloads are serialized before the first ``await`` so the stored state
        is one consistent snapshot even if a request mutates the host meanwhile.
        """
        try:
            rows = [
                (WALLET_KEY, json.dumps(wallet.to_dict())),
                (USAGE_KEY, json.dumps(usage.to_dict())),
                (SETTINGS_KEY, json.dumps(settings.to_dict())),
                (GRANTS_KEY, json.dumps(ScheduledGrantScheduler(grants).to_list())),
            ]
            if session is not None:
                rows.append((SESSION_KEY, json.dumps(session.to_dict())))
        except (TypeError, ValueError) as e:
            logger.error(f"Store: could not serialize state: {e}")
            return False

        updated_at = _now_iso()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA busy_timeout=5000")
                await db.executemany("""
                    INSERT INTO kv_state (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                """, [(key, payload, updated_at) for key, payload in rows])
                if session is None:
                    await db.execute("DELETE FROM kv_state WHERE key = ?", (SESSION_KEY,))
                await db.commit()
            return True
        except sqlite3.Error as e:
            logger.error(f"Store: could not save state: {e}")
            return False
