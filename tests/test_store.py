"""
Tests for StateStore: round-trips, defaults, and tolerance of bad records.

Every test uses a fresh SQLite file under tmp_path.
"""

import asyncio
import json
from datetime import date, datetime, timedelta, timezone

import aiosqlite
import pytest

from token_timer.grants import Recurrence, ScheduledGrant
from token_timer.settings import Settings, TimeDisplayFormat
from token_timer.store import GRANTS_KEY, SESSION_KEY, WALLET_KEY, StateStore
from token_timer.timer import TimerSession
from token_timer.usage import UsageAnalytics
from token_timer.wallet import WalletLedger

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# ── Helpers ───────────────────────────────────────────────────


def run(coro):
    """Run an async function in a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@pytest.fixture
def store(tmp_path):
    s = StateStore(tmp_path / "state.db")
    run(s.init())
    return s


async def write_raw(store: StateStore, key: str, value: str):
    async with aiosqlite.connect(store.db_path) as db:
        await db.execute(
            "INSERT OR REPLACE INTO kv_state (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, T0.isoformat()),
        )
        await db.commit()


# ── Defaults ──────────────────────────────────────────────────


class TestDefaults:
    def test_empty_store_gives_defaults(self, store):
        assert run(store.load_wallet()).balance == 0
        assert run(store.load_session()) is None
        assert run(store.load_usage()).sessions == []
        assert run(store.load_grants()) == []
        assert run(store.load_settings()) == Settings()

    def test_init_creates_parent_directory(self, tmp_path):
        s = StateStore(tmp_path / "nested" / "dir" / "state.db")
        run(s.init())
        assert s.db_path.exists()


# ── Round-trips ───────────────────────────────────────────────


class TestRoundTrip:
    def test_save_all_and_load(self, store):
        wallet = WalletLedger(7)
        session = TimerSession.create(2, T0)
        usage = UsageAnalytics()
        usage.record_usage(30, date(2026, 3, 1))
        settings = Settings(daily_goal_minutes=45, time_display_format=TimeDisplayFormat.MINUTES_ONLY)
        grant = ScheduledGrant(token_count=2, scheduled_date=T0, title="Weekend", recurrence=Recurrence.WEEKLY)

        assert run(store.save_all(wallet, session, usage, settings, [grant])) is True

        assert run(store.load_wallet()).balance == 7
        assert run(store.load_session()) == session
        assert run(store.load_usage()).daily_minutes == {"2026-03-01": 30}
        assert run(store.load_settings()) == settings
        assert run(store.load_grants()) == [grant]

    def test_saving_no_session_clears_it(self, store):
        run(store.save_session(TimerSession.create(1, T0)))
        run(store.save_session(None))
        assert run(store.load_session()) is None

    def test_save_all_without_session_clears_it(self, store):
        run(store.save_session(TimerSession.create(1, T0)))
        assert run(store.save_all(WalletLedger(3), None, UsageAnalytics(), Settings(), [])) is True
        assert run(store.load_session()) is None
        assert run(store.load_wallet()).balance == 3

    def test_overwrite_keeps_latest(self, store):
        run(store.save_wallet(WalletLedger(1)))
        run(store.save_wallet(WalletLedger(9)))
        assert run(store.load_wallet()).balance == 9


# ── Bad records ───────────────────────────────────────────────


class TestBadRecords:
    def test_invalid_json_falls_back(self, store):
        run(write_raw(store, WALLET_KEY, "{not json"))
        assert run(store.load_wallet()).balance == 0

    def test_wrong_shape_falls_back(self, store):
        run(write_raw(store, WALLET_KEY, '{"total_tokens": "lots"}'))
        assert run(store.load_wallet()).balance == 0

    def test_session_missing_start_time_is_discarded(self, store):
        run(write_raw(store, SESSION_KEY, '{"original_tokens": 2, "total_minutes": 30}'))
        assert run(store.load_session()) is None

    def test_corrupted_session_counts_are_loaded_as_is(self, store):
        """Zero counts are the host's problem (it refunds and discards)."""
        session = TimerSession(original_tokens=0, total_minutes=30, start_time=T0)
        run(store.save_session(session))
        loaded = run(store.load_session())
        assert loaded.original_tokens == 0
        assert loaded.total_minutes == 30

    def test_bad_grant_skipped_good_grant_kept(self, store):
        good = ScheduledGrant(token_count=1, scheduled_date=T0, title="Daily")
        bad = dict(good.to_dict(), id="bad", token_count=0)
        run(store.save_grants([good]))
        run(write_raw(store, GRANTS_KEY, f'[{json.dumps(bad)}, {json.dumps(good.to_dict())}]'))
        assert [g.id for g in run(store.load_grants())] == [good.id]

    def test_save_to_unwritable_path_returns_false(self, tmp_path):
        # A directory where the database file should be
        path = tmp_path / "state.db"
        path.mkdir()
        s = StateStore(path)
        assert run(s.save_wallet(WalletLedger(1))) is False
        assert run(s.save_all(WalletLedger(1), None, UsageAnalytics(), Settings(), [])) is False

    def test_naive_timestamps_use_store_timezone(self, tmp_path):
        tz = timezone(timedelta(hours=-5))
        s = StateStore(tmp_path / "state.db", tz=tz)
        run(s.init())
        run(write_raw(s, SESSION_KEY, '{"original_tokens": 1, "total_minutes": 15, "start_time": "2026-03-02T12:00:00"}'))
        assert run(s.load_session()).start_time == datetime(2026, 3, 2, 12, 0, tzinfo=tz)
