"""HTTP API tests through FastAPI's TestClient with a fixed clock. Background jobs are called directly."""

import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from token_timer.config import SUNDAY, AppConfig
from token_timer.grants import ScheduledGrant
from token_timer.host import TokenTimerHost
from token_timer.main import create_app, grants_job

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        db_path=tmp_path / "state.db",
        port=7780,
        api_url="http://testserver",
        timezone=timezone.utc,
        week_start=SUNDAY,
        crash_log_path=tmp_path / "crash.log",
    )


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def client(config, clock):
    app = create_app(config, clock=clock, run_scheduler=False)
    with TestClient(app) as c:
        yield c


# ── Wallet ────────────────────────────────────────────────────


class TestWallet:
    def test_initial_state(self, client):
        data = client.get("/api/state").json()
        assert data["balance"] == 0
        assert data["state"] == "idle"
        assert data["session"] is None

    def test_add_tokens(self, client):
        resp = client.post("/api/wallet/add", json={"tokens": 3})
        assert resp.status_code == 200
        assert resp.json()["balance"] == 3

    def test_fill_respects_cap(self, client):
        client.put("/api/settings", json={"max_wallet_tokens": 4})
        client.post("/api/wallet/add", json={"tokens": 3})
        resp = client.post("/api/wallet/fill", json={"tokens": 5})
        assert resp.json() == {"balance": 4, "added": 1}

    def test_non_positive_tokens_rejected(self, client):
        assert client.post("/api/wallet/add", json={"tokens": 0}).status_code == 422

    def test_balance_persists_across_restarts(self, config, clock):
        with TestClient(create_app(config, clock=clock, run_scheduler=False)) as c:
            c.post("/api/wallet/add", json={"tokens": 6})
        with TestClient(create_app(config, clock=clock, run_scheduler=False)) as c:
            assert c.get("/api/state").json()["balance"] == 6


# ── Timer ─────────────────────────────────────────────────────


class TestTimer:
    def test_start_without_tokens_conflicts(self, client):
        resp = client.post("/api/timer/start", json={"tokens": 1})
        assert resp.status_code == 409

    def test_start_pause_resume_end(self, client, clock):
        client.post("/api/wallet/add", json={"tokens": 4})

        started = client.post("/api/timer/start", json={"tokens": 4}).json()
        assert started["events"] == ["started"]
        assert started["state"]["balance"] == 0
        assert started["state"]["session"]["total_minutes"] == 60
        assert started["state"]["countdown"] == "1:00:00"

        clock.advance(600)
        paused = client.post("/api/timer/pause").json()
        assert paused["state"]["state"] == "paused"

        clock.advance(300)
        resumed = client.post("/api/timer/resume").json()
        assert resumed["state"]["session"]["remaining_minutes"] == 50

        clock.advance(1200)
        ended = client.post("/api/timer/end-early").json()
        assert ended["returned_tokens"] == 2
        assert ended["redeemed_tokens"] == 2
        assert ended["state"]["balance"] == 2

    def test_duplicate_start_conflicts(self, client):
        client.post("/api/wallet/add", json={"tokens": 4})
        client.post("/api/timer/start", json={"tokens": 1})
        resp = client.post("/api/timer/start", json={"tokens": 1})
        assert resp.status_code == 409
        assert client.get("/api/state").json()["balance"] == 3

    def test_end_without_session_conflicts(self, client):
        assert client.post("/api/timer/end-early").status_code == 409
        assert client.post("/api/timer/pause").status_code == 409

    def test_fast_forward(self, client, clock):
        client.post("/api/wallet/add", json={"tokens": 2})
        client.post("/api/timer/start", json={"tokens": 2})
        data = client.post("/api/debug/fast-forward", json={"seconds": 5}).json()
        assert data["state"]["session"]["remaining_seconds"] == 5

    def test_reminders_listed(self, client):
        client.post("/api/wallet/add", json={"tokens": 1})
        client.post("/api/timer/start", json={"tokens": 1})
        ids = [r["identifier"] for r in client.get("/api/notifications").json()]
        assert ids == ["timer_update_10", "timer_update_5", "timer_complete"]

    def test_activity(self, client):
        assert client.post("/api/activity").json() == {"ok": True}


# ── Grants ────────────────────────────────────────────────────


class TestGrants:
    def create(self, client, **overrides):
        payload = {
            "title": "Weekly allowance",
            "token_count": 2,
            "scheduled_date": (T0 + timedelta(days=1)).isoformat(),
            "recurrence": "weekly",
        }
        payload.update(overrides)
        return client.post("/api/grants", json=payload)

    def test_create_and_list(self, client):
        resp = self.create(client)
        assert resp.status_code == 201
        grant = resp.json()
        assert grant["next_occurrence"] == (T0 + timedelta(days=1)).isoformat()
        assert [g["id"] for g in client.get("/api/grants").json()] == [grant["id"]]

    def test_update(self, client):
        grant = self.create(client).json()
        resp = client.patch(f"/api/grants/{grant['id']}", json={"token_count": 5, "notes": "more"})
        assert resp.status_code == 200
        assert resp.json()["token_count"] == 5
        assert resp.json()["notes"] == "more"
        assert resp.json()["recurrence"] == "weekly"

    def test_toggle(self, client):
        grant = self.create(client).json()
        toggled = client.post(f"/api/grants/{grant['id']}/toggle").json()
        assert toggled["is_active"] is False
        assert toggled["next_occurrence"] is None

    def test_delete(self, client):
        grant = self.create(client).json()
        assert client.delete(f"/api/grants/{grant['id']}").status_code == 200
        assert client.get("/api/grants").json() == []

    def test_unknown_grant_404(self, client):
        assert client.patch("/api/grants/nope", json={"title": "x"}).status_code == 404
        assert client.delete("/api/grants/nope").status_code == 404
        assert client.post("/api/grants/nope/toggle").status_code == 404

    def test_invalid_grant_rejected(self, client):
        assert self.create(client, token_count=0).status_code == 422
        assert self.create(client, recurrence="yearly").status_code == 422


# ── Settings / stats ──────────────────────────────────────────


class TestSettingsAndStats:
    def test_settings_round_trip(self, client):
        resp = client.put("/api/settings", json={"grace_period_minutes": 5, "daily_goal_minutes": 0})
        assert resp.status_code == 200
        data = client.get("/api/settings").json()
        assert data["grace_period_minutes"] == 5
        assert data["daily_goal_minutes"] is None

    def test_stats(self, client, clock):
        client.post("/api/wallet/add", json={"tokens": 1})
        client.post("/api/timer/start", json={"tokens": 1})
        clock.advance(900)
        client.app.state.host.tick(clock())
        stats = client.get("/api/stats").json()
        assert stats["today_minutes"] == 15
        assert stats["session_count"] == 1

    def test_recommendations(self, client):
        client.put("/api/settings", json={"daily_goal_minutes": 30})
        client.post("/api/wallet/add", json={"tokens": 5})
        recs = client.get("/api/recommendations").json()
        assert recs[0]["type"] == "goal_based"
        assert recs[0]["suggested_tokens"] == 3

    def test_reset_endpoints(self, client):
        client.post("/api/wallet/add", json={"tokens": 5})
        assert client.post("/api/debug/reset-wallet").json() == {"balance": 0}
        assert client.post("/api/debug/reset-stats").json() == {"ok": True}

    def test_logs(self, client):
        client.post("/api/wallet/add", json={"tokens": 2})
        data = client.get("/api/logs?limit=10").json()
        assert data["count"] == len(data["logs"])
        assert any("Wallet" in entry["message"] for entry in data["logs"])


# ── Background jobs ───────────────────────────────────────────


class RecordingStore:
    def __init__(self):
        self.saves = 0

    async def save_all(self, **state) -> bool:
        self.saves += 1
        return True


def job_app(host: TokenTimerHost, now: datetime) -> SimpleNamespace:
    return SimpleNamespace(state=SimpleNamespace(host=host, store=RecordingStore(), clock=lambda: now))


def run_job(job, app) -> None:
    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(job(app))
    finally:
        loop.close()


class TestGrantsJob:
    def test_due_grant_is_saved(self):
        grant = ScheduledGrant(token_count=2, scheduled_date=T0 - timedelta(hours=1), title="Daily")
        app = job_app(TokenTimerHost(grants=[grant]), T0)
        run_job(grants_job, app)
        assert app.state.host.wallet.balance == 2
        assert app.state.store.saves == 1

    def test_failed_advance_alone_does_not_save(self):
        stuck = datetime(9999, 12, 31, 0, 0, tzinfo=timezone.utc)
        grant = ScheduledGrant(token_count=2, scheduled_date=stuck, title="Daily")
        app = job_app(TokenTimerHost(grants=[grant]), stuck + timedelta(hours=12))
        run_job(grants_job, app)
        assert app.state.host.wallet.balance == 0
        assert app.state.store.saves == 0

    def test_nothing_due_does_not_save(self):
        grant = ScheduledGrant(token_count=2, scheduled_date=T0 + timedelta(hours=1), title="Daily")
        app = job_app(TokenTimerHost(grants=[grant]), T0)
        run_job(grants_job, app)
        assert app.state.store.saves == 0
