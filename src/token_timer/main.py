#!/usr/bin/env python3
"""
Token Timer server: FastAPI app that hosts the wallet, timer and grant scheduler.

Run directly (``python -m token_timer.main``) or via ``token-timer serve``.
Background jobs run on an AsyncIOScheduler:
    tick              every second   (completes sessions)
    process_grants    every minute   (scheduled grant catch-up)
    check_inactivity  every 30 s     (auto-pause)
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from .config import (
    GRANT_INTERVAL_SECONDS,
    INACTIVITY_INTERVAL_SECONDS,
    TICK_INTERVAL_SECONDS,
    AppConfig,
    load_config,
)
from .errors import GrantNotFoundError
from .grants import Recurrence, ScheduledGrant
from .host import TokenTimerHost
from .logs import install_crash_handlers, logger, recent_logs
from .notifications import LoggingNotifier
from .settings import TimeDisplayFormat
from .store import StateStore
from .timer import FAST_FORWARD_SECONDS, TimerTransition


# ============ Pydantic Models ============

class TokenAmountRequest(BaseModel):
    tokens: int = Field(gt=0)


class GrantCreateRequest(BaseModel):
    title: str
    token_count: int = Field(gt=0)
    scheduled_date: datetime
    recurrence: Recurrence = Recurrence.DAILY
    notes: Optional[str] = None
    is_active: bool = True
    max_wallet_tokens: Optional[int] = None


class GrantUpdateRequest(BaseModel):
    title: Optional[str] = None
    token_count: Optional[int] = Field(default=None, gt=0)
    scheduled_date: Optional[datetime] = None
    recurrence: Optional[Recurrence] = None
    notes: Optional[str] = None
    is_active: Optional[bool] = None
    max_wallet_tokens: Optional[int] = None


class SettingsUpdateRequest(BaseModel):
    grace_period_minutes: Optional[int] = Field(default=None, ge=0)
    auto_pause_enabled: Optional[bool] = None
    auto_pause_minutes: Optional[int] = Field(default=None, ge=1)
    daily_goal_minutes: Optional[int] = None
    weekly_goal_minutes: Optional[int] = None
    monthly_goal_minutes: Optional[int] = None
    max_wallet_tokens: Optional[int] = None
    time_display_format: Optional[TimeDisplayFormat] = None


class FastForwardRequest(BaseModel):
    seconds: int = Field(default=FAST_FORWARD_SECONDS, ge=0)


# ============ Helpers ============

def _host(request: Request) -> TokenTimerHost:
    return request.app.state.host


def _now(request: Request) -> datetime:
    return request.app.state.clock()


async def _persist(request: Request) -> None:
    await request.app.state.host.save(request.app.state.store)


def _transition_response(host: TokenTimerHost, transition: TimerTransition, now: datetime) -> dict:
    return {
        "events": [e.value for e in transition.events],
        "returned_tokens": transition.returned_tokens,
        "redeemed_tokens": transition.redeemed_tokens,
        "was_in_grace_period": transition.was_in_grace_period,
        "state": host.snapshot(now),
    }


# ============ Background jobs ============

async def tick_job(app: FastAPI) -> None:
    host: TokenTimerHost = app.state.host
    transition = host.tick(app.state.clock())
    if transition.changed:
        await host.save(app.state.store)


async def grants_job(app: FastAPI) -> None:
    host: TokenTimerHost = app.state.host
    report = host.process_grants(app.state.clock())
    if report.changed:
        await host.save(app.state.store)


async def inactivity_job(app: FastAPI) -> None:
    host: TokenTimerHost = app.state.host
    transition = host.check_inactivity(app.state.clock())
    if transition is not None and transition.changed:
        await host.save(app.state.store)


def create_app(
    config: Optional[AppConfig] = None,
    clock: Optional[Callable[[], datetime]] = None,
    run_scheduler: bool = True,
) -> FastAPI:
    """Build the app. ``clock`` and ``run_scheduler`` exist for tests."""
    config = config or load_config()
    clock = clock or (lambda: datetime.now(config.timezone))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        install_crash_handlers(config.crash_log_path, asyncio.get_running_loop())

        store = StateStore(config.db_path, tz=config.timezone, first_weekday=config.week_start)
        await store.init()
        app.state.store = store
        app.state.host = await TokenTimerHost.load(store, clock(), notifier=LoggingNotifier())
        logger.info(f"Token Timer loaded from {config.db_path} (balance {app.state.host.wallet.balance})")

        scheduler = AsyncIOScheduler(timezone=config.timezone)
        if run_scheduler:
            scheduler.add_job(
                tick_job, IntervalTrigger(seconds=TICK_INTERVAL_SECONDS),
                args=[app], id="tick", max_instances=1, coalesce=True,
            )
            scheduler.add_job(
                grants_job, IntervalTrigger(seconds=GRANT_INTERVAL_SECONDS),
                args=[app], id="process_grants", max_instances=1, coalesce=True,
            )
            scheduler.add_job(
                inactivity_job, IntervalTrigger(seconds=INACTIVITY_INTERVAL_SECONDS),
                args=[app], id="check_inactivity", max_instances=1, coalesce=True,
            )
            scheduler.start()
            logger.info("Scheduler started")
        yield

        if scheduler.running:
            scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        await app.state.host.save(store)

    app = FastAPI(
        title="Token Timer",
        description="Token wallet, leisure timer and scheduled grants",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.clock = clock

    # ============ State ============

    @app.get("/api/state")
    async def get_state(request: Request):
        return _host(request).snapshot(_now(request))

    @app.get("/api/stats")
    async def get_stats(request: Request):
        return _host(request).stats(_now(request))

    @app.get("/api/recommendations")
    async def get_recommendations(request: Request):
        return [r.to_dict() for r in _host(request).get_recommendations(_now(request))]

    # ============ Wallet ============

    @app.post("/api/wallet/add")
    async def add_tokens(body: TokenAmountRequest, request: Request):
        """Credit tokens unconditionally."""
        host = _host(request)
        balance = host.add_tokens(body.tokens)
        await _persist(request)
        return {"balance": balance, "added": body.tokens}

    @app.post("/api/wallet/fill")
    async def fill_tokens(body: TokenAmountRequest, request: Request):
        """Credit tokens up to the wallet cap from settings."""
        host = _host(request)
        added = host.add_tokens_up_to_max(body.tokens)
        await _persist(request)
        return {"balance": host.wallet.balance, "added": added}

    # ============ Timer ============

    @app.post("/api/timer/start")
    async def start_timer(body: TokenAmountRequest, request: Request):
        host = _host(request)
        now = _now(request)
        result = host.start_timer(body.tokens, now)
        if not result.started:
            if result.reason == "insufficient_tokens":
                detail = f"Cannot redeem {body.tokens} tokens (balance {host.wallet.balance})"
            else:
                detail = "A timer session is already active"
            raise HTTPException(status_code=409, detail=detail)
        await _persist(request)
        return _transition_response(host, result.transition, now)

    @app.post("/api/timer/pause")
    async def pause_timer(request: Request):
        host = _host(request)
        now = _now(request)
        if host.timer.session is None:
            raise HTTPException(status_code=409, detail="No active timer session")
        transition = host.pause_timer(now)
        await _persist(request)
        return _transition_response(host, transition, now)

    @app.post("/api/timer/resume")
    async def resume_timer(request: Request):
        host = _host(request)
        now = _now(request)
        if host.timer.session is None:
            raise HTTPException(status_code=409, detail="No active timer session")
        transition = host.resume_timer(now)
        await _persist(request)
        return _transition_response(host, transition, now)

    @app.post("/api/timer/end-early")
    async def end_timer_early(request: Request):
        host = _host(request)
        now = _now(request)
        if host.timer.session is None:
            raise HTTPException(status_code=409, detail="No active timer session")
        transition = host.end_timer_early(now)
        await _persist(request)
        return _transition_response(host, transition, now)

    @app.post("/api/activity")
    async def record_activity(request: Request):
        _host(request).record_activity(_now(request))
        return {"ok": True}

    # ============ Scheduled grants ============

    @app.get("/api/grants")
    async def list_grants(request: Request):
        host = _host(request)
        now = _now(request)
        return [host.grant_view(g, now) for g in host.scheduler.grants]

    @app.post("/api/grants", status_code=201)
    async def create_grant(body: GrantCreateRequest, request: Request):
        host = _host(request)
        now = _now(request)
        grant = ScheduledGrant(
            title=body.title,
            token_count=body.token_count,
            scheduled_date=_localize(body.scheduled_date, request),
            recurrence=body.recurrence,
            notes=body.notes,
            is_active=body.is_active,
            created_date=now,
            max_wallet_tokens=body.max_wallet_tokens,
        )
        host.add_scheduled_grant(grant)
        await _persist(request)
        return host.grant_view(grant, now)

    @app.patch("/api/grants/{grant_id}")
    async def update_grant(grant_id: str, body: GrantUpdateRequest, request: Request):
        host = _host(request)
        try:
            grant = host.scheduler.get(grant_id)
        except GrantNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        changes = body.model_dump(exclude_unset=True)
        if changes.get("scheduled_date") is not None:
            changes["scheduled_date"] = _localize(changes["scheduled_date"], request)
        for key in ("title", "token_count", "scheduled_date", "recurrence", "is_active"):
            if key in changes and changes[key] is None:
                del changes[key]
        updated = replace(grant, **changes)
        host.update_scheduled_grant(updated)
        await _persist(request)
        return host.grant_view(updated, _now(request))

    @app.delete("/api/grants/{grant_id}")
    async def delete_grant(grant_id: str, request: Request):
        if not _host(request).remove_scheduled_grant(grant_id):
            raise HTTPException(status_code=404, detail=f"No scheduled grant with id {grant_id}")
        await _persist(request)
        return {"deleted": grant_id}

    @app.post("/api/grants/{grant_id}/toggle")
    async def toggle_grant(grant_id: str, request: Request):
        host = _host(request)
        grant = host.toggle_scheduled_grant(grant_id)
        if grant is None:
            raise HTTPException(status_code=404, detail=f"No scheduled grant with id {grant_id}")
        await _persist(request)
        return host.grant_view(grant, _now(request))

    # ============ Settings ============

    @app.get("/api/settings")
    async def get_settings(request: Request):
        return _host(request).settings.to_dict()

    @app.put("/api/settings")
    async def put_settings(body: SettingsUpdateRequest, request: Request):
        changes = body.model_dump(exclude_unset=True)
        for key in ("grace_period_minutes", "auto_pause_enabled", "auto_pause_minutes", "time_display_format"):
            if key in changes and changes[key] is None:
                del changes[key]
        settings = _host(request).update_settings(**changes)
        await _persist(request)
        return settings.to_dict()

    # ============ Notifications / logs ============

    @app.get("/api/notifications")
    async def get_notifications(request: Request):
        notifier = _host(request).notifier
        pending = getattr(notifier, "pending", [])
        return [r.to_dict() for r in pending]

    @app.get("/api/logs")
    async def get_logs(limit: int = 50):
        """Recent server logs from the circular buffer (max 100)."""
        logs = recent_logs(min(limit, 100))
        return {"logs": logs, "count": len(logs)}

    # ============ Debug ============

    @app.post("/api/debug/fast-forward")
    async def fast_forward(request: Request, body: Optional[FastForwardRequest] = None):
        host = _host(request)
        now = _now(request)
        if host.timer.session is None:
            raise HTTPException(status_code=409, detail="No active timer session")
        seconds = body.seconds if body is not None else FAST_FORWARD_SECONDS
        transition = host.fast_forward_timer(now, seconds)
        await _persist(request)
        return _transition_response(host, transition, now)

    @app.post("/api/debug/reset-wallet")
    async def reset_wallet(request: Request):
        _host(request).reset_wallet()
        await _persist(request)
        return {"balance": 0}

    @app.post("/api/debug/reset-stats")
    async def reset_stats(request: Request):
        _host(request).reset_stats()
        await _persist(request)
        return {"ok": True}

    return app


def _localize(moment: datetime, request: Request) -> datetime:
    """Naive datetimes from clients are wall-clock times in the configured zone."""
    tz = request.app.state.config.timezone
    if moment.tzinfo is None:
        return moment.replace(tzinfo=tz)
    return moment.astimezone(tz)


def run(host: str = "0.0.0.0", port: Optional[int] = None) -> None:
    import uvicorn

    config = load_config()
    uvicorn.run(create_app(config), host=host, port=port or config.port)


if __name__ == "__main__":
    run()
