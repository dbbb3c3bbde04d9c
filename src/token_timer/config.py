"""Runtime configuration for the Token Timer server and CLI.

Values come from the environment, optionally seeded from a ``.env`` file in the
current working directory (TOKEN_TIMER_DB, TOKEN_TIMER_TZ, etc.).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

load_dotenv(Path.cwd() / ".env")

DEFAULT_DB_PATH = Path.home() / ".token-timer" / "state.db"
DEFAULT_CRASH_LOG_PATH = Path.home() / ".token-timer" / "crash.log"
DEFAULT_PORT = 7780
DEFAULT_TIMEZONE = "UTC"

# Python weekday numbers (Monday=0). Sunday-first weeks by default.
SUNDAY = 6
MONDAY = 0

TICK_INTERVAL_SECONDS = 1
GRANT_INTERVAL_SECONDS = 60
INACTIVITY_INTERVAL_SECONDS = 30


def resolve_timezone(tz_name: str | None) -> ZoneInfo:
    """Return a ZoneInfo for ``tz_name``, falling back to UTC."""
    if not tz_name:
        return ZoneInfo(DEFAULT_TIMEZONE)
    try:
        return ZoneInfo(tz_name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TIMEZONE)


def _parse_week_start(value: str | None) -> int:
    if value is None:
        return SUNDAY
    value = value.strip().lower()
    if value in ("monday", "mon", "0"):
        return MONDAY
    return SUNDAY


@dataclass(frozen=True)
class AppConfig:
    """Process-level settings (where state lives, which clock to use)."""

    db_path: Path
    port: int
    api_url: str
    timezone: ZoneInfo
    week_start: int
    crash_log_path: Path


def load_config() -> AppConfig:
    """Build an AppConfig from the current environment."""
    port = int(os.environ.get("TOKEN_TIMER_PORT", DEFAULT_PORT))
    return AppConfig(
        db_path=Path(os.environ.get("TOKEN_TIMER_DB", DEFAULT_DB_PATH)).expanduser(),
        port=port,
        api_url=os.environ.get("TOKEN_TIMER_URL", f"http://localhost:{port}"),
        timezone=resolve_timezone(os.environ.get("TOKEN_TIMER_TZ")),
        week_start=_parse_week_start(os.environ.get("TOKEN_TIMER_WEEK_START")),
        crash_log_path=Path(
            os.environ.get("TOKEN_TIMER_CRASH_LOG", DEFAULT_CRASH_LOG_PATH)
        ).expanduser(),
    )
