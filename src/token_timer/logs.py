"""Logging setup: named logger, in-memory log buffer, and crash logging."""

from __future__ import annotations

import logging
import sys
import traceback
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Deque

logger = logging.getLogger("token_timer")
logger.setLevel(logging.INFO)

# Circular buffer of recent log entries (max 100), served at /api/logs
log_buffer: Deque[dict] = deque(maxlen=100)


class LogBufferHandler(logging.Handler):
    """Logging handler that captures records into the circular buffer."""

    def emit(self, record: logging.LogRecord):
        try:
            log_entry = {
                "timestamp": datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
                "level": record.levelname,
                "logger": record.name,
                "message": self.format(record),
            }
            log_buffer.append(log_entry)
        except Exception:
            self.handleError(record)


buffer_handler = LogBufferHandler()
buffer_handler.setLevel(logging.DEBUG)
buffer_handler.setFormatter(logging.Formatter("%(message)s"))
logger.addHandler(buffer_handler)


def recent_logs(limit: int = 50) -> list[dict]:
    entries = list(log_buffer)
    return entries[-limit:] if limit > 0 else []


def log_crash(crash_log_path: Path, exc_type, exc_value, exc_tb, context: str = "unhandled"):
    """Append crash info to the crash log for post-mortem debugging."""
    try:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        tb_str = "".join(traceback.format_exception(exc_type, exc_value, exc_tb))
        crash_log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(crash_log_path, "a") as f:
            f.write(f"\n{'=' * 60}\n")
            f.write(f"CRASH [{context}] at {timestamp}\n")
            f.write(f"{'=' * 60}\n")
            f.write(tb_str)
            f.write("\n")
        print(f"CRASH [{context}]: {exc_type.__name__}: {exc_value}", file=sys.stderr)
    except OSError as e:
        logger.error(f"Could not write crash log {crash_log_path}: {e}")


def install_crash_handlers(crash_log_path: Path, loop=None) -> None:
    """Route uncaught sync (and optionally asyncio) exceptions to the crash log."""

    def _sync_handler(exc_type, exc_value, exc_tb):
        log_crash(crash_log_path, exc_type, exc_value, exc_tb, context="sync")
        sys.__excepthook__(exc_type, exc_value, exc_tb)

    sys.excepthook = _sync_handler

    if loop is None:
        return

    def _asyncio_handler(loop, context):
        exception = context.get("exception")
        if exception:
            log_crash(crash_log_path, type(exception), exception, exception.__traceback__, context="asyncio")
        else:
            logger.error(f"Asyncio error: {context.get('message')}")
        loop.default_exception_handler(context)

    loop.set_exception_handler(_asyncio_handler)
