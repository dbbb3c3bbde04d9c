"""Wallet ledger: the token balance and its whole-token credits and debits."""

from __future__ import annotations

import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)

MINUTES_PER_TOKEN = 15


class WalletLedger:
    """Owns the token balance. The balance never goes negative.

    Every mutation happens under one lock so ``redeem_tokens`` is a single
    check-then-debit step even if a host calls in from several threads.
    """

    def __init__(self, total_tokens: int = 0):
        if total_tokens < 0:
            raise ValueError(f"Wallet balance cannot be negative: {total_tokens}")
        self._total_tokens = int(total_tokens)
        self._lock = threading.Lock()

    @property
    def balance(self) -> int:
        return self._total_tokens

    def add_tokens(self, count: int) -> int:
        """Credit ``count`` tokens unconditionally. Returns the new balance."""
        if count <= 0:
            raise ValueError(f"Token count must be positive: {count}")
        with self._lock:
            self._total_tokens += count
            balance = self._total_tokens
        logger.info(f"Wallet: +{count} tokens (balance {balance})")
        return balance

    def add_tokens_up_to_max(self, count: int, max_tokens: Optional[int]) -> int:
        """Credit up to ``max_tokens`` total. Returns how many were actually added.

        ``max_tokens`` of None or <= 0 means no limit.
        """
        if count <= 0:
            return 0
        with self._lock:
            if max_tokens is None or max_tokens <= 0:
                added = count
            else:
                available_space = max(0, max_tokens - self._total_tokens)
                added = min(count, available_space)
            self._total_tokens += added
            balance = self._total_tokens
        if added < count:
            logger.info(f"Wallet: +{added}/{count} tokens, capped at {max_tokens} (balance {balance})")
        else:
            logger.info(f"Wallet: +{added} tokens (balance {balance})")
        return added

    def can_redeem(self, count: int) -> bool:
        return self._total_tokens >= count

    def redeem_tokens(self, count: int) -> bool:
        """Debit ``count`` tokens if the balance covers it. No change otherwise."""
        if count <= 0:
            return False
        with self._lock:
            if self._total_tokens < count:
                return False
            self._total_tokens -= count
            balance = self._total_tokens
        logger.info(f"Wallet: -{count} tokens (balance {balance})")
        return True

    def reset(self) -> None:
        with self._lock:
            self._total_tokens = 0
        logger.warning("Wallet: reset to 0")

    # ---- Serialization ----

    def to_dict(self) -> dict:
        return {"total_tokens": self._total_tokens}

    @classmethod
    def from_dict(cls, data: dict) -> "WalletLedger":
        return cls(total_tokens=max(0, int(data.get("total_tokens", 0))))
