"""In-memory nonce ledger for signed-request replay protection.

Each (agent public key, nonce) pair is consumable exactly once. Entries are
kept until they can no longer be replayed: a request is only fresh while its
timestamp is within the freshness window of server time, so an entry may be
dropped once both its first-use time and its request timestamp are older than
the window.

A periodic sweep (see sweeper.PeriodicSweeper) purges old entries, bounding
memory to requests seen within the window. Insertion is fail-closed: once
`max_items` live entries exist, new nonces are refused rather than evicting
unexpired ones.

Env:
- AGENTID_NONCE_WINDOW_SECONDS (default: 300)
- AGENTID_NONCE_SWEEP_SECONDS (default: 60; always shorter than the window)
- AGENTID_NONCE_MAX_ITEMS (default: 1000000)
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class NonceLedgerConfig:
    window_seconds: int = 300
    sweep_interval_seconds: int = 60
    max_items: int = 1_000_000

    @classmethod
    def from_env(cls) -> "NonceLedgerConfig":
        window = int(os.getenv("AGENTID_NONCE_WINDOW_SECONDS", str(cls.window_seconds)))
        sweep = int(os.getenv("AGENTID_NONCE_SWEEP_SECONDS", str(cls.sweep_interval_seconds)))
        max_items = int(os.getenv("AGENTID_NONCE_MAX_ITEMS", str(cls.max_items)))
        # Clamp to sensible bounds
        window = max(1, min(window, 24 * 3600))
        sweep = max(1, min(sweep, max(1, window - 1)))
        max_items = max(100, min(max_items, 50_000_000))
        return cls(window_seconds=window, sweep_interval_seconds=sweep, max_items=max_items)


@dataclass(frozen=True)
class _Entry:
    first_used_ms: int
    retain_until_ms: int


class NonceLedger:
    def __init__(self, config: Optional[NonceLedgerConfig] = None):
        self.config = config or NonceLedgerConfig.from_env()
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str], _Entry] = {}

    @property
    def window_ms(self) -> int:
        return int(self.config.window_seconds) * 1000

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def seen(self, public_key: str, nonce: str) -> bool:
        """Deny-fast check. Authoritative acceptance is check_and_record."""
        with self._lock:
            return (public_key, nonce) in self._entries

    def first_used_at(self, public_key: str, nonce: str) -> Optional[int]:
        with self._lock:
            entry = self._entries.get((public_key, nonce))
            return entry.first_used_ms if entry else None

    def check_and_record(self, public_key: str, nonce: str, request_timestamp_ms: Optional[int] = None) -> Tuple[bool, str]:
        """Atomically consume a (public_key, nonce) pair.

        Returns (ok, reason). Reasons: "OK", "NONCE_REUSED", "LEDGER_FULL".
        """
        now = _now_ms()
        ts = now if request_timestamp_ms is None else int(request_timestamp_ms)
        key = (public_key, nonce)
        with self._lock:
            if key in self._entries:
                return False, "NONCE_REUSED"
            if len(self._entries) >= int(self.config.max_items):
                return False, "LEDGER_FULL"
            self._entries[key] = _Entry(
                first_used_ms=now,
                retain_until_ms=max(now, ts) + self.window_ms,
            )
        return True, "OK"

    def sweep(self) -> int:
        """Delete entries that can no longer be replayed. Returns rows removed."""
        now = _now_ms()
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.retain_until_ms <= now]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
