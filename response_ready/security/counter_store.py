"""
counter_store.py — Expiring key -> count table
==============================================
Shared state behind the rate limiter and the lockout tracker. Callers
depend on the ``CounterStore`` protocol only, so the in-process table
can later be replaced by a shared store without touching them.

Expiry is lazy (an expired entry reads as absent) and the table is
swept opportunistically once every ``sweep_interval_seconds`` so keys
that are never read again do not accumulate.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional, Protocol

logger = logging.getLogger("response_ready.security.counter_store")


@dataclass
class CounterEntry:
    key: str
    count: int
    window_start: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class CounterStore(Protocol):
    def increment(self, key: str, ttl_seconds: float) -> int: ...

    def get(self, key: str) -> Optional[int]: ...

    def get_entry(self, key: str) -> Optional[CounterEntry]: ...

    def set_with_ttl(self, key: str, value: int, ttl_seconds: float) -> None: ...

    def delete(self, key: str) -> None: ...

    def sweep(self) -> int: ...


class InMemoryCounterStore:
    """Single-process ``CounterStore``. All operations hold one lock."""

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        sweep_interval_seconds: float = 300,
    ) -> None:
        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        self._entries: Dict[str, CounterEntry] = {}
        self._lock = Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # ------------------------------------------------------------------

    def _live(self, key: str, now: float) -> Optional[CounterEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(now):
            del self._entries[key]
            return None
        return entry

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep < self._sweep_interval:
            return
        self._sweep_locked(now)

    def _sweep_locked(self, now: float) -> int:
        self._last_sweep = now
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Swept %d expired counter(s)", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # CounterStore
    # ------------------------------------------------------------------

    def increment(self, key: str, ttl_seconds: float) -> int:
        """
        Add one to ``key``. An absent or expired key starts a new entry at
        1 that expires ``ttl_seconds`` from now; a live key keeps its expiry.
        """
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            entry = self._live(key, now)
            if entry is None:
                entry = CounterEntry(key=key, count=1, window_start=now, expires_at=now + ttl_seconds)
                self._entries[key] = entry
            else:
                entry.count += 1
            return entry.count

    def get(self, key: str) -> Optional[int]:
        entry = self.get_entry(key)
        return entry.count if entry else None

    def get_entry(self, key: str) -> Optional[CounterEntry]:
        """Snapshot of a live entry, or None when absent or expired."""
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            entry = self._live(key, now)
            if entry is None:
                return None
            return CounterEntry(entry.key, entry.count, entry.window_start, entry.expires_at)

    def set_with_ttl(self, key: str, value: int, ttl_seconds: float) -> None:
        if value < 0:
            raise ValueError("Counter values cannot be negative.")
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            self._entries[key] = CounterEntry(
                key=key, count=value, window_start=now, expires_at=now + ttl_seconds,
            )

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self) -> int:
        """Drop every expired entry now. Returns how many were removed."""
        with self._lock:
            return self._sweep_locked(self._clock())
