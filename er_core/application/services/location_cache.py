from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, slots=True)
class LocationPing:
    encounter_id: int
    patient_id: int
    latitude: float
    longitude: float
    recorded_at: datetime


@dataclass
class _CacheEntry:
    created_at: float
    value: LocationPing


class LocationCache:
    """Last known patient location per encounter, bounded and expiring."""

    def __init__(
        self,
        ttl_seconds: float = 600.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: dict[int, _CacheEntry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def put(self, ping: LocationPing) -> None:
        with self._lock:
            self._cache.pop(ping.encounter_id, None)
            self._cache[ping.encounter_id] = _CacheEntry(created_at=self._clock(), value=ping)
            self._prune_locked()

    def get(self, encounter_id: int) -> LocationPing | None:
        with self._lock:
            entry = self._cache.get(encounter_id)
            if entry is None:
                return None
            if self._clock() - entry.created_at > self.ttl_seconds:
                self._cache.pop(encounter_id, None)
                return None
            return entry.value

    def discard(self, encounter_id: int) -> None:
        with self._lock:
            self._cache.pop(encounter_id, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def prune(self) -> int:
        """Drop expired entries and trim to ``max_entries``; returns how many were removed."""
        with self._lock:
            return self._prune_locked()

    def _prune_locked(self) -> int:
        before = len(self._cache)
        now = self._clock()
        expired = [key for key, entry in self._cache.items() if now - entry.created_at > self.ttl_seconds]
        for key in expired:
            self._cache.pop(key, None)

        if len(self._cache) > self.max_entries:
            oldest_keys = sorted(self._cache.keys(), key=lambda key: self._cache[key].created_at)
            overflow = len(self._cache) - self.max_entries
            for key in oldest_keys[:overflow]:
                self._cache.pop(key, None)
        return before - len(self._cache)
