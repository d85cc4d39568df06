"""Fallback cache for the resilient data service.

Entries remember when and from where they were fetched.  The cache never
expires anything on its own; readers ask for an entry no older than a
given staleness window.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .models import DataSource


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    timestamp: float
    source: DataSource

    def age(self, now: float) -> float:
        return now - self.timestamp


class MarketCache:
    """In-process key -> :class:`CacheEntry` map.

    ``clock`` returns wall-clock seconds and can be replaced in tests.
    Writers always replace the whole entry so concurrent tasks never see a
    half-written value; last write wins.
    """

    def __init__(self, staleness_secs: float = 300.0, clock: Callable[[], float] = time.time):
        self.staleness_secs = staleness_secs
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    @staticmethod
    def key(operation: str, *args: Any) -> str:
        return "-".join([operation, *(str(a) for a in args)])

    def now(self) -> float:
        return self._clock()

    def set(self, key: str, value: Any, source: DataSource) -> None:
        self._entries[key] = CacheEntry(value, self._clock(), source)

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def get_fresh(self, key: str, max_age: Optional[float] = None) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        window = self.staleness_secs if max_age is None else max_age
        if entry.age(self._clock()) < window:
            return entry
        return None

    def evict_stale(self) -> int:
        now = self._clock()
        stale = [k for k, e in self._entries.items() if e.age(now) >= self.staleness_secs]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
