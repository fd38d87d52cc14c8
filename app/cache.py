"""In-memory cache primitives shared by the catalog services."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

Clock = Callable[[], float]
T = TypeVar("T")

_MISSING = object()


@dataclass(slots=True)
class CacheEntry:
    value: Any
    expires_at: float


class TTLCache:
    """Process-lifetime key/value store with per-entry expiry.

    Entries expire lazily on read. Once the store grows beyond
    ``sweep_threshold`` entries a write triggers a sweep that drops only
    entries that have already expired.
    """

    def __init__(
        self,
        *,
        default_ttl: float,
        sweep_threshold: int = 5_000,
        clock: Clock = time.monotonic,
    ) -> None:
        self._default_ttl = float(default_ttl)
        self._sweep_threshold = max(1, int(sweep_threshold))
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return self.get(str(key), _MISSING) is not _MISSING

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return default
            return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> Any:
        lifetime = self._default_ttl if ttl is None else float(ttl)
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + lifetime)
            if len(self._entries) > self._sweep_threshold:
                self._sweep_locked()
        return value

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def sweep(self) -> int:
        """Remove expired entries and return how many were dropped."""

        with self._lock:
            return self._sweep_locked()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _sweep_locked(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)


class LRUCache(Generic[T]):
    """Bounded least-recently-used cache whose entries also expire."""

    def __init__(self, *, max_size: int, ttl: float, clock: Clock = time.monotonic) -> None:
        self._max_size = max(1, int(max_size))
        self._ttl = float(ttl)
        self._clock = clock
        self._entries: OrderedDict[str, tuple[T, float]] = OrderedDict()
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> T | None:
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            value, stored_at = hit
            if self._clock() - stored_at > self._ttl:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def set(self, key: str, value: T) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock())
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_size:
                self._entries.popitem(last=False)
