"""Read-through TTL cache used in front of the role store and the credential provider.

Entries expire ``ttl_seconds`` after they were stored; the least recently
read entry is dropped once ``maxsize`` is exceeded. ``None`` is treated as
"nothing to cache" so a missing actor or vendor is looked up again next time.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Hashable

Loader = Callable[[], Any]


@dataclass
class _Slot:
    value: Any
    expires_at: float


class TTLCache:
    """LRU-bounded TTL cache. A TTL of zero disables it entirely."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        ttl_seconds: float = 30,
        maxsize: int = 128,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            enabled: Master switch; also off when ``ttl_seconds`` or ``maxsize`` is not positive
            ttl_seconds: Lifetime of an entry
            maxsize: Entry bound before the least recently used one is evicted
            clock: Monotonic seconds, injectable for tests
        """
        self.enabled = bool(enabled) and ttl_seconds > 0 and maxsize > 0
        self.ttl = float(ttl_seconds) if self.enabled else 0.0
        self.maxsize = int(maxsize) if self.enabled else 0
        self._clock = clock
        self._slots: OrderedDict[Hashable, _Slot] = OrderedDict()
        self._guard = threading.Lock()
        self._counters = {"hits": 0, "misses": 0, "evictions": 0}

    def __len__(self) -> int:
        with self._guard:
            return len(self._slots)

    def _lookup(self, key: Hashable) -> tuple[bool, Any]:
        with self._guard:
            slot = self._slots.get(key)
            if slot is not None and slot.expires_at > self._clock():
                self._slots.move_to_end(key)
                self._counters["hits"] += 1
                return True, slot.value
            if slot is not None:
                del self._slots[key]
            self._counters["misses"] += 1
            return False, None

    def get(self, key: Hashable, loader: Loader | None = None) -> Any:
        """Cached value for *key*; on a miss, call *loader* (if given) and store its result."""
        if self.enabled:
            found, value = self._lookup(key)
            if found:
                return value
        elif loader is not None:
            with self._guard:
                self._counters["misses"] += 1

        if loader is None:
            return None
        value = loader()
        self.set(key, value)
        return value

    def set(self, key: Hashable, value: Any) -> None:
        if not self.enabled:
            return
        with self._guard:
            if value is None:
                self._slots.pop(key, None)
                return
            self._slots[key] = _Slot(value, self._clock() + self.ttl)
            self._slots.move_to_end(key)
            while len(self._slots) > self.maxsize:
                self._slots.popitem(last=False)
                self._counters["evictions"] += 1

    def invalidate(self, key: Hashable) -> None:
        with self._guard:
            self._slots.pop(key, None)

    def clear(self) -> None:
        with self._guard:
            self._slots.clear()

    def get_stats(self) -> dict[str, Any]:
        """Size, configuration and hit/miss/eviction counters (``hit_rate`` in percent)."""
        with self._guard:
            counters = dict(self._counters)
            size = len(self._slots)
        lookups = counters["hits"] + counters["misses"]
        return {
            "enabled": self.enabled,
            "size": size,
            "maxsize": self.maxsize,
            "ttl_seconds": self.ttl,
            **counters,
            "hit_rate": round(counters["hits"] / lookups * 100, 2) if lookups else 0.0,
        }
