from typing import Dict, Any, NamedTuple, Optional, Callable
from collections import OrderedDict
import asyncio
import time


class _Entry(NamedTuple):
    value: Any
    expires_at: float


class CacheMemoryStore:
    """
    Async LRU map with per-key expiry.

    Backs the hot embedding tier, the context result cache and the response
    cache. ``clock`` returns monotonic seconds and is injectable for tests.
    Expired keys are dropped lazily on read or by ``clear_expired``.
    """

    def __init__(
        self,
        default_ttl: float = 3600,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.cache: "OrderedDict[str, _Entry]" = OrderedDict()
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    def _live(self, entry: _Entry, now: float) -> bool:
        return now < entry.expires_at

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        lifetime = self.default_ttl if ttl is None else ttl

        async with self._lock:
            self.cache[key] = _Entry(value, self._clock() + lifetime)
            self.cache.move_to_end(key)

            overflow = len(self.cache) - self.max_entries if self.max_entries is not None else 0
            for _ in range(max(overflow, 0)):
                self.cache.popitem(last=False)

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self.cache.get(key)
            if entry is not None and not self._live(entry, self._clock()):
                del self.cache[key]
                entry = None

            if entry is None:
                self.misses += 1
                return None

            self.cache.move_to_end(key)
            self.hits += 1
            return entry.value

    async def expire(self, key: str, ttl: float) -> bool:
        """Give an existing key a fresh lifetime; False if it is absent"""

        async with self._lock:
            entry = self.cache.get(key)
            if entry is None:
                return False
            self.cache[key] = entry._replace(expires_at=self._clock() + ttl)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self.cache.pop(key, None) is not None

    async def clear(self) -> None:
        async with self._lock:
            self.cache.clear()
            self.hits = self.misses = 0

    async def clear_expired(self) -> int:
        """Sweep dead entries, returning how many were removed"""

        async with self._lock:
            now = self._clock()
            dead = [key for key, entry in self.cache.items() if not self._live(entry, now)]
            for key in dead:
                del self.cache[key]
            return len(dead)

    async def get_stats(self) -> Dict[str, Any]:
        async with self._lock:
            now = self._clock()
            live = sum(1 for entry in self.cache.values() if self._live(entry, now))
            lookups = self.hits + self.misses

            return {
                "total_keys": len(self.cache),
                "active_keys": live,
                "expired_keys": len(self.cache) - live,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": self.hits / lookups if lookups else 0.0,
            }
