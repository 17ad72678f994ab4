from typing import Dict, List, Optional, Sequence

from parley.domain.context.memory.cache_memory_store import CacheMemoryStore


class InMemoryCacheBackend:
    """Process-local warm tier for single-instance deployments and tests"""

    def __init__(self, store: Optional[CacheMemoryStore] = None):
        self.store = store or CacheMemoryStore(default_ttl=60 * 60 * 24 * 30)

    async def get(self, key: str) -> Optional[bytes]:
        return await self.store.get(key)

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        await self.store.set(key, value, ttl=ttl)

    async def mget(self, keys: Sequence[str]) -> List[Optional[bytes]]:
        return [await self.store.get(key) for key in keys]

    async def mset(self, items: Dict[str, bytes], ttl: Optional[int] = None) -> None:
        for key, value in items.items():
            await self.store.set(key, value, ttl=ttl)

    async def expire(self, key: str, ttl: int) -> bool:
        return await self.store.expire(key, ttl)

    async def delete(self, keys: Sequence[str]) -> int:
        deleted = 0
        for key in keys:
            if await self.store.delete(key):
                deleted += 1
        return deleted

    async def delete_prefix(self, prefix: str) -> int:
        keys = [key for key in list(self.store.cache.keys()) if key.startswith(prefix)]
        return await self.delete(keys)
