"""
Redis warm tier.

Values are raw bytes (the vector codec owns serialization), so the client is
created with decode_responses=False. Every RedisError is re-raised as
CacheUnavailable; the vector cache turns that into a miss.
"""

from typing import Dict, List, Optional, Sequence
import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from parley.infrastructure.errors import CacheUnavailable

logger = structlog.get_logger(__name__)


class RedisCacheBackend:
    """Async Redis implementation of the cache backend contract"""

    def __init__(self, url: str = "redis://localhost:6379/0", client: Optional[Redis] = None):
        self.url = url
        self._client = client

    def _get_client(self) -> Redis:
        if self._client is None:
            self._client = Redis.from_url(self.url, decode_responses=False)
        return self._client

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await self._get_client().get(key)
        except RedisError as e:
            logger.error("redis_get_failed", key=key, error=str(e))
            raise CacheUnavailable(f"Failed to get key {key}: {e}", key=key) from e

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        try:
            await self._get_client().set(key, value, ex=ttl)
        except RedisError as e:
            logger.error("redis_set_failed", key=key, error=str(e))
            raise CacheUnavailable(f"Failed to set key {key}: {e}", key=key) from e

    async def mget(self, keys: Sequence[str]) -> List[Optional[bytes]]:
        if not keys:
            return []
        try:
            return list(await self._get_client().mget(list(keys)))
        except RedisError as e:
            logger.error("redis_mget_failed", count=len(keys), error=str(e))
            raise CacheUnavailable(f"Failed to mget {len(keys)} keys: {e}") from e

    async def mset(self, items: Dict[str, bytes], ttl: Optional[int] = None) -> None:
        if not items:
            return
        try:
            # MSET has no expiry option; pipeline SET EX per key instead
            async with self._get_client().pipeline(transaction=False) as pipe:
                for key, value in items.items():
                    pipe.set(key, value, ex=ttl)
                await pipe.execute()
        except RedisError as e:
            logger.error("redis_mset_failed", count=len(items), error=str(e))
            raise CacheUnavailable(f"Failed to mset {len(items)} keys: {e}") from e

    async def expire(self, key: str, ttl: int) -> bool:
        try:
            return bool(await self._get_client().expire(key, ttl))
        except RedisError as e:
            logger.error("redis_expire_failed", key=key, error=str(e))
            raise CacheUnavailable(f"Failed to expire key {key}: {e}", key=key) from e

    async def delete(self, keys: Sequence[str]) -> int:
        if not keys:
            return 0
        try:
            return int(await self._get_client().delete(*keys))
        except RedisError as e:
            logger.error("redis_delete_failed", count=len(keys), error=str(e))
            raise CacheUnavailable(f"Failed to delete {len(keys)} keys: {e}") from e

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key under a prefix (SCAN, not KEYS)"""
        try:
            client = self._get_client()
            deleted = 0
            batch = []
            async for key in client.scan_iter(match=f"{prefix}*", count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += int(await client.delete(*batch))
                    batch = []
            if batch:
                deleted += int(await client.delete(*batch))
            return deleted
        except RedisError as e:
            logger.error("redis_delete_prefix_failed", prefix=prefix, error=str(e))
            raise CacheUnavailable(f"Failed to delete prefix {prefix}: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self._get_client().ping())
        except RedisError:
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
