"""
Two-tier embedding cache.

Hot tier: bounded in-process LRU with a TTL. Warm tier: an external binary
key-value store (Redis in production) holding compressed payloads. Reads
check hot first and promote warm hits; writes go to both tiers.

Wire format of a warm-tier value:

    byte 0      compression flag (0 = raw, 1 = zlib)
    bytes 1..   float32 little-endian vector, zlib-compressed when flag is 1

Payloads over `compression_threshold` bytes are compressed. Any cache error
is logged and counted and reads as a miss; the cache never raises into the
caller because the cached value (an embedding) can always be recomputed.
"""

from typing import Dict, Any, List, Optional, Sequence, Tuple
import struct
import zlib
import structlog

from parley.infrastructure.cache.base import CacheBackend
from parley.infrastructure.config.settings import CacheConfig
from parley.infrastructure.observability.logging import engine_logger, metrics
from .memory.cache_memory_store import CacheMemoryStore

logger = structlog.get_logger(__name__)

FLAG_RAW = 0
FLAG_COMPRESSED = 1


class VectorCodecError(ValueError):
    """Stored payload could not be decoded"""


def encode_vector(vector: Sequence[float], compression_threshold: int = 1024) -> Tuple[bytes, float]:
    """
    Pack a vector as float32 with a one-byte compression flag.

    Returns the payload and the compressed/original size ratio (1.0 when
    the payload was stored raw).
    """

    raw = struct.pack(f"<{len(vector)}f", *vector)

    if len(raw) > compression_threshold:
        compressed = zlib.compress(raw)
        return bytes([FLAG_COMPRESSED]) + compressed, len(compressed) / len(raw)

    return bytes([FLAG_RAW]) + raw, 1.0


def decode_vector(payload: bytes) -> List[float]:
    """Reverse encode_vector"""

    if not payload:
        raise VectorCodecError("empty payload")

    flag = payload[0]
    body = payload[1:]

    if flag == FLAG_COMPRESSED:
        try:
            body = zlib.decompress(body)
        except zlib.error as e:
            raise VectorCodecError(f"corrupt compressed payload: {e}") from e
    elif flag != FLAG_RAW:
        raise VectorCodecError(f"unknown compression flag {flag}")

    if len(body) % 4:
        raise VectorCodecError(f"payload length {len(body)} is not a multiple of 4")

    return list(struct.unpack(f"<{len(body) // 4}f", body))


class VectorCache:
    """Hot in-process LRU in front of a compressed external tier"""

    def __init__(
        self,
        backend: CacheBackend,
        config: Optional[CacheConfig] = None,
        hot: Optional[CacheMemoryStore] = None
    ):
        self.config = config or CacheConfig()
        self.backend = backend
        self.hot = hot or CacheMemoryStore(
            default_ttl=self.config.hot_ttl_seconds,
            max_entries=self.config.hot_max_size
        )
        self.stats: Dict[str, Any] = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "errors": 0,
            "compression_ratio": 1.0,
        }

    def _key(self, key: str) -> str:
        return f"{self.config.key_prefix}{key}"

    def _encode(self, vector: Sequence[float]) -> bytes:
        payload, ratio = encode_vector(vector, self.config.compression_threshold)
        if ratio < 1.0:
            # Moving average over compressed writes only
            self.stats["compression_ratio"] = self.stats["compression_ratio"] * 0.9 + ratio * 0.1
        return payload

    def _record_error(self, action: str, error: Exception, key: Optional[str] = None):
        self.stats["errors"] += 1
        metrics.increment_counter("vector_cache.errors")
        logger.warning("vector_cache_error", action=action, key=key, error=str(error))

    def _decode(self, key: str, payload: Optional[bytes]) -> Optional[List[float]]:
        if payload is None:
            return None
        try:
            return decode_vector(payload)
        except VectorCodecError as e:
            self._record_error("decode", e, key)
            return None

    async def get(self, key: str) -> Optional[List[float]]:
        """Return the cached vector or None"""

        vector = await self.hot.get(key)
        if vector is not None:
            self.stats["hits"] += 1
            engine_logger.log_cache_event("hot", "hit", key)
            return vector

        try:
            payload = await self.backend.get(self._key(key))
        except Exception as e:
            self._record_error("get", e, key)
            self.stats["misses"] += 1
            return None

        vector = self._decode(key, payload)
        if vector is None:
            self.stats["misses"] += 1
            engine_logger.log_cache_event("warm", "miss", key)
            return None

        self.stats["hits"] += 1
        engine_logger.log_cache_event("warm", "hit", key)
        await self.hot.set(key, vector)
        return vector

    async def set(self, key: str, vector: Sequence[float]) -> None:
        """Store a vector in both tiers"""

        # Hot tier keeps the float32-rounded value so both tiers agree
        payload = self._encode(vector)
        await self.hot.set(key, decode_vector(payload))

        try:
            await self.backend.set(self._key(key), payload, ttl=self.config.warm_ttl_seconds)
            self.stats["sets"] += 1
        except Exception as e:
            self._record_error("set", e, key)

    async def mget(self, keys: Sequence[str]) -> List[Optional[List[float]]]:
        """Batched get; result order matches `keys`"""

        results: List[Optional[List[float]]] = []
        missing: List[int] = []

        for index, key in enumerate(keys):
            vector = await self.hot.get(key)
            results.append(vector)
            if vector is None:
                missing.append(index)

        self.stats["hits"] += len(keys) - len(missing)
        if not missing:
            return results

        try:
            payloads = await self.backend.mget([self._key(keys[i]) for i in missing])
        except Exception as e:
            self._record_error("mget", e)
            self.stats["misses"] += len(missing)
            return results

        for index, payload in zip(missing, payloads):
            vector = self._decode(keys[index], payload)
            if vector is None:
                self.stats["misses"] += 1
                continue
            self.stats["hits"] += 1
            results[index] = vector
            await self.hot.set(keys[index], vector)

        return results

    async def mset(self, entries: Sequence[Tuple[str, Sequence[float]]]) -> None:
        """Batched set"""

        if not entries:
            return

        payloads: Dict[str, bytes] = {}
        for key, vector in entries:
            payload = self._encode(vector)
            await self.hot.set(key, decode_vector(payload))
            payloads[self._key(key)] = payload

        try:
            await self.backend.mset(payloads, ttl=self.config.warm_ttl_seconds)
            self.stats["sets"] += len(payloads)
        except Exception as e:
            self._record_error("mset", e)

    async def delete(self, keys: Sequence[str]) -> None:
        """Remove keys from both tiers"""

        for key in keys:
            await self.hot.delete(key)

        try:
            await self.backend.delete([self._key(key) for key in keys])
        except Exception as e:
            self._record_error("delete", e)

    async def clear(self) -> None:
        """Empty the hot tier and every warm key under the prefix"""

        await self.hot.clear()

        try:
            await self.backend.delete_prefix(self.config.key_prefix)
        except Exception as e:
            self._record_error("clear", e)

    def get_stats(self) -> Dict[str, Any]:
        """Hit/miss counters plus hit rate (percent)"""

        lookups = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "hit_rate": self.stats["hits"] / lookups * 100 if lookups else 0.0,
            "hot_entries": len(self.hot.cache),
        }

    def reset_stats(self) -> None:
        self.stats.update(hits=0, misses=0, sets=0, errors=0, compression_ratio=1.0)
