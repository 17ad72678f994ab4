from typing import Dict, List, Optional, Protocol, Sequence


class CacheBackend(Protocol):
    """Binary key-value store behind the warm cache tier"""

    async def get(self, key: str) -> Optional[bytes]:
        ...

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        ...

    async def mget(self, keys: Sequence[str]) -> List[Optional[bytes]]:
        ...

    async def mset(self, items: Dict[str, bytes], ttl: Optional[int] = None) -> None:
        ...

    async def expire(self, key: str, ttl: int) -> bool:
        ...

    async def delete(self, keys: Sequence[str]) -> int:
        ...

    async def delete_prefix(self, prefix: str) -> int:
        ...
