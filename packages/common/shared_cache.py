"""
Shared (cross-process) cache tier

PatternCache talks to the shared tier through the SharedCache protocol;
RedisSharedCache is the production implementation on redis.asyncio.
"""
from typing import Optional, Protocol

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()

_GLOB_SPECIALS = "\\*?[]"


class SharedCache(Protocol):
    """Byte-oriented key/value store with TTLs and prefix deletes"""

    async def get(self, key: str) -> Optional[bytes]:
        ...

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        ...

    async def delete_matching(self, prefix: str) -> int:
        ...

    async def close(self) -> None:
        ...


def _escape_glob(value: str) -> str:
    """Escape Redis MATCH glob characters"""
    return "".join(f"\\{ch}" if ch in _GLOB_SPECIALS else ch for ch in value)


class RedisSharedCache:
    """Redis-backed shared cache tier"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        socket_timeout: float = 0.25,
        client: Optional[redis.Redis] = None,
    ):
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = redis.from_url(
                redis_url,
                decode_responses=False,
                socket_connect_timeout=socket_timeout,
                socket_timeout=socket_timeout,
                max_connections=20,
            )
        self._client = client
        self._closed = False

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def get(self, key: str) -> Optional[bytes]:
        return await self._client.get(key)

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        await self._client.setex(key, ttl_seconds, value)

    async def delete_matching(self, prefix: str) -> int:
        """Delete every key under prefix using SCAN (never KEYS)"""
        keys = [
            key
            async for key in self._client.scan_iter(match=f"{_escape_glob(prefix)}*", count=500)
        ]
        if not keys:
            return 0
        deleted = await self._client.delete(*keys)
        logger.debug("shared_cache_prefix_deleted", prefix=prefix, keys=len(keys))
        return deleted

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._client.aclose()
