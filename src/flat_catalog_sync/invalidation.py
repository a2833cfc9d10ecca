"""Downstream cache invalidation for entities removed from the catalog."""

import logging
from typing import Protocol

import redis.asyncio as redis

from .config import CacheConfig

logger = logging.getLogger(__name__)


def patterns_for_movie(title: str) -> list[str]:
    """Key patterns cached downstream for a movie."""
    prefixes = ("movie:", "metadata:movie:", "blurhash:movie:", "poster:movie:", "backdrop:movie:")
    return [f"{prefix}{title}*" for prefix in prefixes]


def patterns_for_show(title: str) -> list[str]:
    """Key patterns cached downstream for a show and its seasons and episodes."""
    prefixes = ("tv:", "metadata:tv:", "blurhash:tv:", "poster:tv:", "backdrop:tv:", "season:", "episode:")
    return [f"{prefix}{title}*" for prefix in prefixes]


class CacheInvalidator(Protocol):
    """Best-effort sink for removed entities."""

    async def invalidate(self, patterns: list[str]) -> int: ...

    async def close(self) -> None: ...


class NullCacheInvalidator:
    """Used when no downstream cache is configured."""

    async def invalidate(self, patterns: list[str]) -> int:
        logger.debug("No cache configured, skipping invalidation of %s", patterns)
        return 0

    async def close(self) -> None:
        return None


class RedisCacheInvalidator:
    """Deletes every key matching the patterns (SCAN MATCH, then DEL)."""

    def __init__(self, redis_url: str, scan_count: int = 500, client: redis.Redis | None = None):
        self.scan_count = scan_count
        self._client = client or redis.Redis.from_url(redis_url, socket_timeout=10.0, socket_connect_timeout=5.0)

    async def invalidate(self, patterns: list[str]) -> int:
        deleted = 0
        for pattern in patterns:
            keys = [key async for key in self._client.scan_iter(match=pattern, count=self.scan_count)]
            if keys:
                deleted += await self._client.delete(*keys)
        if deleted:
            logger.debug("Invalidated %d cache keys for %s", deleted, patterns)
        return deleted

    async def close(self) -> None:
        await self._client.aclose()


def create_invalidator(config: CacheConfig) -> CacheInvalidator:
    """Redis invalidator when a URL is configured, otherwise a no-op."""
    if config.redis_url:
        logger.info("Cache invalidation enabled")
        return RedisCacheInvalidator(config.redis_url, config.scan_count)
    return NullCacheInvalidator()
