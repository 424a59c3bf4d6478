"""Key-value response cache with per-entry expiry."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol

from redis import asyncio as redis_asyncio
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class TTLCache(Protocol):
    """Minimal interface the catalog client relies on."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def close(self) -> None: ...


class MemoryTTLCache:
    """Process-local cache storing JSON copies of values until they expire."""

    def __init__(self, *, max_entries: int = 5_000) -> None:
        self._entries: dict[str, tuple[float, str]] = {}
        self._max_entries = max_entries

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if time.monotonic() >= expires_at:
            self._entries.pop(key, None)
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        if len(self._entries) >= self._max_entries:
            self._evict()
        self._entries[key] = (time.monotonic() + ttl_seconds, json.dumps(value))

    async def close(self) -> None:
        self._entries.clear()

    def _evict(self) -> None:
        now = time.monotonic()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            self._entries.pop(key, None)
        if len(self._entries) >= self._max_entries:
            # Dicts keep insertion order; drop the oldest entry.
            oldest = next(iter(self._entries))
            self._entries.pop(oldest, None)


class RedisTTLCache:
    """Redis-backed cache; connection problems degrade to cache misses."""

    def __init__(self, url: str) -> None:
        self._client = redis_asyncio.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._client.get(key)
        except RedisError as exc:
            logger.warning("Redis read for %s failed: %s", key, exc)
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await self._client.setex(key, ttl_seconds, json.dumps(value))
        except RedisError as exc:
            logger.warning("Redis write for %s failed: %s", key, exc)

    async def close(self) -> None:
        await self._client.aclose()


def create_cache(url: str) -> TTLCache:
    """Build the cache backend named by ``CACHE_URL``."""

    if url.startswith("memory://"):
        return MemoryTTLCache()
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisTTLCache(url)
    raise ValueError(f"Unsupported cache URL: {url}")
