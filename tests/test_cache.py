"""Tests for the TTL cache backends."""

from __future__ import annotations

import pytest

from app.cache import MemoryTTLCache, RedisTTLCache, create_cache


@pytest.mark.anyio("asyncio")
async def test_memory_cache_returns_copies() -> None:
    cache = MemoryTTLCache()
    value = {"results": [1, 2]}
    await cache.set("key", value, 60)
    value["results"].append(3)

    assert await cache.get("key") == {"results": [1, 2]}


@pytest.mark.anyio("asyncio")
async def test_memory_cache_expires_entries(monkeypatch: pytest.MonkeyPatch) -> None:
    now = [1_000.0]
    monkeypatch.setattr("app.cache.time.monotonic", lambda: now[0])
    cache = MemoryTTLCache()
    await cache.set("key", "value", 10)

    now[0] += 9
    assert await cache.get("key") == "value"
    now[0] += 1
    assert await cache.get("key") is None


@pytest.mark.anyio("asyncio")
async def test_memory_cache_evicts_oldest_when_full() -> None:
    cache = MemoryTTLCache(max_entries=2)
    await cache.set("a", 1, 60)
    await cache.set("b", 2, 60)
    await cache.set("c", 3, 60)

    assert await cache.get("a") is None
    assert await cache.get("b") == 2
    assert await cache.get("c") == 3


def test_create_cache_selects_backend() -> None:
    assert isinstance(create_cache("memory://"), MemoryTTLCache)
    assert isinstance(create_cache("redis://localhost:6379/0"), RedisTTLCache)
    with pytest.raises(ValueError):
        create_cache("memcached://localhost")
