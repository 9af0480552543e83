"""Tests for the shared cache store and CacheManager."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

from gateway.services.cache import CacheManager, MemoryBackend, RedisBackend


class FailingBackend(MemoryBackend):
    async def get(self, key):
        raise ConnectionError("store down")

    async def set(self, key, value, ttl):
        raise ConnectionError("store down")

    async def delete_prefix(self, prefix):
        raise ConnectionError("store down")


class TestMemoryBackend:
    async def test_set_get_copies(self):
        backend = MemoryBackend()
        value = {"items": [1, 2]}
        await backend.set("k", value, 10)

        loaded = await backend.get("k")
        loaded["items"].append(3)

        assert await backend.get("k") == {"items": [1, 2]}

    async def test_expiry(self):
        backend = MemoryBackend()
        await backend.set("k", "v", timedelta(milliseconds=50))

        await asyncio.sleep(0.1)

        assert await backend.get("k") is None

    async def test_set_if_absent(self):
        backend = MemoryBackend()

        assert await backend.set_if_absent("lock", "a", 10) is True
        assert await backend.set_if_absent("lock", "b", 10) is False
        assert await backend.get("lock") == "a"

    async def test_set_if_absent_after_expiry(self):
        backend = MemoryBackend()
        await backend.set_if_absent("lock", "a", 0.05)

        await asyncio.sleep(0.1)

        assert await backend.set_if_absent("lock", "b", 10) is True

    async def test_delete_if_equals(self):
        backend = MemoryBackend()
        await backend.set("lock", "owner-1", 10)

        assert await backend.delete_if_equals("lock", "owner-2") is False
        assert await backend.get("lock") == "owner-1"
        assert await backend.delete_if_equals("lock", "owner-1") is True
        assert await backend.get("lock") is None

    async def test_delete_prefix(self):
        backend = MemoryBackend()
        await backend.set("partners:list:1", [], 10)
        await backend.set("partners:list:2", [], 10)
        await backend.set("products:list:1", [], 10)

        assert await backend.delete_prefix("partners:") == 2
        assert await backend.get("products:list:1") == []

    async def test_evicts_oldest_when_full(self):
        backend = MemoryBackend(max_size=2)
        await backend.set("a", 1, 10)
        await backend.set("b", 2, 10)
        await backend.set("c", 3, 10)

        assert len(backend) == 2
        assert await backend.get("a") is None
        assert await backend.get("c") == 3


class TestRedisBackend:
    async def test_prefixed_set_if_absent(self):
        client = AsyncMock()
        client.set.return_value = True
        backend = RedisBackend("redis://unused", prefix="gw:", client=client)

        assert await backend.set_if_absent("lock", "owner", 1.5) is True
        client.set.assert_awaited_once_with("gw:lock", '"owner"', px=1500, nx=True)

    async def test_set_if_absent_taken(self):
        client = AsyncMock()
        client.set.return_value = None
        backend = RedisBackend("redis://unused", client=client)

        assert await backend.set_if_absent("lock", "owner", 30) is False

    async def test_delete_if_equals_uses_script(self):
        client = AsyncMock()
        client.eval.return_value = 1
        backend = RedisBackend("redis://unused", prefix="gw:", client=client)

        assert await backend.delete_if_equals("lock", "owner") is True
        args = client.eval.await_args.args
        assert args[1:] == (1, "gw:lock", '"owner"')

    async def test_get_decodes_json(self):
        client = AsyncMock()
        client.get.return_value = '{"token": "abc"}'
        backend = RedisBackend("redis://unused", client=client)

        assert await backend.get("sankhya:token") == {"token": "abc"}


class TestCacheManager:
    async def test_hit_and_miss_stats(self):
        cache = CacheManager(MemoryBackend())

        assert await cache.get("k") is None
        await cache.set("k", {"a": 1}, 10)
        assert await cache.get("k") == {"a": 1}

        stats = cache.get_stats()
        assert (stats.hits, stats.misses) == (1, 1)
        assert stats.to_dict()["hit_rate"] == "50.00%"

    async def test_backend_failure_is_a_miss(self):
        cache = CacheManager(FailingBackend())

        await cache.set("k", 1, 10)
        assert await cache.get("k") is None
        assert await cache.invalidate("k") == 0
        assert cache.get_stats().errors == 3

    def test_generate_key(self):
        assert CacheManager.generate_key("products:list", 1, 50, "", None) == (
            "products:list:1:50::"
        )
        assert CacheManager.generate_key("types:operation:all") == "types:operation:all"

    def test_separators_inside_parts_do_not_collide(self):
        generate = CacheManager.generate_key

        assert generate("products:list", 1, 50, "A:", "") != generate(
            "products:list", 1, 50, "A", ":"
        )
        assert generate("k", "a\\", ":b") != generate("k", "a\\:", "b")
        assert generate("k", "a:b") == "k:a\\:b"

    def test_long_keys_are_hashed(self):
        key = CacheManager.generate_key("partners:list", "x" * 300)

        assert key.startswith("partners:list:")
        assert len(key) == len("partners:list:") + 16
        assert key == CacheManager.generate_key("partners:list", "x" * 300)
