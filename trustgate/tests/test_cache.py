# FILE: trustgate/tests/test_cache.py
import asyncio

import pytest

from trustgate.cache import CACHE_PREFIX, ResponseCache, cache_key, patterns_for
from trustgate.errors import ErrorKind, TrustError
from trustgate.kv import InMemoryKV


def test_cache_key_sorts_query():
    a = cache_key("/coupons", {"q": "x", "a": ["2", "1"]})
    b = cache_key("/coupons", {"a": ["2", "1"], "q": "x"})
    assert a == b == 'route-cache:/coupons:{"a":["2","1"],"q":"x"}'
    assert cache_key("/", {}) == "route-cache:/:{}"


def test_patterns_for():
    assert patterns_for(["stores", "home", "stores"]) == [
        "route-cache:/stores",
        "route-cache:/home",
        "route-cache:/:",
    ]
    with pytest.raises(KeyError):
        patterns_for(["users"])


def test_lookup_store_and_invalidate(kv):
    cache = ResponseCache(kv, default_ttl_s=60)

    async def body():
        k1 = cache_key("/stores", {})
        k2 = cache_key("/stores/abc", {})
        k3 = cache_key("/deals", {})
        assert await cache.lookup(k1) is None
        for k in (k1, k2, k3):
            await cache.store(k, 200, {"success": True})
        assert (await cache.lookup(k1))["body"] == {"success": True}
        assert await cache.invalidate(["stores"]) == 2
        assert await kv.scan(CACHE_PREFIX) == [k3]
        stats = await cache.stats()
        assert stats["hits"] == 1 and stats["misses"] == 1
        assert stats["hitRate"] == 0.5
        assert stats["defaultTtl"] == 60

    asyncio.run(body())


def test_entries_use_default_ttl(kv, clock):
    cache = ResponseCache(kv, default_ttl_s=60)

    async def body():
        await cache.store("route-cache:/a:{}", 200, {})
        await cache.store("route-cache:/b:{}", 200, {}, ttl_s=600)
        clock.advance(61)
        assert await cache.lookup("route-cache:/a:{}") is None
        assert await cache.lookup("route-cache:/b:{}") is not None

    asyncio.run(body())


class _FailingKV(InMemoryKV):
    async def get(self, key):
        raise TrustError(ErrorKind.UPSTREAM)


def test_lookup_failure_is_a_miss():
    cache = ResponseCache(_FailingKV())
    assert asyncio.run(cache.lookup("route-cache:/a:{}")) is None


def test_admin_operations_stay_in_namespace(kv):
    cache = ResponseCache(kv)

    async def body():
        await kv.set("refresh:abc", {"sub": "u"})
        await cache.store("route-cache:/coupons:{}", 200, {})
        assert await cache.clear("*") == 1
        with pytest.raises(TrustError) as ei:
            await cache.get_value("refresh:abc")
        assert ei.value.kind is ErrorKind.NOT_FOUND
        assert await kv.get("refresh:abc") == {"sub": "u"}

        await cache.store("route-cache:/coupons:{}", 200, {})
        assert (await cache.get_value("/coupons:{}"))["status"] == 200
        await cache.delete_value("/coupons:{}")
        with pytest.raises(TrustError) as ei:
            await cache.delete_value("/coupons:{}")
        assert ei.value.kind is ErrorKind.NOT_FOUND
        with pytest.raises(TrustError) as ei:
            await cache.clear("  ")
        assert ei.value.kind is ErrorKind.VALIDATION
        assert await cache.clear_all() == 0

    asyncio.run(body())
