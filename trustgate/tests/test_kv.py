# FILE: trustgate/tests/test_kv.py
import asyncio

import pytest
from fakeredis import aioredis as fake_aioredis

from trustgate.errors import ErrorKind, TrustError
from trustgate.kv import InMemoryKV, RedisKV, make_kv

BACKENDS = ["memory", "redis"]


def _run(backend, fn):
    """Build the backend inside the loop that uses it and run `fn(kv)`."""

    async def main():
        if backend == "memory":
            kv = InMemoryKV()
        else:
            kv = RedisKV(client=fake_aioredis.FakeRedis(decode_responses=True))
        try:
            return await fn(kv)
        finally:
            await kv.close()

    return asyncio.run(main())


@pytest.mark.parametrize("backend", BACKENDS)
def test_set_get_delete(backend):
    async def body(kv):
        await kv.set("a", {"x": [1, 2]})
        assert await kv.get("a") == {"x": [1, 2]}
        assert await kv.ttl("a") is None
        assert await kv.delete("a") is True
        assert await kv.delete("a") is False
        assert await kv.get("a") is None

    _run(backend, body)


@pytest.mark.parametrize("backend", BACKENDS)
def test_incr_applies_ttl_only_on_create(backend):
    async def body(kv):
        assert await kv.incr("rl:x", ttl_on_create=60) == 1
        first = await kv.ttl("rl:x")
        assert first is not None and 0 < first <= 60
        assert await kv.incr("rl:x", ttl_on_create=9999) == 2
        assert await kv.ttl("rl:x") <= 60

    _run(backend, body)


@pytest.mark.parametrize("backend", BACKENDS)
def test_pop_is_single_use(backend):
    async def body(kv):
        await kv.set("csrf:t", {"created_at": 1}, ttl=30)
        results = await asyncio.gather(*(kv.pop("csrf:t") for _ in range(5)))
        assert sum(1 for r in results if r is not None) == 1
        assert await kv.get("csrf:t") is None

    _run(backend, body)


@pytest.mark.parametrize("backend", BACKENDS)
def test_scan_and_delete_many(backend):
    async def body(kv):
        for k in ("route-cache:/a:{}", "route-cache:/b:{}", "refresh:1"):
            await kv.set(k, 1)
        keys = sorted(await kv.scan("route-cache:"))
        assert keys == ["route-cache:/a:{}", "route-cache:/b:{}"]
        assert await kv.delete_many(keys + ["route-cache:/missing"]) == 2
        assert await kv.delete_many([]) == 0
        assert await kv.scan("route-cache:") == []
        assert await kv.get("refresh:1") == 1

    _run(backend, body)


def test_redis_scan_escapes_glob_characters():
    async def body(kv):
        await kv.set("route-cache:/a:[x]", 1)
        await kv.set("route-cache:/a:x", 1)
        assert await kv.scan("route-cache:/a:[") == ["route-cache:/a:[x]"]

    _run("redis", body)


def test_memory_expiry_follows_clock(clock):
    kv = InMemoryKV(clock=clock)

    async def body():
        await kv.set("k", "v", ttl=10)
        await kv.set("p", "v")
        clock.advance(5)
        assert await kv.ttl("k") == pytest.approx(5)
        clock.advance(5)
        assert await kv.get("k") is None
        assert await kv.scan("") == ["p"]
        await kv.set("gone", 1, ttl=1)
        clock.advance(2)
        assert await kv.purge_expired() == 1
        assert len(kv) == 1

    asyncio.run(body())


def test_memory_values_are_copies():
    kv = InMemoryKV()

    async def body():
        value = {"a": [1]}
        await kv.set("k", value)
        value["a"].append(2)
        got = await kv.get("k")
        got["a"].append(3)
        assert await kv.get("k") == {"a": [1]}

    asyncio.run(body())


class _BrokenClient:
    async def get(self, key):
        raise ConnectionError("down")

    async def ping(self):
        raise ConnectionError("down")


class _SlowClient:
    async def set(self, *a, **kw):
        await asyncio.sleep(1)


def test_redis_failures_map_to_error_kinds():
    kv = RedisKV(client=_BrokenClient(), retry_backoff_s=0)
    with pytest.raises(TrustError) as ei:
        asyncio.run(kv.get("k"))
    assert ei.value.kind is ErrorKind.UPSTREAM
    assert asyncio.run(kv.ping()) is False

    slow = RedisKV(client=_SlowClient(), timeout_s=0.01)
    with pytest.raises(TrustError) as ei:
        asyncio.run(slow.set("k", 1))
    assert ei.value.kind is ErrorKind.TIMEOUT


def test_make_kv():
    assert isinstance(make_kv(None), InMemoryKV)
    assert isinstance(make_kv("memory"), InMemoryKV)
    assert isinstance(make_kv("redis://localhost:6379/0"), RedisKV)
    with pytest.raises(ValueError):
        make_kv("etcd://x")
