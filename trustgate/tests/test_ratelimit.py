# FILE: trustgate/tests/test_ratelimit.py
import asyncio

import pytest

from trustgate.config import settings_for_tests
from trustgate.errors import ErrorKind, TrustError
from trustgate.ratelimit import (
    LoginThrottle,
    RateClass,
    RateDecision,
    RateLimiter,
    rate_classes_from_settings,
    rate_headers,
)

CLASSES = {
    "global": RateClass("global", 900, 3, "slow down"),
    "sensitive": RateClass("sensitive", 3600, 1, "too sensitive"),
}


def test_fixed_window_counts_and_resets(kv, clock):
    limiter = RateLimiter(kv, CLASSES, clock=clock)

    async def body():
        for expected in (1, 2, 3):
            (d,) = await limiter.check(["global"], "1.1.1.1")
            assert d.count == expected
        with pytest.raises(TrustError) as ei:
            await limiter.check(["global"], "1.1.1.1")
        err = ei.value
        assert err.kind is ErrorKind.RATE_LIMITED
        assert err.message == "slow down"
        assert 1 <= err.retry_after <= 900
        assert err.headers["X-RateLimit-Remaining"] == "0"

        # Another client has its own counter.
        (d,) = await limiter.check(["global"], "2.2.2.2")
        assert d.count == 1

        clock.advance(900)
        (d,) = await limiter.check(["global"], "1.1.1.1")
        assert d.count == 1

    asyncio.run(body())


def test_every_class_is_counted_and_first_exceeded_wins(kv, clock):
    limiter = RateLimiter(kv, CLASSES, clock=clock)

    async def body():
        await limiter.check(["global", "sensitive"], "ip")
        with pytest.raises(TrustError) as ei:
            await limiter.check(["global", "sensitive"], "ip")
        assert ei.value.message == "too sensitive"
        # The global counter moved on both calls.
        (d,) = await limiter.check(["global"], "ip")
        assert d.count == 3

    asyncio.run(body())


def test_unknown_class_is_rejected(kv):
    with pytest.raises(KeyError):
        asyncio.run(RateLimiter(kv, CLASSES).hit("nope", "ip"))


def test_rate_headers_pick_most_restrictive():
    h = rate_headers(
        [RateDecision("global", 100, 10, 1000), RateDecision("sensitive", 5, 4, 2000)]
    )
    assert h == {"X-RateLimit-Limit": "5", "X-RateLimit-Remaining": "1", "X-RateLimit-Reset": "2000"}
    assert rate_headers([]) == {}


def test_rate_classes_from_settings():
    classes = rate_classes_from_settings(settings_for_tests())
    assert set(classes) == {"global", "api", "auth", "sensitive"}
    assert classes["global"].window_s == 900 and classes["global"].max == 100
    assert classes["sensitive"].max == 5


def test_login_throttle_locks_and_notifies(kv, clock):
    locked = []

    async def on_lock(email, ip, ua, until):
        locked.append((email, ip, until))

    throttle = LoginThrottle(kv, max_attempts=3, lockout_s=600, on_lock=on_lock, clock=clock)

    async def body():
        assert await throttle.attempt("ip", "A@X.io") == 1
        assert await throttle.attempt("ip", "a@x.io") == 2
        with pytest.raises(TrustError) as ei:
            await throttle.attempt("ip", "a@x.io")
        assert ei.value.kind is ErrorKind.LOCKED
        assert ei.value.retry_after == 600
        assert locked == [("a@x.io", "ip", clock() + 600)]
        assert await kv.get(throttle.counter_key("ip", "a@x.io")) is None

        clock.advance(100)
        with pytest.raises(TrustError) as ei:
            await throttle.attempt("ip", "a@x.io")
        assert ei.value.retry_after == 500
        # A different address or email is not affected.
        assert await throttle.attempt("other-ip", "a@x.io") == 1
        assert await throttle.attempt("ip", "b@x.io") == 1

        clock.advance(501)
        assert await throttle.attempt("ip", "a@x.io") == 1

    asyncio.run(body())


def test_login_success_clears_counter(kv, clock):
    throttle = LoginThrottle(kv, max_attempts=3, clock=clock)

    async def body():
        await throttle.attempt("ip", "a@x.io")
        await throttle.attempt("ip", "a@x.io")
        await throttle.succeeded("ip", "a@x.io")
        assert await throttle.attempt("ip", "a@x.io") == 1
        assert await throttle.attempt("ip", "") == 0

    asyncio.run(body())


def test_sweep_drops_expired_counters(kv, clock):
    limiter = RateLimiter(kv, CLASSES, clock=clock)

    async def body():
        await limiter.check(["global"], "ip")
        clock.advance(901)
        assert await limiter.sweep() == 1

    asyncio.run(body())
