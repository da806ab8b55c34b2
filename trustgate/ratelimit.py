# FILE: trustgate/ratelimit.py
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from .errors import ErrorKind, TrustError
from .kv import KVStore
from .logging import log_security_event
from .utils import iso_utc

logger = logging.getLogger(__name__)

# (email, client_ip, user_agent, locked_until) -> None
LockHook = Callable[[str, str, Optional[str], float], Awaitable[None]]


@dataclass(frozen=True)
class RateClass:
    name: str
    window_s: int
    max: int
    message: str = "Too many requests, please try again later."


@dataclass(frozen=True)
class RateDecision:
    rate_class: str
    limit: int
    count: int
    reset_at: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def exceeded(self) -> bool:
        return self.count > self.limit


def rate_classes_from_settings(settings) -> Dict[str, RateClass]:
    """Build the fixed rate-class table from a Settings snapshot."""
    return {
        "global": RateClass(
            "global",
            settings.rate_global_window_s,
            settings.rate_global_max,
            "Too many requests from this IP, please try again after 15 minutes",
        ),
        "api": RateClass(
            "api",
            settings.rate_api_window_s,
            settings.rate_api_max,
            "Too many API requests from this IP, please try again after an hour",
        ),
        "auth": RateClass(
            "auth",
            settings.rate_auth_window_s,
            settings.rate_auth_max,
            "Too many authentication attempts from this IP, please try again after an hour",
        ),
        "sensitive": RateClass(
            "sensitive",
            settings.rate_sensitive_window_s,
            settings.rate_sensitive_max,
            "Too many sensitive operations from this IP, please try again after an hour",
        ),
    }


def rate_headers(decisions: Iterable[RateDecision]) -> Dict[str, str]:
    """
    X-RateLimit-* headers from the most restrictive decision (lowest
    remaining quota, then lowest limit).
    """
    ds = list(decisions)
    if not ds:
        return {}
    d = min(ds, key=lambda x: (x.remaining, x.limit))
    return {
        "X-RateLimit-Limit": str(d.limit),
        "X-RateLimit-Remaining": str(d.remaining),
        "X-RateLimit-Reset": str(d.reset_at),
    }


class RateLimiter:
    """
    Fixed-window counters in the shared KV.

    Counter key: rl:{class}:{client_ip}:{window_start}. The key expires with
    its window, so a new window starts from zero without a reset step.
    """

    def __init__(
        self,
        kv: KVStore,
        classes: Dict[str, RateClass],
        *,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._kv = kv
        self._classes = dict(classes)
        self._clock = clock or time.time

    @property
    def classes(self) -> Dict[str, RateClass]:
        return dict(self._classes)

    def _window(self, rc: RateClass, now: float) -> int:
        return int(now // rc.window_s) * rc.window_s

    async def hit(self, class_name: str, client_ip: str) -> RateDecision:
        rc = self._classes.get(class_name)
        if rc is None:
            raise KeyError(f"unknown rate class: {class_name}")
        now = self._clock()
        start = self._window(rc, now)
        reset_at = start + rc.window_s
        key = f"rl:{rc.name}:{client_ip}:{start}"
        count = await self._kv.incr(key, ttl_on_create=max(1.0, reset_at - now))
        return RateDecision(rc.name, rc.max, count, reset_at)

    async def check(
        self,
        class_names: Iterable[str],
        client_ip: str,
        *,
        user_agent: Optional[str] = None,
    ) -> List[RateDecision]:
        """
        Count this request against every named class.

        Raises `rate-limited` for the first exceeded class; the error carries
        Retry-After and the X-RateLimit-* headers.
        """
        decisions: List[RateDecision] = []
        for name in class_names:
            decisions.append(await self.hit(name, client_ip))

        for d in decisions:
            if not d.exceeded:
                continue
            retry = max(1, int(math.ceil(d.reset_at - self._clock())))
            log_security_event(
                logger,
                event="rate_limited",
                client_ip=client_ip,
                user_agent=user_agent,
                reason=d.rate_class,
            )
            headers = rate_headers(decisions)
            raise TrustError(
                ErrorKind.RATE_LIMITED,
                self._classes[d.rate_class].message,
                retry_after=retry,
                headers=headers,
            )
        return decisions

    async def sweep(self) -> int:
        """Drop expired counters; backends with native expiry report 0."""
        n = await self._kv.purge_expired()
        if n:
            logger.debug("ratelimit.sweep", extra={"purged": n})
        return n


class LoginThrottle:
    """
    Progressive per-(client-ip, email) login throttle.

    Every attempt increments rl:login:{ip}:{email}. Reaching `max_attempts`
    sets rl:login-lock:{ip}:{email} for `lockout_s`, clears the counter and
    invokes `on_lock` so the lock is written through to the user record.
    While the lock key exists every attempt short-circuits with `locked`.
    A successful login deletes the counter (`succeeded`).
    """

    def __init__(
        self,
        kv: KVStore,
        *,
        max_attempts: int = 5,
        window_s: int = 3600,
        lockout_s: int = 1800,
        on_lock: Optional[LockHook] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._kv = kv
        self.max_attempts = int(max_attempts)
        self.window_s = int(window_s)
        self.lockout_s = int(lockout_s)
        self._on_lock = on_lock
        self._clock = clock or time.time

    @staticmethod
    def _ident(email: str) -> str:
        return (email or "").strip().lower()

    def counter_key(self, client_ip: str, email: str) -> str:
        return f"rl:login:{client_ip}:{self._ident(email)}"

    def lock_key(self, client_ip: str, email: str) -> str:
        return f"rl:login-lock:{client_ip}:{self._ident(email)}"

    def _locked_error(self, remaining: float, until: float) -> TrustError:
        return TrustError(
            ErrorKind.LOCKED,
            details={"lockedUntil": iso_utc(until)},
            retry_after=max(1, int(math.ceil(remaining))),
        )

    async def attempt(
        self,
        client_ip: str,
        email: str,
        *,
        user_agent: Optional[str] = None,
    ) -> int:
        """Record one attempt; returns the attempt number in this window."""
        if not self._ident(email):
            return 0
        lock_key = self.lock_key(client_ip, email)
        remaining = await self._kv.ttl(lock_key)
        if remaining is not None and remaining > 0:
            raise self._locked_error(remaining, self._clock() + remaining)

        n = await self._kv.incr(self.counter_key(client_ip, email), ttl_on_create=self.window_s)
        if n < self.max_attempts:
            return n

        now = self._clock()
        until = now + self.lockout_s
        await self._kv.set(lock_key, {"locked_until": until}, ttl=self.lockout_s)
        await self._kv.delete(self.counter_key(client_ip, email))
        log_security_event(
            logger,
            event="login_lockout",
            client_ip=client_ip,
            user_agent=user_agent,
            reason="max_attempts",
            extra={"attempts": n},
        )
        if self._on_lock is not None:
            await self._on_lock(self._ident(email), client_ip, user_agent, until)
        raise self._locked_error(self.lockout_s, until)

    async def succeeded(self, client_ip: str, email: str) -> None:
        await self._kv.delete(self.counter_key(client_ip, email))


__all__ = [
    "RateClass",
    "RateDecision",
    "RateLimiter",
    "LoginThrottle",
    "rate_classes_from_settings",
    "rate_headers",
]
