# FILE: trustgate/kv.py
"""
Shared key/value substrate for the trust pipeline.

Every piece of cross-request state that is not the user record lives here:

  - `rl:`           rate-limit counters and login lockout markers
  - `csrf:`         CSRF token records (one-shot)
  - `refresh:`      the live set of refresh tokens
  - `route-cache:`  anonymous response cache entries

Backends:

  - InMemoryKV:
      Single-process store with lazy expiry. Intended for tests and
      single-worker development; it gives no guarantee across workers.

  - RedisKV:
      redis.asyncio client. Counters use SET NX EX + INCR in one MULTI so the
      TTL is attached exactly once, at creation. `pop` maps to GETDEL so a
      read-and-consume is atomic across workers.

Every operation is bounded by `timeout_s`; a deadline becomes a `timeout`
TrustError and a driver failure an `upstream` one. Only idempotent reads
(`get`, `scan`, `ttl`) are retried, once, after a short backoff.
"""
from __future__ import annotations

import asyncio
import json
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import ErrorKind, TrustError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def _encode(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def _decode(raw: Any) -> Any:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class KVStore(ABC):
    """
    Asynchronous key/value interface shared by rate limiting, CSRF,
    refresh-token bookkeeping and the response cache.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def delete_many(self, keys: Iterable[str]) -> int:
        ...

    @abstractmethod
    async def scan(self, prefix: str) -> List[str]:
        """
        Snapshot of keys starting with `prefix`.

        Keys written or expiring concurrently may or may not appear.
        """

    @abstractmethod
    async def incr(self, key: str, ttl_on_create: float) -> int:
        """Atomically increment; the TTL is applied only when the key is created."""

    @abstractmethod
    async def pop(self, key: str) -> Optional[Any]:
        """Atomically read and delete. At most one caller observes the value."""

    @abstractmethod
    async def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime in seconds; None when absent or persistent."""

    async def purge_expired(self) -> int:
        return 0

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryKV(KVStore):
    """
    Thread-safe in-memory KV with lazy expiry.

    Values are stored JSON-encoded so callers see the same copy semantics as
    with Redis. Critical sections never await, so a plain lock is enough even
    when several event loops share the instance (TestClient does this).
    """

    def __init__(self, *, clock: Optional[Clock] = None):
        self._clock: Clock = clock or time.time
        # key -> (encoded value, expires_at or None)
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._g = threading.Lock()

    def _live(self, key: str, now: float) -> Optional[Tuple[str, Optional[float]]]:
        item = self._data.get(key)
        if item is None:
            return None
        exp = item[1]
        if exp is not None and exp <= now:
            self._data.pop(key, None)
            return None
        return item

    def _expiry(self, ttl: Optional[float], now: float) -> Optional[float]:
        if ttl is None:
            return None
        return now + max(0.0, float(ttl))

    async def get(self, key: str) -> Optional[Any]:
        with self._g:
            item = self._live(key, self._clock())
        return None if item is None else _decode(item[0])

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        enc = _encode(value)
        with self._g:
            now = self._clock()
            self._data[key] = (enc, self._expiry(ttl, now))

    async def delete(self, key: str) -> bool:
        with self._g:
            return self._data.pop(key, None) is not None

    async def delete_many(self, keys: Iterable[str]) -> int:
        n = 0
        with self._g:
            for k in keys:
                if self._data.pop(k, None) is not None:
                    n += 1
        return n

    async def scan(self, prefix: str) -> List[str]:
        with self._g:
            now = self._clock()
            return [k for k in list(self._data) if k.startswith(prefix) and self._live(k, now)]

    async def incr(self, key: str, ttl_on_create: float) -> int:
        with self._g:
            now = self._clock()
            item = self._live(key, now)
            if item is None:
                n = 1
                exp = self._expiry(ttl_on_create, now)
            else:
                n = int(_decode(item[0]) or 0) + 1
                exp = item[1]
            self._data[key] = (_encode(n), exp)
            return n

    async def pop(self, key: str) -> Optional[Any]:
        with self._g:
            item = self._live(key, self._clock())
            if item is None:
                return None
            self._data.pop(key, None)
        return _decode(item[0])

    async def ttl(self, key: str) -> Optional[float]:
        with self._g:
            now = self._clock()
            item = self._live(key, now)
        if item is None or item[1] is None:
            return None
        return max(0.0, item[1] - now)

    async def purge_expired(self) -> int:
        with self._g:
            now = self._clock()
            dead = [k for k, (_, exp) in self._data.items() if exp is not None and exp <= now]
            for k in dead:
                self._data.pop(k, None)
        return len(dead)

    def __len__(self) -> int:
        with self._g:
            return len(self._data)


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


def _glob_escape(prefix: str) -> str:
    out = []
    for ch in prefix:
        if ch in "*?[]\\":
            out.append("\\")
        out.append(ch)
    return "".join(out)


class RedisKV(KVStore):
    """
    redis.asyncio-backed KV.

    Either pass a DSN (`redis://host:6379/0`) or a ready client (tests pass a
    fakeredis instance).
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        client: Any = None,
        timeout_s: float = 1.0,
        retry_backoff_s: float = 0.05,
        scan_count: int = 500,
    ):
        if client is None:
            if not url:
                raise ValueError("RedisKV needs either a url or a client")
            client = aioredis.from_url(
                url,
                decode_responses=True,
                socket_timeout=timeout_s,
                socket_connect_timeout=timeout_s,
            )
        self._r = client
        self._timeout = float(timeout_s)
        self._backoff = float(retry_backoff_s)
        self._scan_count = int(scan_count)

    async def _call(
        self,
        op: str,
        fn: Callable[[], Awaitable[Any]],
        *,
        retry: bool = False,
    ) -> Any:
        attempts = 2 if retry else 1
        for i in range(attempts):
            try:
                return await asyncio.wait_for(fn(), timeout=self._timeout)
            except asyncio.TimeoutError:
                if i + 1 < attempts:
                    await asyncio.sleep(self._backoff)
                    continue
                logger.warning("kv.timeout", extra={"op": op})
                raise TrustError(ErrorKind.TIMEOUT, "Key/value store timed out")
            except (RedisError, OSError) as e:
                if i + 1 < attempts:
                    await asyncio.sleep(self._backoff)
                    continue
                logger.warning("kv.error", extra={"op": op, "error": type(e).__name__})
                raise TrustError(ErrorKind.UPSTREAM, "Key/value store unavailable") from e
        raise TrustError(ErrorKind.UPSTREAM, "Key/value store unavailable")  # pragma: no cover

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._call("get", lambda: self._r.get(key), retry=True)
        return _decode(raw)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        enc = _encode(value)
        if ttl is None:
            await self._call("set", lambda: self._r.set(key, enc))
            return
        px = max(1, int(float(ttl) * 1000))
        await self._call("set", lambda: self._r.set(key, enc, px=px))

    async def delete(self, key: str) -> bool:
        n = await self._call("delete", lambda: self._r.delete(key))
        return bool(n)

    async def delete_many(self, keys: Iterable[str]) -> int:
        ks = list(keys)
        if not ks:
            return 0
        n = await self._call("delete_many", lambda: self._r.delete(*ks))
        return int(n or 0)

    async def scan(self, prefix: str) -> List[str]:
        pattern = _glob_escape(prefix) + "*"

        async def _collect() -> List[str]:
            out: List[str] = []
            async for k in self._r.scan_iter(match=pattern, count=self._scan_count):
                out.append(k.decode("utf-8") if isinstance(k, bytes) else k)
            return out

        return await self._call("scan", _collect, retry=True)

    async def incr(self, key: str, ttl_on_create: float) -> int:
        ex = max(1, int(math.ceil(float(ttl_on_create))))

        async def _run() -> Any:
            pipe = self._r.pipeline(transaction=True)
            pipe.set(key, 0, ex=ex, nx=True)
            pipe.incr(key)
            return await pipe.execute()

        res = await self._call("incr", _run)
        return int(res[-1])

    async def pop(self, key: str) -> Optional[Any]:
        raw = await self._call("pop", lambda: self._r.getdel(key))
        return _decode(raw)

    async def ttl(self, key: str) -> Optional[float]:
        ms = await self._call("ttl", lambda: self._r.pttl(key), retry=True)
        ms = int(ms)
        if ms < 0:
            return None
        return ms / 1000.0

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping", lambda: self._r.ping()))
        except TrustError:
            return False

    async def close(self) -> None:
        closer = getattr(self._r, "aclose", None) or self._r.close
        await closer()


def make_kv(
    dsn: Optional[str],
    *,
    timeout_s: float = 1.0,
    retry_backoff_s: float = 0.05,
    clock: Optional[Clock] = None,
) -> KVStore:
    """
    Factory for KV backends.

    Accepted DSNs:
      - None, "" or "memory"        -> InMemoryKV
      - "redis://..." / "rediss://" -> RedisKV
    """
    if not dsn or dsn.strip().lower() in ("memory", "mem://"):
        return InMemoryKV(clock=clock)
    dsn_l = dsn.strip().lower()
    if dsn_l.startswith("redis://") or dsn_l.startswith("rediss://"):
        return RedisKV(dsn.strip(), timeout_s=timeout_s, retry_backoff_s=retry_backoff_s)
    raise ValueError(f"Unsupported kv dsn: {dsn}")


__all__ = ["KVStore", "InMemoryKV", "RedisKV", "make_kv"]
