# FILE: trustgate/cache.py
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import ErrorKind, TrustError
from .kv import KVStore
from .metrics import record_cache_event
from .utils import canonical_json_dumps

logger = logging.getLogger(__name__)

CACHE_PREFIX = "route-cache:"

# Resource name -> key prefixes evicted when that resource changes.
RESOURCE_PATTERNS: Dict[str, tuple] = {
    "coupons": (f"{CACHE_PREFIX}/coupons",),
    "stores": (f"{CACHE_PREFIX}/stores",),
    "deals": (f"{CACHE_PREFIX}/deals",),
    "cashback": (f"{CACHE_PREFIX}/cashback",),
    "categories": (f"{CACHE_PREFIX}/categories",),
    "search": (f"{CACHE_PREFIX}/search",),
    "home": (f"{CACHE_PREFIX}/home", f"{CACHE_PREFIX}/:"),
}


def cache_key(path: str, query: Mapping[str, Any]) -> str:
    """route-cache:{path}:{sorted query as canonical JSON}"""
    q = {str(k): query[k] for k in sorted(query)}
    return f"{CACHE_PREFIX}{path}:{canonical_json_dumps(q)}"


def patterns_for(resources: Iterable[str]) -> List[str]:
    out: List[str] = []
    for res in resources:
        pats = RESOURCE_PATTERNS.get(res)
        if pats is None:
            raise KeyError(f"unknown cache resource: {res}")
        for p in pats:
            if p not in out:
                out.append(p)
    return out


def _confine(pattern: str) -> str:
    """Map an admin-supplied pattern onto the route-cache namespace."""
    p = (pattern or "").strip().rstrip("*")
    if not p.startswith(CACHE_PREFIX):
        p = CACHE_PREFIX + p
    return p


class ResponseCache:
    """
    Anonymous read cache over the shared KV.

    Entries are {status, body}. Reads never fail the request: a KV error on
    lookup is logged and treated as a miss. Eviction is prefix based
    (scan + delete_many); keys written concurrently with an eviction may
    survive it until their TTL.
    """

    def __init__(self, kv: KVStore, *, default_ttl_s: int = 3600):
        self._kv = kv
        self.default_ttl_s = int(default_ttl_s)
        self._g = threading.Lock()
        self._hits = 0
        self._misses = 0

    def _count(self, hit: bool) -> None:
        with self._g:
            if hit:
                self._hits += 1
            else:
                self._misses += 1
        record_cache_event("hit" if hit else "miss")

    async def lookup(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            entry = await self._kv.get(key)
        except TrustError as e:
            logger.warning("cache.lookup_failed", extra={"kind": e.kind.value})
            entry = None
        if isinstance(entry, dict) and "body" in entry:
            self._count(True)
            return entry
        self._count(False)
        return None

    async def store(self, key: str, status: int, body: Any, ttl_s: Optional[int] = None) -> None:
        ttl = int(ttl_s or self.default_ttl_s)
        await self._kv.set(key, {"status": int(status), "body": body}, ttl=ttl)
        record_cache_event("store")

    async def evict_prefixes(self, prefixes: Iterable[str]) -> int:
        total = 0
        for prefix in prefixes:
            keys = await self._kv.scan(prefix)
            if keys:
                total += await self._kv.delete_many(keys)
        record_cache_event("evict", total)
        if total:
            logger.info("cache.evicted", extra={"count": total})
        return total

    async def invalidate(self, resources: Iterable[str]) -> int:
        return await self.evict_prefixes(patterns_for(resources))

    # ---- admin surface (route-cache namespace only) ----

    async def clear(self, pattern: str) -> int:
        if not (pattern or "").strip():
            raise TrustError(ErrorKind.VALIDATION, "Pattern is required")
        return await self.evict_prefixes([_confine(pattern)])

    async def clear_all(self) -> int:
        return await self.evict_prefixes([CACHE_PREFIX])

    async def get_value(self, key: str) -> Any:
        entry = await self._kv.get(_confine(key))
        if entry is None:
            raise TrustError(ErrorKind.NOT_FOUND, "Cache key not found")
        return entry

    async def delete_value(self, key: str) -> None:
        if not await self._kv.delete(_confine(key)):
            raise TrustError(ErrorKind.NOT_FOUND, "Cache key not found")

    async def stats(self) -> Dict[str, Any]:
        keys = await self._kv.scan(CACHE_PREFIX)
        with self._g:
            hits, misses = self._hits, self._misses
        total = hits + misses
        return {
            "keys": len(keys),
            "hits": hits,
            "misses": misses,
            "hitRate": round(hits / total, 4) if total else 0.0,
            "defaultTtl": self.default_ttl_s,
        }


__all__ = [
    "CACHE_PREFIX",
    "RESOURCE_PATTERNS",
    "ResponseCache",
    "cache_key",
    "patterns_for",
]
