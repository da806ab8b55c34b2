# FILE: trustgate/apikeys.py
from __future__ import annotations

import logging
import math
import time
from typing import Callable, Dict, Iterable, Optional

from .authz import Principal
from .errors import ErrorKind, TrustError
from .kv import KVStore
from .logging import log_security_event
from .utils import secure_compare

logger = logging.getLogger(__name__)

_WINDOW_S = 3600


class ApiKeyService:
    """
    Static service-key registry for non-browser callers (X-API-Key).

    Keys come from configuration as {service: key}. Each service gets an
    hourly fixed-window budget counted in the shared KV at
    rl:apikey:{service}:{window_start}.
    """

    def __init__(
        self,
        kv: KVStore,
        keys: Dict[str, str],
        *,
        hourly_limit: int = 1000,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._kv = kv
        self._keys = {str(s): str(k) for s, k in (keys or {}).items() if k}
        self.hourly_limit = int(hourly_limit)
        self._clock = clock or time.time

    def _lookup(self, presented: str) -> Optional[str]:
        found: Optional[str] = None
        # Compare against every key so timing does not reveal the match position.
        for service, key in self._keys.items():
            if secure_compare(presented, key) and found is None:
                found = service
        return found

    async def authenticate(
        self,
        presented: Optional[str],
        *,
        services: Iterable[str] = (),
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Principal:
        if not presented:
            raise TrustError(ErrorKind.UNAUTHENTICATED, "API key is required")
        service = self._lookup(presented)
        if service is None:
            log_security_event(
                logger,
                event="api_key_rejected",
                client_ip=client_ip,
                user_agent=user_agent,
                reason="unknown_key",
            )
            raise TrustError(ErrorKind.UNAUTHENTICATED, "Invalid API key")
        allowed = list(services)
        if allowed and service not in allowed:
            log_security_event(
                logger,
                event="api_key_rejected",
                client_ip=client_ip,
                user_agent=user_agent,
                reason="service_not_allowed",
                extra={"service": service},
            )
            raise TrustError(ErrorKind.FORBIDDEN, "This API key is not authorized for this service")

        now = self._clock()
        start = int(now // _WINDOW_S) * _WINDOW_S
        n = await self._kv.incr(f"rl:apikey:{service}:{start}", ttl_on_create=max(1.0, start + _WINDOW_S - now))
        if n > self.hourly_limit:
            raise TrustError(
                ErrorKind.RATE_LIMITED,
                "API rate limit exceeded",
                retry_after=max(1, int(math.ceil(start + _WINDOW_S - now))),
            )
        return Principal(kind="service", id=service)


__all__ = ["ApiKeyService"]
