# FILE: trustgate/csrf.py
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping, Optional

from starlette.responses import Response

from .errors import ErrorKind, TrustError
from .kv import KVStore
from .logging import log_security_event
from .utils import random_token, secure_compare

logger = logging.getLogger(__name__)

_BROWSER_MARKERS = ("Mozilla", "Chrome", "Safari", "Firefox", "Edge")
_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def is_safe_method(method: str) -> bool:
    return (method or "").upper() in _SAFE_METHODS


def session_id_from(headers: Mapping[str, str], cookies: Mapping[str, str]) -> Optional[str]:
    """Session id for CSRF binding: X-Session-Id header, else the `sid` cookie."""
    sid = (headers.get("x-session-id") or cookies.get("sid") or "").strip()
    if not sid or len(sid) > 128 or not sid.isprintable():
        return None
    return sid


class CsrfService:
    """
    Double-submit CSRF tokens backed by the shared KV.

    A token lives at csrf:<token> with {created_at, session_id}. Verification
    pops the record, so at most one request can spend a given token. Clients
    that are not browsers skip both issue and verify; the explicit
    X-Client-Kind header wins over the user-agent heuristic.
    """

    def __init__(
        self,
        kv: KVStore,
        *,
        cookie_name: str = "csrfToken",
        header_name: str = "X-CSRF-Token",
        body_field: str = "_csrf",
        ttl_s: int = 24 * 3600,
        same_site: str = "lax",
        secure: bool = False,
        rotate: bool = True,
        bind_session: bool = True,
        client_kind_header: str = "X-Client-Kind",
        clock: Optional[Callable[[], float]] = None,
    ):
        self._kv = kv
        self.cookie_name = cookie_name
        self.header_name = header_name
        self.body_field = body_field
        self.ttl_s = int(ttl_s)
        self.same_site = same_site
        self.secure = bool(secure)
        self.rotate = bool(rotate)
        self.bind_session = bool(bind_session)
        self.client_kind_header = client_kind_header
        self._clock = clock or time.time

    @classmethod
    def from_settings(cls, kv: KVStore, settings, **kw: Any) -> "CsrfService":
        return cls(
            kv,
            cookie_name=settings.csrf_cookie_name,
            header_name=settings.csrf_header_name,
            body_field=settings.csrf_body_field,
            ttl_s=settings.csrf_ttl_s,
            same_site=settings.csrf_same_site,
            secure=settings.is_production,
            rotate=settings.csrf_rotate,
            bind_session=settings.csrf_bind_session,
            client_kind_header=settings.client_kind_header,
            **kw,
        )

    @staticmethod
    def _key(token: str) -> str:
        return f"csrf:{token}"

    def is_browser(self, headers: Mapping[str, str]) -> bool:
        kind = (headers.get(self.client_kind_header) or "").strip().lower()
        if kind == "browser":
            return True
        if kind == "service":
            return False
        ua = headers.get("user-agent") or ""
        return any(m in ua for m in _BROWSER_MARKERS)

    def needs_issue(self, cookie_token: Optional[str]) -> bool:
        return self.rotate or not cookie_token

    async def issue(self, session_id: Optional[str] = None) -> str:
        token = random_token(32)
        record = {
            "created_at": self._clock(),
            "session_id": session_id if (self.bind_session and session_id) else None,
        }
        await self._kv.set(self._key(token), record, ttl=self.ttl_s)
        return token

    async def verify(
        self,
        *,
        cookie_token: Optional[str],
        submitted_token: Optional[str],
        session_id: Optional[str] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """
        Spend the submitted token or raise `csrf`.

        The cookie and the header/body value must be byte-equal, the record
        must still exist and, when bound, belong to the caller's session.
        """

        def _fail(reason: str) -> TrustError:
            log_security_event(
                logger,
                event="csrf_rejected",
                client_ip=client_ip,
                user_agent=user_agent,
                reason=reason,
            )
            return TrustError(ErrorKind.CSRF, "CSRF token validation failed", details={"reason": reason})

        if not cookie_token or not submitted_token:
            raise _fail("Missing CSRF token")
        if not secure_compare(cookie_token, submitted_token):
            raise _fail("CSRF token mismatch")

        record = await self._kv.pop(self._key(cookie_token))
        if not isinstance(record, dict):
            raise _fail("Invalid or expired CSRF token")
        created = float(record.get("created_at") or 0.0)
        if self._clock() - created > self.ttl_s:
            raise _fail("Invalid or expired CSRF token")
        bound = record.get("session_id")
        if self.bind_session and bound and bound != session_id:
            raise _fail("CSRF token session mismatch")

    def attach(self, response: Response, token: str) -> None:
        response.set_cookie(
            self.cookie_name,
            token,
            max_age=self.ttl_s,
            httponly=True,
            secure=self.secure,
            samesite=self.same_site,
            path="/",
        )
        response.headers[self.header_name] = token


__all__ = ["CsrfService", "is_safe_method", "session_id_from"]
