# FILE: trustgate/middleware.py
from __future__ import annotations

import logging
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from .csrf import session_id_from
from .logging import bind_request_meta, context, ensure_request_id

_logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Assigns the correlation id and the optional CSRF session id.

    - X-Request-Id is honoured when short and printable, otherwise minted.
    - The session id (X-Session-Id header or `sid` cookie) is exposed on
      request.state for CSRF binding.
    - Both are bound into the logging context for the life of the request.
    """

    def __init__(self, app, *, config_hash: Optional[str] = None):
        super().__init__(app)
        self.config_hash = config_hash

    async def dispatch(self, request: Request, call_next) -> Response:
        # RequestLogMiddleware, when outermost, has already bound the id.
        rid = context().get("req_id") or ensure_request_id(request.headers)
        sid = session_id_from(request.headers, request.cookies)
        request.state.request_id = rid
        request.state.session_id = sid
        bind_request_meta(session=sid, path=request.url.path, method=request.method)
        resp = await call_next(request)
        resp.headers.setdefault("X-Request-Id", rid)
        if self.config_hash:
            resp.headers.setdefault("X-TG-Config-Hash", self.config_hash)
        return resp


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Browser hardening headers on every response.

    Values already set by a route are left alone. HSTS is only meaningful
    behind HTTPS and is enabled by the app factory in production.
    """

    def __init__(
        self,
        app,
        *,
        enable_hsts: bool = False,
        hsts_max_age: int = 31536000,
        hsts_include_subdomains: bool = True,
        content_security_policy: str = "default-src 'none'; frame-ancestors 'none'; base-uri 'none'",
    ):
        super().__init__(app)
        self.enable_hsts = bool(enable_hsts)
        self.hsts_max_age = int(hsts_max_age)
        self.hsts_include_subdomains = bool(hsts_include_subdomains)
        self.csp = content_security_policy

    async def dispatch(self, request: Request, call_next) -> Response:
        resp = await call_next(request)
        self._apply(resp)
        return resp

    def _apply(self, resp: Response) -> None:
        h = resp.headers
        h.setdefault("X-Content-Type-Options", "nosniff")
        h.setdefault("X-Frame-Options", "DENY")
        h.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        h.setdefault("Permissions-Policy", "geolocation=(), camera=(), microphone=()")
        h.setdefault("Content-Security-Policy", self.csp)
        h.setdefault("Cross-Origin-Opener-Policy", "same-origin")
        h.setdefault("Cross-Origin-Resource-Policy", "same-site")
        # Legacy XSS auditor off; CSP covers it.
        h.setdefault("X-XSS-Protection", "0")
        if self.enable_hsts:
            parts = [f"max-age={self.hsts_max_age}"]
            if self.hsts_include_subdomains:
                parts.append("includeSubDomains")
            h.setdefault("Strict-Transport-Security", "; ".join(parts))


__all__ = ["RequestContextMiddleware", "SecurityHeadersMiddleware"]
