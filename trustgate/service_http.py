# FILE: trustgate/service_http.py
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse, Response

from .api_v1 import mount_routes
from .apikeys import ApiKeyService
from .auth_service import AuthService
from .cache import ResponseCache
from .catalog import Catalog
from .config import Settings, make_reloadable_settings
from .credentials import PasswordService
from .csrf import CsrfService
from .errors import ErrorKind, TrustError, error_envelope, error_response
from .kv import KVStore, make_kv
from .logging import RequestLogMiddleware, context as log_context, get_logger
from .middleware import RequestContextMiddleware, SecurityHeadersMiddleware
from .notify import LogMailer, Mailer
from .oauth import OAuthVerifier
from .pipeline import TrustPipeline
from .ratelimit import LoginThrottle, RateLimiter, rate_classes_from_settings
from .storage import AsyncUserStore, UserStore, make_user_store
from .tokens import TokenService

_logger = logging.getLogger(__name__)

_EXPOSE_HEADERS = [
    "X-Request-Id",
    "X-CSRF-Token",
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
    "Retry-After",
    "X-Cache",
    "X-TG-Config-Hash",
]


def _http_error_kind(status: int) -> ErrorKind:
    if status == 404:
        return ErrorKind.NOT_FOUND
    if status == 401:
        return ErrorKind.UNAUTHENTICATED
    if status == 403:
        return ErrorKind.FORBIDDEN
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status >= 500:
        return ErrorKind.INTERNAL
    return ErrorKind.VALIDATION


def _install_exception_handlers(app: FastAPI, settings: Settings) -> None:
    """Every response body on the wire is an envelope, including framework errors."""

    @app.exception_handler(TrustError)
    async def _trust_error(request: Request, exc: TrustError):
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            error_envelope(ErrorKind.VALIDATION, "Validation failed", details=exc.errors()),
            status_code=422,
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        kind = _http_error_kind(exc.status_code)
        message = "Route not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse(
            error_envelope(kind, message),
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        _logger.exception("http.unhandled", extra={"req_id": log_context().get("req_id")})
        details = None if settings.is_production else {"error": repr(exc)[:500]}
        return JSONResponse(
            error_envelope(ErrorKind.INTERNAL, "Internal server error", details=details),
            status_code=500,
        )


def create_app(
    settings: Optional[Settings] = None,
    *,
    kv: Optional[KVStore] = None,
    user_store: Optional[UserStore] = None,
    mailer: Optional[Mailer] = None,
    oauth: Optional[OAuthVerifier] = None,
    clock: Optional[Callable[[], float]] = None,
) -> FastAPI:
    """
    Build the HTTP surface.

    Every collaborator is constructed once here from a single Settings
    snapshot and handed to the pipeline explicitly; nothing below reads
    configuration again. Tests pass in-memory backends, a capturing mailer
    and a fake clock.

    Exposes the /auth, /users, catalogue and /cache routes through the
    trust pipeline, plus /healthz and /metrics outside it.
    """
    if settings is None:
        settings = make_reloadable_settings().get()
    get_logger("trustgate")

    if kv is None:
        kv = make_kv(
            settings.kv_dsn,
            timeout_s=settings.kv_timeout_s,
            retry_backoff_s=settings.kv_retry_backoff_s,
            clock=clock,
        )
    store = user_store if user_store is not None else make_user_store(settings.user_store_dsn)
    users = AsyncUserStore(store, timeout_s=settings.db_timeout_s)
    if mailer is None:
        mailer = LogMailer(frontend_url=settings.frontend_url, product=settings.totp_issuer)
    clock_kw: Dict[str, Any] = {"clock": clock} if clock is not None else {}

    limiter = RateLimiter(kv, rate_classes_from_settings(settings), **clock_kw)
    csrf = CsrfService.from_settings(kv, settings, **clock_kw)
    tokens = TokenService.from_settings(kv, users, settings, **clock_kw)
    cache = ResponseCache(kv, default_ttl_s=settings.cache_default_ttl_s)
    api_keys = ApiKeyService(kv, settings.api_keys, hourly_limit=settings.api_key_hourly_limit, **clock_kw)
    auth = AuthService(
        settings=settings,
        users=users,
        tokens=tokens,
        passwords=PasswordService.from_settings(settings),
        mailer=mailer,
        oauth=oauth if oauth is not None else OAuthVerifier.from_settings(settings),
        **clock_kw,
    )
    throttle = LoginThrottle(
        kv,
        max_attempts=settings.login_max_attempts,
        window_s=settings.login_window_s,
        lockout_s=settings.login_lockout_s,
        on_lock=auth.on_lock,
        **clock_kw,
    )
    pipeline = TrustPipeline(
        settings=settings,
        limiter=limiter,
        login_throttle=throttle,
        csrf=csrf,
        tokens=tokens,
        cache=cache,
        api_keys=api_keys,
    )
    catalog = Catalog()

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        async def _gc() -> None:
            while True:
                await asyncio.sleep(settings.rate_gc_interval_s)
                try:
                    n = await limiter.sweep()
                except TrustError as e:
                    _logger.warning("ratelimit.sweep_failed", extra={"kind": e.kind.value})
                    continue
                if n:
                    _logger.debug("ratelimit.swept", extra={"count": n})

        task = asyncio.create_task(_gc())
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            await kv.close()
            store.close()

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        openapi_url="/openapi.json" if settings.enable_docs else None,
        docs_url="/docs" if settings.enable_docs else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    # Innermost first: add_middleware wraps, so the last one added runs first.
    app.add_middleware(SecurityHeadersMiddleware, enable_hsts=settings.is_production)
    app.add_middleware(RequestContextMiddleware, config_hash=settings.config_hash())
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Request-Id",
            "X-Session-Id",
            "X-API-Key",
            settings.csrf_header_name,
            settings.client_kind_header,
        ],
        expose_headers=_EXPOSE_HEADERS,
    )
    app.add_middleware(RequestLogMiddleware)

    _install_exception_handlers(app, settings)

    app.state.settings = settings
    app.state.kv = kv
    app.state.users = users
    app.state.mailer = mailer
    app.state.pipeline = pipeline
    app.state.auth = auth
    app.state.cache = cache
    app.state.catalog = catalog

    mount_routes(
        app,
        pipeline,
        auth=auth,
        catalog=catalog,
        cache=cache,
        cache_ttl=settings.cache_default_ttl_s,
    )

    @app.get("/healthz")
    async def healthz() -> Dict[str, Any]:
        try:
            kv_ok = await kv.ping()
        except TrustError:
            kv_ok = False
        return {
            "ok": kv_ok,
            "kv": kv_ok,
            "version": settings.version,
            "config_hash": settings.config_hash(),
        }

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app"]
