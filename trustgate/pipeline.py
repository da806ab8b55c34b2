# FILE: trustgate/pipeline.py
"""
Per-route assembly of the trust stages.

A route is declared as (method, path, TrustPolicy, handler). The composer
validates the policy once, at registration time, and returns an endpoint
that runs the fixed stage order:

  sanitize -> rate_limit -> csrf_verify -> authenticate -> authorise
           -> cache_read -> handler -> cache_invalidate -> csrf_issue

Stages that a policy does not select are skipped; the order itself is never
changed. Any stage may fail with a TrustError; the failure is rendered as the
error envelope and the response stage (rate-limit headers, CSRF re-issue)
still runs. Everything runs under the request deadline.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .apikeys import ApiKeyService
from .authz import OwnerFn, Principal, check_owner, check_permissions, check_roles
from .cache import RESOURCE_PATTERNS, ResponseCache, cache_key
from .config import Settings
from .csrf import CsrfService, is_safe_method, session_id_from
from .errors import ErrorKind, PipelineConfigError, TrustError, error_response, success_envelope
from .logging import bind, context as log_context
from .metrics import observe_request, record_auth_event, record_rejection
from .ratelimit import LoginThrottle, RateDecision, RateLimiter, rate_headers
from .sanitize import sanitize_request_parts
from .tokens import TokenService
from .utils import client_ip_from_scope

logger = logging.getLogger(__name__)

STAGE_ORDER: Tuple[str, ...] = (
    "sanitize",
    "rate_limit",
    "csrf_verify",
    "authenticate",
    "authorise",
    "cache_read",
    "handler",
    "cache_invalidate",
    "csrf_issue",
)

AUTH_MODES = ("none", "optional", "required", "api-key")
_READ_METHODS = frozenset({"GET", "HEAD"})
_BODY_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass(frozen=True)
class TrustPolicy:
    """
    Per-route trust declaration.

    csrf: None means "verify on mutations"; False disables verification for
    the route (token endpoints that carry their own proof); True forces it
    and is rejected on read-only methods.
    """

    sanitize: bool = True
    rate_classes: Tuple[str, ...] = ("global",)
    login_progressive: bool = False
    csrf: Optional[bool] = None
    auth: str = "none"
    roles: Tuple[str, ...] = ()
    permissions: Tuple[str, ...] = ()
    owner: Optional[OwnerFn] = None
    owner_admin_bypass: bool = True
    cache_ttl: Optional[int] = None
    invalidate: Tuple[str, ...] = ()
    api_key_services: Tuple[str, ...] = ()
    body_model: Optional[Type[BaseModel]] = None


@dataclass
class RequestContext:
    """What a handler sees: sanitized inputs plus the authenticated principal."""

    request: Request
    method: str
    path: str
    route: str
    client_ip: str
    user_agent: str
    session_id: Optional[str]
    is_browser: bool
    body: Any = None
    data: Optional[BaseModel] = None
    query: Dict[str, Any] = field(default_factory=dict)
    path_params: Dict[str, Any] = field(default_factory=dict)
    principal: Optional[Principal] = None
    access_token: Optional[str] = None
    login_email: Optional[str] = None
    login_succeeded: bool = False
    csrf_spent: bool = False

    @property
    def user(self):
        return self.principal.user if self.principal is not None else None

    @property
    def user_id(self) -> Optional[str]:
        return self.principal.id if self.principal is not None else None


@dataclass
class Outcome:
    data: Any = None
    message: Optional[str] = None
    meta: Any = None
    status: int = 200
    headers: Dict[str, str] = field(default_factory=dict)


Handler = Callable[[RequestContext], Awaitable[Outcome]]


def stages_for(method: str, policy: TrustPolicy) -> Tuple[str, ...]:
    """The stages a request with this method and policy passes through, in order."""
    m = method.upper()
    active = {
        "sanitize": policy.sanitize,
        "rate_limit": bool(policy.rate_classes) or policy.login_progressive,
        "csrf_verify": _csrf_verifies(m, policy),
        "authenticate": policy.auth != "none",
        "authorise": bool(policy.roles or policy.permissions or policy.owner),
        "cache_read": policy.cache_ttl is not None and m in _READ_METHODS,
        "handler": True,
        "cache_invalidate": bool(policy.invalidate) and m not in _READ_METHODS,
        "csrf_issue": True,
    }
    return tuple(s for s in STAGE_ORDER if active[s])


def _csrf_verifies(method: str, policy: TrustPolicy) -> bool:
    if policy.csrf is False:
        return False
    return not is_safe_method(method)


def validate_policy(method: str, policy: TrustPolicy, *, rate_classes: Optional[Dict[str, Any]] = None) -> None:
    m = method.upper()
    if policy.auth not in AUTH_MODES:
        raise PipelineConfigError(f"unknown auth mode: {policy.auth!r}")
    if (policy.roles or policy.permissions or policy.owner) and policy.auth not in ("required", "api-key"):
        raise PipelineConfigError("role/permission/ownership checks require authentication")
    if policy.api_key_services and policy.auth != "api-key":
        raise PipelineConfigError("api_key_services requires auth='api-key'")
    if policy.csrf is True and is_safe_method(m):
        raise PipelineConfigError(f"csrf verification is not allowed on {m}")
    if policy.cache_ttl is not None and m not in _READ_METHODS:
        raise PipelineConfigError(f"cache-read is only allowed on GET/HEAD, not {m}")
    if policy.invalidate and m in _READ_METHODS:
        raise PipelineConfigError(f"cache-invalidate is not allowed on {m}")
    for res in policy.invalidate:
        if res not in RESOURCE_PATTERNS:
            raise PipelineConfigError(f"unknown cache resource: {res!r}")
    if rate_classes is not None:
        for name in policy.rate_classes:
            if name not in rate_classes:
                raise PipelineConfigError(f"unknown rate class: {name!r}")


def _query_dict(request: Request) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in request.query_params.multi_items():
        if k in out:
            prev = out[k]
            out[k] = prev + [v] if isinstance(prev, list) else [prev, v]
        else:
            out[k] = v
    return out


def _bearer(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        tok = auth.split(" ", 1)[1].strip()
        return tok or None
    return None


class TrustPipeline:
    """
    Holds the stage services and turns route declarations into endpoints.

    All collaborators are passed in explicitly and stay fixed for the life of
    the app; the pipeline itself keeps no per-request state.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        limiter: RateLimiter,
        login_throttle: LoginThrottle,
        csrf: CsrfService,
        tokens: TokenService,
        cache: ResponseCache,
        api_keys: ApiKeyService,
    ):
        self.settings = settings
        self.limiter = limiter
        self.login_throttle = login_throttle
        self.csrf = csrf
        self.tokens = tokens
        self.cache = cache
        self.api_keys = api_keys

    # ------------------------------------------------------------------ #
    # Registration
    # ------------------------------------------------------------------ #

    def compose(self, method: str, path: str, policy: TrustPolicy, handler: Handler):
        method = method.upper()
        validate_policy(method, policy, rate_classes=self.limiter.classes)

        async def endpoint(request: Request) -> Response:
            return await self.run(request, method=method, route=path, policy=policy, handler=handler)

        endpoint.__name__ = getattr(handler, "__name__", "endpoint")
        endpoint.__doc__ = handler.__doc__
        return endpoint

    def mount(self, router, method: str, path: str, policy: TrustPolicy, handler: Handler, **kw: Any) -> None:
        """Register a composed route on a FastAPI router/app."""
        router.add_api_route(
            path,
            self.compose(method, path, policy, handler),
            methods=[method.upper()],
            name=kw.pop("name", None) or f"{method.lower()}:{path}",
            **kw,
        )

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    def _context(self, request: Request, method: str, route: str) -> RequestContext:
        s = self.settings
        ip = client_ip_from_scope(
            request.client.host if request.client else None,
            request.headers.get("x-forwarded-for"),
            respect_xff=s.respect_xff,
            trusted_proxies=s.trusted_proxies,
        )
        sid = getattr(request.state, "session_id", None) or session_id_from(request.headers, request.cookies)
        return RequestContext(
            request=request,
            method=method,
            path=request.url.path,
            route=route,
            client_ip=ip,
            user_agent=request.headers.get("user-agent") or "",
            session_id=sid,
            is_browser=self.csrf.is_browser(request.headers),
        )

    async def run(
        self,
        request: Request,
        *,
        method: str,
        route: str,
        policy: TrustPolicy,
        handler: Handler,
    ) -> Response:
        t0 = time.perf_counter()
        ctx = self._context(request, method, route)
        decisions: List[RateDecision] = []
        stage = {"name": "sanitize"}

        try:
            response = await asyncio.wait_for(
                self._stages(ctx, policy, handler, decisions, stage),
                timeout=self.settings.request_timeout_s,
            )
        except asyncio.TimeoutError:
            record_rejection(stage["name"], ErrorKind.TIMEOUT.value)
            logger.warning("pipeline.timeout", extra={"stage": stage["name"], "route": route})
            response = error_response(TrustError(ErrorKind.TIMEOUT))
        except TrustError as e:
            record_rejection(stage["name"], e.kind.value)
            if e.status >= 500:
                logger.warning(
                    "pipeline.rejected",
                    extra={"stage": stage["name"], "kind": e.kind.value, "route": route},
                )
            response = error_response(e)
        except Exception as e:
            record_rejection(stage["name"], ErrorKind.INTERNAL.value)
            logger.exception(
                "pipeline.internal_error",
                extra={"stage": stage["name"], "route": route, "req_id": log_context().get("req_id")},
            )
            details = None if self.settings.is_production else {"error": repr(e)[:500]}
            response = error_response(TrustError(ErrorKind.INTERNAL, details=details))

        await self._respond(ctx, response, decisions)
        observe_request(route, response.status_code, time.perf_counter() - t0)
        return response

    async def _stages(
        self,
        ctx: RequestContext,
        policy: TrustPolicy,
        handler: Handler,
        decisions: List[RateDecision],
        stage: Dict[str, str],
    ) -> Response:
        request = ctx.request
        method = ctx.method

        # --- sanitize ----------------------------------------------------
        stage["name"] = "sanitize"
        raw_body = await self._read_body(request) if method in _BODY_METHODS else None
        submitted_csrf = None
        if isinstance(raw_body, dict):
            submitted_csrf = raw_body.pop(self.csrf.body_field, None)
        if policy.sanitize:
            ctx.body, ctx.query, ctx.path_params = sanitize_request_parts(
                raw_body,
                _query_dict(request),
                dict(request.path_params),
                client_ip=ctx.client_ip,
                user_agent=ctx.user_agent,
            )
        else:
            ctx.body, ctx.query, ctx.path_params = raw_body, _query_dict(request), dict(request.path_params)

        # --- rate_limit --------------------------------------------------
        stage["name"] = "rate_limit"
        if policy.rate_classes:
            decisions.extend(
                await self.limiter.check(policy.rate_classes, ctx.client_ip, user_agent=ctx.user_agent)
            )
        if policy.login_progressive and isinstance(ctx.body, dict):
            email = ctx.body.get("email")
            if isinstance(email, str) and email.strip():
                ctx.login_email = email
                try:
                    await self.login_throttle.attempt(ctx.client_ip, email, user_agent=ctx.user_agent)
                except TrustError as e:
                    if e.kind is ErrorKind.LOCKED:
                        record_auth_event("login_locked")
                    raise

        # --- csrf_verify -------------------------------------------------
        stage["name"] = "csrf_verify"
        if _csrf_verifies(method, policy) and ctx.is_browser:
            submitted = request.headers.get(self.csrf.header_name) or (
                submitted_csrf if isinstance(submitted_csrf, str) else None
            )
            await self.csrf.verify(
                cookie_token=request.cookies.get(self.csrf.cookie_name),
                submitted_token=submitted,
                session_id=ctx.session_id,
                client_ip=ctx.client_ip,
                user_agent=ctx.user_agent,
            )
            ctx.csrf_spent = True

        # --- authenticate ------------------------------------------------
        stage["name"] = "authenticate"
        await self._authenticate(ctx, policy)

        # --- authorise ---------------------------------------------------
        stage["name"] = "authorise"
        if policy.roles:
            check_roles(ctx.principal, policy.roles)
        if policy.permissions:
            check_permissions(ctx.principal, policy.permissions)
        if policy.owner is not None:
            owner_id = policy.owner(ctx)
            if inspect.isawaitable(owner_id):
                owner_id = await owner_id
            check_owner(ctx.principal, owner_id, admin_bypass=policy.owner_admin_bypass)

        # --- cache_read --------------------------------------------------
        stage["name"] = "cache_read"
        key = None
        if policy.cache_ttl is not None and method in _READ_METHODS and ctx.principal is None:
            key = cache_key(ctx.path, ctx.query)
            hit = await self.cache.lookup(key)
            if hit is not None:
                return JSONResponse(hit["body"], status_code=int(hit.get("status") or 200), headers={"X-Cache": "HIT"})

        # --- handler -----------------------------------------------------
        stage["name"] = "handler"
        if policy.body_model is not None:
            try:
                ctx.data = policy.body_model.model_validate(ctx.body if ctx.body is not None else {})
            except ValidationError as e:
                raise TrustError(
                    ErrorKind.VALIDATION,
                    details=json.loads(e.json(include_url=False, include_context=False, include_input=False)),
                )
        outcome = await handler(ctx)
        if outcome is None:
            outcome = Outcome()

        if ctx.login_succeeded and policy.login_progressive and ctx.login_email:
            await self.login_throttle.succeeded(ctx.client_ip, ctx.login_email)

        ok = 200 <= outcome.status < 300
        if outcome.status == 204:
            response: Response = Response(status_code=204, headers=outcome.headers)
        else:
            body = success_envelope(outcome.data, message=outcome.message, meta=outcome.meta)
            response = JSONResponse(body, status_code=outcome.status, headers=outcome.headers)
            if key is not None and ok:
                response.headers["X-Cache"] = "MISS"
                try:
                    await self.cache.store(key, outcome.status, body, policy.cache_ttl or None)
                except TrustError as e:
                    logger.warning("cache.store_failed", extra={"kind": e.kind.value, "route": ctx.path})

        # --- cache_invalidate ---------------------------------------------
        stage["name"] = "cache_invalidate"
        if policy.invalidate and ok and method not in _READ_METHODS:
            # Post-commit: a failure here is logged, never surfaced.
            try:
                await self.cache.invalidate(policy.invalidate)
            except TrustError as e:
                logger.warning(
                    "cache.invalidate_failed",
                    extra={"kind": e.kind.value, "resources": list(policy.invalidate)},
                )

        stage["name"] = "csrf_issue"
        return response

    async def _read_body(self, request: Request) -> Any:
        raw = await request.body()
        if len(raw) > self.settings.max_body_bytes:
            raise TrustError(ErrorKind.VALIDATION, "Request body too large", status=413)
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except ValueError:
            raise TrustError(ErrorKind.VALIDATION, "Malformed JSON body", status=400)

    async def _authenticate(self, ctx: RequestContext, policy: TrustPolicy) -> None:
        mode = policy.auth
        if mode == "none":
            return
        if mode == "api-key":
            ctx.principal = await self.api_keys.authenticate(
                ctx.request.headers.get("x-api-key"),
                services=policy.api_key_services,
                client_ip=ctx.client_ip,
                user_agent=ctx.user_agent,
            )
            bind(user=ctx.principal.id, role="service")
            return

        token = _bearer(ctx.request)
        if token is None:
            if mode == "required":
                raise TrustError(ErrorKind.UNAUTHENTICATED)
            return
        try:
            user, claims = await self.tokens.authenticate(token)
        except TrustError as e:
            if mode == "optional" and e.kind in (ErrorKind.INVALID_TOKEN, ErrorKind.TOKEN_REVOKED):
                return
            raise
        ctx.principal = Principal(kind="user", id=user.id, role=user.role, user=user, claims=claims)
        ctx.access_token = token
        bind(user=user.id, role=user.role)

    async def _respond(self, ctx: RequestContext, response: Response, decisions: List[RateDecision]) -> None:
        """Response stage: rate-limit headers and CSRF token (re)issue."""
        for k, v in rate_headers(decisions).items():
            response.headers.setdefault(k, v)
        if not ctx.is_browser:
            return
        cookie = ctx.request.cookies.get(self.csrf.cookie_name)
        if ctx.csrf_spent or self.csrf.needs_issue(cookie):
            try:
                token = await self.csrf.issue(ctx.session_id)
            except TrustError as e:
                logger.warning("csrf.issue_failed", extra={"kind": e.kind.value})
                return
            self.csrf.attach(response, token)
        elif cookie:
            response.headers[self.csrf.header_name] = cookie


__all__ = [
    "STAGE_ORDER",
    "AUTH_MODES",
    "TrustPolicy",
    "RequestContext",
    "Outcome",
    "Handler",
    "TrustPipeline",
    "stages_for",
    "validate_policy",
]
