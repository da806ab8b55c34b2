# FILE: trustgate/api_v1.py
"""
Route table.

Each route is one (method, path, TrustPolicy, handler) row; the pipeline
validates the policy when the row is mounted, so an illegal combination
(e.g. an ownership check without authentication) fails at startup rather
than on the first request.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, List, Tuple

from .auth_service import AuthService
from .cache import ResponseCache
from .catalog import RESOURCES, Catalog
from .pipeline import Outcome, RequestContext, TrustPipeline, TrustPolicy
from .schemas import (
    CatalogItemIn,
    CachePatternIn,
    ChallengeIn,
    ChangeEmailIn,
    ChangePasswordIn,
    DeleteAccountIn,
    Disable2faIn,
    EmailIn,
    FacebookIn,
    GoogleIn,
    LoginIn,
    LogoutIn,
    ProfileIn,
    RefreshIn,
    RegisterIn,
    ResetPasswordIn,
    RoleIn,
    TotpIn,
    Verify2faIn,
)

logger = logging.getLogger(__name__)

Route = Tuple[str, str, TrustPolicy, Callable[..., Any]]

_GLOBAL = ("global",)
_AUTH = ("global", "auth")
_SENSITIVE = ("global", "sensitive")


def _path_owner(ctx: RequestContext):
    return ctx.path_params.get("id")


def auth_routes(svc: AuthService) -> List[Route]:
    user = dict(auth="required")
    sensitive = dict(rate_classes=_SENSITIVE)
    return [
        ("GET", "/auth/csrf-token", TrustPolicy(), _csrf_token),
        ("POST", "/auth/register", TrustPolicy(rate_classes=_AUTH, body_model=RegisterIn), svc.register),
        ("GET", "/auth/verify-email/{token}", TrustPolicy(), svc.verify_email),
        ("POST", "/auth/resend-verification", TrustPolicy(**sensitive, **user), svc.resend_verification),
        ("POST", "/auth/forgot-password", TrustPolicy(body_model=EmailIn, **sensitive), svc.forgot_password),
        (
            "POST",
            "/auth/reset-password/{token}",
            TrustPolicy(body_model=ResetPasswordIn, **sensitive),
            svc.reset_password,
        ),
        (
            "POST",
            "/auth/login",
            TrustPolicy(rate_classes=_AUTH, login_progressive=True, body_model=LoginIn),
            svc.login,
        ),
        ("POST", "/auth/verify-2fa", TrustPolicy(rate_classes=_AUTH, body_model=Verify2faIn), svc.verify_2fa),
        (
            "POST",
            "/auth/2fa/send-email-code",
            TrustPolicy(body_model=ChallengeIn, **sensitive),
            svc.send_email_code,
        ),
        ("POST", "/auth/refresh", TrustPolicy(rate_classes=_AUTH, body_model=RefreshIn), svc.refresh),
        ("POST", "/auth/logout", TrustPolicy(auth="optional", body_model=LogoutIn), svc.logout),
        ("POST", "/auth/logout-all", TrustPolicy(**user), svc.logout_all),
        ("GET", "/auth/sessions", TrustPolicy(**user), svc.list_sessions),
        ("DELETE", "/auth/sessions/{id}", TrustPolicy(**user), svc.revoke_session),
        ("POST", "/auth/2fa/setup", TrustPolicy(**user), svc.setup_2fa),
        ("POST", "/auth/2fa/enable", TrustPolicy(body_model=TotpIn, **user), svc.enable_2fa),
        (
            "POST",
            "/auth/2fa/disable",
            TrustPolicy(body_model=Disable2faIn, **sensitive, **user),
            svc.disable_2fa,
        ),
        (
            "POST",
            "/auth/2fa/generate-backup-codes",
            TrustPolicy(body_model=TotpIn, **user),
            svc.regenerate_backup_codes,
        ),
        ("GET", "/auth/2fa/status", TrustPolicy(**user), svc.status_2fa),
        (
            "POST",
            "/auth/change-email",
            TrustPolicy(body_model=ChangeEmailIn, **sensitive, **user),
            svc.change_email,
        ),
        ("GET", "/auth/verify-email-change/{token}", TrustPolicy(), svc.verify_email_change),
        ("POST", "/auth/google", TrustPolicy(rate_classes=_AUTH, body_model=GoogleIn), svc.google),
        ("POST", "/auth/facebook", TrustPolicy(rate_classes=_AUTH, body_model=FacebookIn), svc.facebook),
    ]


def user_routes(svc: AuthService) -> List[Route]:
    user = dict(auth="required")
    return [
        ("GET", "/users/profile", TrustPolicy(**user), svc.get_profile),
        ("PUT", "/users/profile", TrustPolicy(body_model=ProfileIn, **user), svc.update_profile),
        ("POST", "/users/profile", TrustPolicy(body_model=ProfileIn, **user), svc.update_profile),
        ("GET", "/users/activity", TrustPolicy(**user), svc.activity),
        (
            "PUT",
            "/users/change-password",
            TrustPolicy(rate_classes=_SENSITIVE, body_model=ChangePasswordIn, **user),
            svc.change_password,
        ),
        ("DELETE", "/users/account", TrustPolicy(body_model=DeleteAccountIn, **user), svc.delete_account),
        ("GET", "/users/{id}", TrustPolicy(owner=_path_owner, **user), svc.get_user),
        (
            "PUT",
            "/users/{id}/role",
            TrustPolicy(permissions=("admin:users",), body_model=RoleIn, **user),
            svc.set_role,
        ),
    ]


def catalog_routes(catalog: Catalog, *, cache_ttl: int) -> List[Route]:
    rows: List[Route] = [
        ("GET", "/home", TrustPolicy(auth="optional", cache_ttl=cache_ttl), catalog.home),
        ("GET", "/search", TrustPolicy(auth="optional", cache_ttl=cache_ttl), catalog.search_handler),
    ]
    for resource, perm in RESOURCES.items():
        rows.extend(
            [
                (
                    "GET",
                    f"/{resource}",
                    TrustPolicy(auth="optional", cache_ttl=cache_ttl),
                    catalog.list_handler(resource),
                ),
                (
                    "POST",
                    f"/{resource}",
                    TrustPolicy(
                        auth="required",
                        permissions=(f"{perm}:create",),
                        body_model=CatalogItemIn,
                        invalidate=(resource, "home", "search"),
                    ),
                    catalog.create_handler(resource),
                ),
                (
                    "DELETE",
                    f"/{resource}/{{id}}",
                    TrustPolicy(
                        auth="required",
                        permissions=(f"{perm}:delete",),
                        invalidate=(resource, "home", "search"),
                    ),
                    catalog.delete_handler(resource),
                ),
            ]
        )
    return rows


def service_routes(catalog: Catalog) -> List[Route]:
    """Non-browser callers authenticated by X-API-Key."""

    async def external_status(ctx: RequestContext) -> Outcome:
        return Outcome(data={"service": ctx.principal.id, "status": "ok"})

    async def analytics_summary(ctx: RequestContext) -> Outcome:
        return Outcome(data={r: len(catalog.list(r)) for r in RESOURCES})

    return [
        ("GET", "/external/status", TrustPolicy(auth="api-key"), external_status),
        (
            "GET",
            "/analytics/summary",
            TrustPolicy(auth="api-key", api_key_services=("analytics", "admin")),
            analytics_summary,
        ),
    ]


def cache_admin_routes(cache: ResponseCache) -> List[Route]:
    admin = dict(auth="required", roles=("admin",))

    async def stats(ctx: RequestContext) -> Outcome:
        return Outcome(data=await cache.stats())

    async def clear(ctx: RequestContext) -> Outcome:
        n = await cache.clear(ctx.data.pattern)
        return Outcome(data={"deleted": n}, message="Cache cleared")

    async def clear_all(ctx: RequestContext) -> Outcome:
        n = await cache.clear_all()
        return Outcome(data={"deleted": n}, message="All cache cleared")

    async def get_value(ctx: RequestContext) -> Outcome:
        key = str(ctx.path_params.get("key") or "")
        return Outcome(data={"key": key, "value": await cache.get_value(key)})

    async def delete_value(ctx: RequestContext) -> Outcome:
        await cache.delete_value(str(ctx.path_params.get("key") or ""))
        return Outcome(message="Cache key deleted")

    return [
        ("GET", "/cache/stats", TrustPolicy(**admin), stats),
        ("POST", "/cache/clear", TrustPolicy(body_model=CachePatternIn, **admin), clear),
        ("POST", "/cache/clear-all", TrustPolicy(**admin), clear_all),
        # Keys are free-form; plain-text cleaning would escape them.
        ("GET", "/cache/value/{key:path}", TrustPolicy(sanitize=False, **admin), get_value),
        ("DELETE", "/cache/value/{key:path}", TrustPolicy(sanitize=False, **admin), delete_value),
    ]


async def _csrf_token(ctx: RequestContext) -> Outcome:
    # The response stage attaches the token for browser clients.
    return Outcome(message="CSRF token issued")


def mount_routes(
    router,
    pipeline: TrustPipeline,
    *,
    auth: AuthService,
    catalog: Catalog,
    cache: ResponseCache,
    cache_ttl: int,
) -> int:
    rows = (
        auth_routes(auth)
        + user_routes(auth)
        + catalog_routes(catalog, cache_ttl=cache_ttl)
        + cache_admin_routes(cache)
        + service_routes(catalog)
    )
    for method, path, policy, handler in rows:
        pipeline.mount(router, method, path, policy, handler)
    logger.info("routes.mounted", extra={"count": len(rows)})
    return len(rows)


__all__ = [
    "auth_routes",
    "user_routes",
    "catalog_routes",
    "cache_admin_routes",
    "service_routes",
    "mount_routes",
]
