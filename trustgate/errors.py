# FILE: trustgate/errors.py
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Mapping, Optional

from starlette.responses import JSONResponse


class ErrorKind(str, Enum):
    """
    Error kinds surfaced on the wire.

    Kinds are a taxonomy, not exception types: every stage and service raises
    TrustError with one of these and the composer renders the envelope.
    """

    VALIDATION = "validation"
    INVALID_CREDENTIALS = "invalid-credentials"
    UNAUTHENTICATED = "unauthenticated"
    INVALID_TOKEN = "invalid-token"
    TOKEN_REVOKED = "token-revoked"
    FORBIDDEN = "forbidden"
    CSRF = "csrf"
    RATE_LIMITED = "rate-limited"
    LOCKED = "locked"
    DUPLICATE_IDENTITY = "duplicate-identity"
    NOT_FOUND = "not-found"
    CONFLICT = "conflict"
    TIMEOUT = "timeout"
    UPSTREAM = "upstream"
    INTERNAL = "internal"


_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.INVALID_TOKEN: 401,
    ErrorKind.TOKEN_REVOKED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.CSRF: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.DUPLICATE_IDENTITY: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.LOCKED: 429,
    ErrorKind.UPSTREAM: 503,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.INTERNAL: 500,
}

_DEFAULT_MESSAGE: Dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "Validation failed",
    ErrorKind.INVALID_CREDENTIALS: "Invalid credentials",
    ErrorKind.UNAUTHENTICATED: "Authentication required",
    ErrorKind.INVALID_TOKEN: "Invalid or expired token",
    ErrorKind.TOKEN_REVOKED: "Token has been revoked",
    ErrorKind.FORBIDDEN: "Insufficient permissions",
    ErrorKind.CSRF: "Invalid CSRF token",
    ErrorKind.RATE_LIMITED: "Too many requests, please try again later.",
    ErrorKind.LOCKED: "Too many failed login attempts. Account temporarily locked.",
    ErrorKind.DUPLICATE_IDENTITY: "User already exists",
    ErrorKind.NOT_FOUND: "Not found",
    ErrorKind.CONFLICT: "Conflict",
    ErrorKind.TIMEOUT: "Request timed out",
    ErrorKind.UPSTREAM: "Upstream service unavailable",
    ErrorKind.INTERNAL: "Internal server error",
}


def status_for(kind: ErrorKind) -> int:
    return _STATUS.get(kind, 500)


class TrustError(Exception):
    """
    Single exception type for pipeline and service failures.

    `status` defaults to the kind's mapping; callers override it only for the
    malformed-body case (400 with kind=validation).
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        *,
        details: Any = None,
        retry_after: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
        status: Optional[int] = None,
    ) -> None:
        self.kind = ErrorKind(kind)
        self.message = message or _DEFAULT_MESSAGE.get(self.kind, "Error")
        self.details = details
        self.retry_after = None if retry_after is None else max(0, int(retry_after))
        self.headers: Dict[str, str] = dict(headers or {})
        self.status = int(status) if status is not None else status_for(self.kind)
        super().__init__(f"{self.kind.value}: {self.message}")


class ConfigError(ValueError):
    """Raised at startup for unusable configuration."""


class PipelineConfigError(ValueError):
    """Raised when a route declares an illegal trust policy."""


# ---------------------------------------------------------------------------
# Envelope helpers
# ---------------------------------------------------------------------------


def success_envelope(
    data: Any = None,
    *,
    message: Optional[str] = None,
    meta: Any = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    if meta is not None:
        body["meta"] = meta
    return body


def error_envelope(
    kind: ErrorKind,
    message: str,
    *,
    details: Any = None,
    retry_after: Optional[int] = None,
) -> Dict[str, Any]:
    err: Dict[str, Any] = {"kind": ErrorKind(kind).value, "message": message}
    if details is not None:
        err["details"] = details
    body: Dict[str, Any] = {"success": False, "error": err}
    if retry_after is not None:
        body["retryAfter"] = int(retry_after)
    return body


def error_response(exc: TrustError) -> JSONResponse:
    headers = dict(exc.headers)
    if exc.retry_after is not None:
        headers.setdefault("Retry-After", str(exc.retry_after))
    return JSONResponse(
        error_envelope(
            exc.kind,
            exc.message,
            details=exc.details,
            retry_after=exc.retry_after,
        ),
        status_code=exc.status,
        headers=headers,
    )
