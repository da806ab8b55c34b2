# FILE: trustgate/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import time
import traceback
import uuid
from typing import Any, Dict, Optional

from .utils import anonymize_ip

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("TG_LOG_SCHEMA", "trustgate.log.v1")
_LOG_SERVICE = os.environ.get("TG_SERVICE", "trustgate")
_LOG_VERSION = os.environ.get("TG_VERSION", "0.0.0")
_LOG_ENV = os.environ.get("TG_ENV", "development")

# Max chars per field (truncate to keep JSON small)
try:
    _MAX_FIELD = max(512, int(os.environ.get("TG_LOG_MAX_FIELD", "8192")))
except ValueError:
    _MAX_FIELD = 8192

_INCLUDE_STACK = os.environ.get("TG_LOG_INCLUDE_STACK", "1") == "1"

# Redaction keys (case-insensitive): headers, credentials, token material
_DEFAULT_REDACT = {
    "authorization",
    "proxy-authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "x-csrf-token",
    "_csrf",
    "csrftoken",
    "password",
    "passwordconfirm",
    "newpassword",
    "currentpassword",
    "token",
    "temptoken",
    "accesstoken",
    "refreshtoken",
    "idtoken",
    "code",
    "secret",
}
_REDACT_KEYS = {
    k.strip().lower()
    for k in os.environ.get("TG_LOG_REDACT", "").split(",")
    if k.strip()
} or _DEFAULT_REDACT

# Record attributes that belong to logging itself, not to extras
_RESERVED_ATTRS = set(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime"}

# Envelope fields lifted from the bound context / record extras
_ENVELOPE_KEYS = (
    "req_id",
    "session",
    "user",
    "role",
    "path",
    "method",
    "route",
    "status",
    "latency_ms",
    "bytes_in",
    "bytes_out",
    "client_ip",
    "event",
    "stage",
    "kind",
)

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "tg_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context (per-coroutine)."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def unbind(*keys: str) -> None:
    cur = dict(_log_ctx.get())
    for k in keys:
        cur.pop(k, None)
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    now = _dt.datetime.now(_dt.timezone.utc)
    ms = int(now.microsecond / 1000)
    base = now.replace(microsecond=0).isoformat().replace("+00:00", "")
    return f"{base}.{ms:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _redact_key(k: str) -> bool:
    return str(k).lower() in _REDACT_KEYS


def scrub_dict(d: Dict[str, Any]) -> Dict[str, Any]:
    """
    Scrub obvious secrets from a dict (headers, request extras).

    Keys listed in `_REDACT_KEYS` get replaced by "***". Nested dictionaries
    are scrubbed recursively.
    """
    out: Dict[str, Any] = {}
    for k, v in (d or {}).items():
        if _redact_key(k):
            out[k] = "***"
        elif isinstance(v, dict):
            out[k] = scrub_dict(v)
        else:
            out[k] = _truncate(v)
    return out


class JSONFormatter(logging.Formatter):
    """
    JSON formatter with a stable envelope.

    Core envelope fields:
      - schema, service, version, env
      - ts, lvl, msg, logger
      - req_id, session, user, role, path, method, route, status, latency_ms
      - event / stage / kind for security and pipeline events
    Everything else passed through `extra=` lands, scrubbed, under "meta".
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()
        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "version": _LOG_VERSION,
            "env": _LOG_ENV,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": str(record.getMessage()),
        }

        for key in _ENVELOPE_KEYS:
            v = getattr(record, key, None)
            if v is None:
                v = ctx.get(key)
            if v is not None:
                evt[key] = _truncate(v)

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta = {
            k: v
            for k, v in record.__dict__.items()
            if k not in _RESERVED_ATTRS and k not in evt and not k.startswith("_")
        }
        if meta:
            evt["meta"] = scrub_dict(meta)

        return _compact_json(evt)


# ---------- Root integration ----------
def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    include_uvicorn: bool = True,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """
    Configure root (+ optionally uvicorn) for JSON output.
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
            lg = logging.getLogger(name)
            lg.setLevel(lvl)
            _clear_handlers(lg)
            lg.addHandler(h)
            lg.propagate = False

    return root


# ---------- Request helpers ----------
def ensure_request_id(headers: Optional[Dict[str, str]] = None) -> str:
    """
    Get or create a request id; bind into context immediately.

    Upstream values are accepted only when short and printable.
    """
    rid = None
    if headers:
        cand = headers.get("x-request-id") or headers.get("X-Request-Id")
        if cand and len(cand) <= 64 and cand.isprintable():
            rid = cand
    if not rid:
        rid = uuid.uuid4().hex[:16]
    bind(req_id=rid)
    return rid


def bind_request_meta(
    *,
    session: Optional[str] = None,
    user: Optional[str] = None,
    role: Optional[str] = None,
    path: Optional[str] = None,
    method: Optional[str] = None,
    route: Optional[str] = None,
) -> None:
    """
    Bind request-scoped identifiers into the logging context.

    Request/response bodies must never be bound here.
    """
    bind(session=session, user=user, role=role, path=path, method=method, route=route)


def log_security_event(
    logger: logging.Logger,
    *,
    event: str,
    client_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    reason: Optional[str] = None,
    message: str = "security_event",
    extra: Optional[Dict[str, Any]] = None,
    level: int = logging.WARNING,
) -> None:
    """
    Single funnel for security events: injection attempts, CSRF failures,
    throttle trips, refresh reuse, API-key rejections.

    Client IPs are anonymised; extras are scrubbed of secrets.
    """
    extra_dict: Dict[str, Any] = {
        "event": event,
        "reason": reason,
        "client_ip": anonymize_ip(client_ip) if client_ip else None,
        "user_agent": _truncate(user_agent) if user_agent else None,
    }
    if extra:
        for k, v in scrub_dict(extra).items():
            if v is None or k in _RESERVED_ATTRS:
                continue
            extra_dict[str(k)] = v
    logger.log(
        level,
        message,
        extra={k: v for k, v in extra_dict.items() if v is not None},
    )


# ---------- ASGI middleware (structured request logs) ----------
class RequestLogMiddleware:
    """
    Pure ASGI middleware that emits one JSON `http.finish` line per request
    with req_id, method, path, status, latency_ms and byte counts.

    It never logs request or response bodies.
    Usage:
        app.add_middleware(RequestLogMiddleware, log_headers=False)
    """

    def __init__(
        self,
        app,
        *,
        logger_name: str = "trustgate.http",
        log_headers: bool = False,
    ):
        self.app = app
        self.log = logging.getLogger(logger_name)
        self.log_headers = bool(log_headers)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        method = scope.get("method", "")
        path = scope.get("path", "")
        headers = {
            k.decode("latin1").lower(): v.decode("latin1")
            for k, v in (scope.get("headers") or [])
        }
        rid = ensure_request_id(headers)
        bind_request_meta(path=path, method=method)

        if self.log_headers:
            self.log.info("http.start", extra={"headers": scrub_dict(headers)})

        t0 = time.perf_counter()
        status_holder = {"code": None}
        bytes_out_holder = {"n": 0}
        bytes_in = 0

        async def _send_wrapper(message):
            if message["type"] == "http.response.start":
                status_holder["code"] = message.get("status")
            if message["type"] == "http.response.body":
                bytes_out_holder["n"] += len(message.get("body", b"") or b"")
            await send(message)

        async def _recv_wrapper():
            nonlocal bytes_in
            msg = await receive()
            if msg["type"] == "http.request":
                bytes_in += len(msg.get("body", b"") or b"")
            return msg

        try:
            await self.app(scope, _recv_wrapper, _send_wrapper)
        finally:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            self.log.info(
                "http.finish",
                extra={
                    "req_id": rid,
                    "path": path,
                    "method": method,
                    "status": status_holder["code"],
                    "latency_ms": round(dt_ms, 3),
                    "bytes_in": bytes_in,
                    "bytes_out": bytes_out_holder["n"],
                },
            )
            reset()


# ---------- Convenience: module-level logger ----------
_configured = False


def get_logger(name: str = "trustgate") -> logging.Logger:
    """
    Return a logger; first call installs the JSON handler on root.
    """
    global _configured
    if not _configured:
        configure_json_logging(level=os.environ.get("TG_LOG_LEVEL", "INFO"))
        _configured = True
    return logging.getLogger(name)


__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "configure_json_logging",
    "get_logger",
    "ensure_request_id",
    "bind_request_meta",
    "log_security_event",
    "JSONFormatter",
    "RequestLogMiddleware",
    "scrub_dict",
]
