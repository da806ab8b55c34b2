# trustgate/config.py
from __future__ import annotations

import json
import logging
import os
import secrets
import threading
from typing import Any, Dict, FrozenSet, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict

from .errors import ConfigError
from .utils import canonical_json_dumps, sha256_hex


_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip()


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return tuple(x.strip() for x in raw.split(",") if x.strip())


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a top-level mapping from YAML.

    Constraints:
      - Ignore if path missing.
      - Only accept dict at top-level.
    """
    if not path:
        return {}
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    return {str(k): v for k, v in doc.items()}


# Fields that never leave the process (excluded from config_hash and logs).
_SECRET_FIELDS: FrozenSet[str] = frozenset(
    {
        "access_token_secret",
        "refresh_token_secret",
        "google_client_secret",
        "facebook_app_secret",
        "api_keys",
    }
)

# HS256 token secrets; jwcrypto refuses shorter keys.
MIN_SECRET_BYTES = 32


# ---------------------------------------------------------------------------
# Settings model (single immutable snapshot)
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Core / identity --------------------------------------------------

    environment: str = "development"  # "development" | "production"
    version: str = "0.3.0"
    app_name: str = "trustgate"
    log_level: str = "INFO"
    enable_docs: bool = False

    # --- Backends ---------------------------------------------------------

    # "memory" or redis://... / rediss://...
    kv_dsn: str = "memory"
    # "memory" or sqlite:///path/to/users.db
    user_store_dsn: str = "memory"

    # --- Timeouts (seconds) -----------------------------------------------

    request_timeout_s: float = 30.0
    db_timeout_s: float = 10.0
    kv_timeout_s: float = 1.0
    kv_retry_backoff_s: float = 0.05

    # --- Tokens -----------------------------------------------------------

    access_token_secret: str = ""
    refresh_token_secret: str = ""
    access_token_ttl_s: int = 900
    refresh_token_ttl_s: int = 7 * 24 * 3600
    token_issuer: str = "trustgate"
    max_sessions_per_user: int = 5

    # --- Password hashing (argon2id) --------------------------------------

    argon2_time_cost: int = 3
    argon2_memory_cost: int = 65536
    argon2_parallelism: int = 4
    password_min_length: int = 6

    # --- Lifetimes --------------------------------------------------------

    verification_token_ttl_s: int = 24 * 3600
    reset_token_ttl_s: int = 3600
    email_change_token_ttl_s: int = 24 * 3600
    two_factor_challenge_ttl_s: int = 600
    two_factor_max_attempts: int = 5
    email_code_ttl_s: int = 600
    backup_code_count: int = 10
    totp_issuer: str = "CashHeros"
    login_history_limit: int = 50

    # --- Rate classes (window seconds / max) ------------------------------

    rate_global_window_s: int = 15 * 60
    rate_global_max: int = 100
    rate_api_window_s: int = 3600
    rate_api_max: int = 1000
    rate_auth_window_s: int = 3600
    rate_auth_max_production: int = 20
    rate_auth_max_development: int = 100
    rate_sensitive_window_s: int = 3600
    rate_sensitive_max: int = 5
    login_max_attempts: int = 5
    login_window_s: int = 3600
    login_lockout_s: int = 30 * 60
    rate_gc_interval_s: int = 300

    # --- Client address handling ------------------------------------------

    respect_xff: bool = False
    trusted_proxies: Tuple[str, ...] = ()

    # --- CSRF -------------------------------------------------------------

    csrf_cookie_name: str = "csrfToken"
    csrf_header_name: str = "X-CSRF-Token"
    csrf_body_field: str = "_csrf"
    csrf_ttl_s: int = 24 * 3600
    csrf_same_site: str = "lax"
    csrf_rotate: bool = True
    csrf_bind_session: bool = True
    client_kind_header: str = "X-Client-Kind"

    # --- Response cache ---------------------------------------------------

    cache_default_ttl_s: int = 3600

    # --- API keys ---------------------------------------------------------

    # service name -> key
    api_keys: Dict[str, str] = {}
    api_key_hourly_limit: int = 1000

    # --- OAuth ------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    facebook_app_id: str = ""
    facebook_app_secret: str = ""
    oauth_timeout_s: float = 5.0

    # --- HTTP edge --------------------------------------------------------

    cors_origins: Tuple[str, ...] = (
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    )
    max_body_bytes: int = 1 * 1024 * 1024
    frontend_url: str = "http://localhost:3000"

    # Fields preserved by ReloadableSettings.refresh()/set().
    immutable_fields: FrozenSet[str] = frozenset(
        {
            "environment",
            "access_token_secret",
            "refresh_token_secret",
            "kv_dsn",
            "user_store_dsn",
        }
    )

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod")

    @property
    def rate_auth_max(self) -> int:
        if self.is_production:
            return self.rate_auth_max_production
        return self.rate_auth_max_development

    def public_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        for k in _SECRET_FIELDS:
            data.pop(k, None)
        return data

    def config_hash(self) -> str:
        """
        Stable hash of the non-secret settings.

        Safe to expose in headers and logs; secrets are excluded.
        """
        return sha256_hex(canonical_json_dumps(self.public_dict()), domain="tg:settings")[:16]


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def _ensure_secrets(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fill missing token secrets with per-process random values outside
    production; refuse to start in production without them.
    Configured secrets shorter than MIN_SECRET_BYTES are always refused.
    """
    prod = str(data.get("environment", "")).lower() in ("production", "prod")
    for key in ("access_token_secret", "refresh_token_secret"):
        if data.get(key):
            if len(str(data[key]).encode("utf-8")) < MIN_SECRET_BYTES:
                raise ConfigError(f"{key} must be at least {MIN_SECRET_BYTES} bytes")
            continue
        if prod:
            raise ConfigError(f"{key} must be configured in production")
        _log.warning("%s not configured; using an ephemeral per-process secret", key)
        data[key] = secrets.token_urlsafe(48)
    return data


def _load_settings() -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by TG_CONFIG_PATH.
      3. Environment variables (TG_*), with bounds.
    """
    merged: Dict[str, Any] = Settings().model_dump()

    # 1) YAML overlay
    yaml_path = os.environ.get("TG_CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = Settings(**tmp).model_dump()  # extra="forbid" rejects typos

    # 2) Environment overrides

    def _bounded(name: str, key: str, parser, lo=None, hi=None) -> None:
        new = parser(name, merged[key])
        if lo is not None and new < lo:
            return
        if hi is not None and new > hi:
            return
        merged[key] = new

    merged["environment"] = _env_str("TG_ENV", merged["environment"])
    merged["version"] = _env_str("TG_VERSION", merged["version"])
    merged["log_level"] = _env_str("TG_LOG_LEVEL", merged["log_level"])
    merged["enable_docs"] = _env_bool("TG_ENABLE_DOCS", merged["enable_docs"])

    merged["kv_dsn"] = _env_str("TG_KV_DSN", merged["kv_dsn"])
    merged["user_store_dsn"] = _env_str("TG_USER_STORE_DSN", merged["user_store_dsn"])

    _bounded("TG_REQUEST_TIMEOUT_S", "request_timeout_s", _env_float, 0.1, 600.0)
    _bounded("TG_DB_TIMEOUT_S", "db_timeout_s", _env_float, 0.05, 120.0)
    _bounded("TG_KV_TIMEOUT_S", "kv_timeout_s", _env_float, 0.01, 30.0)

    merged["access_token_secret"] = _env_str("TG_ACCESS_TOKEN_SECRET", merged["access_token_secret"])
    merged["refresh_token_secret"] = _env_str("TG_REFRESH_TOKEN_SECRET", merged["refresh_token_secret"])
    # Access tokens are capped at 15 minutes.
    _bounded("TG_ACCESS_TOKEN_TTL_S", "access_token_ttl_s", _env_int, 30, 900)
    _bounded("TG_REFRESH_TOKEN_TTL_S", "refresh_token_ttl_s", _env_int, 600, 90 * 24 * 3600)

    _bounded("TG_ARGON2_TIME_COST", "argon2_time_cost", _env_int, 1, 20)
    _bounded("TG_ARGON2_MEMORY_COST", "argon2_memory_cost", _env_int, 1024, 4 * 1024 * 1024)
    _bounded("TG_ARGON2_PARALLELISM", "argon2_parallelism", _env_int, 1, 64)

    _bounded("TG_RATE_GLOBAL_MAX", "rate_global_max", _env_int, 1)
    _bounded("TG_RATE_API_MAX", "rate_api_max", _env_int, 1)
    _bounded("TG_RATE_AUTH_MAX_PRODUCTION", "rate_auth_max_production", _env_int, 1)
    _bounded("TG_RATE_AUTH_MAX_DEVELOPMENT", "rate_auth_max_development", _env_int, 1)
    _bounded("TG_RATE_SENSITIVE_MAX", "rate_sensitive_max", _env_int, 1)
    _bounded("TG_RATE_GC_INTERVAL_S", "rate_gc_interval_s", _env_int, 1, 15 * 60)

    merged["respect_xff"] = _env_bool("TG_RESPECT_XFF", merged["respect_xff"])
    merged["trusted_proxies"] = _env_list("TG_TRUSTED_PROXIES", tuple(merged["trusted_proxies"]))

    same_site = _env_str("TG_CSRF_SAME_SITE", merged["csrf_same_site"]).lower()
    if same_site in ("lax", "strict", "none"):
        merged["csrf_same_site"] = same_site
    merged["csrf_rotate"] = _env_bool("TG_CSRF_ROTATE", merged["csrf_rotate"])
    merged["csrf_bind_session"] = _env_bool("TG_CSRF_BIND_SESSION", merged["csrf_bind_session"])

    _bounded("TG_CACHE_DEFAULT_TTL_S", "cache_default_ttl_s", _env_int, 1, 7 * 24 * 3600)

    raw_keys = os.environ.get("TG_API_KEYS", "").strip()
    if raw_keys:
        try:
            parsed = json.loads(raw_keys)
        except ValueError:
            _log.warning("TG_API_KEYS is not valid JSON; ignoring")
        else:
            if isinstance(parsed, dict):
                merged["api_keys"] = {str(k): str(v) for k, v in parsed.items()}
    _bounded("TG_API_KEY_HOURLY_LIMIT", "api_key_hourly_limit", _env_int, 1)

    merged["google_client_id"] = _env_str("TG_GOOGLE_CLIENT_ID", merged["google_client_id"])
    merged["google_client_secret"] = _env_str("TG_GOOGLE_CLIENT_SECRET", merged["google_client_secret"])
    merged["facebook_app_id"] = _env_str("TG_FACEBOOK_APP_ID", merged["facebook_app_id"])
    merged["facebook_app_secret"] = _env_str("TG_FACEBOOK_APP_SECRET", merged["facebook_app_secret"])

    merged["cors_origins"] = _env_list("TG_CORS_ORIGINS", tuple(merged["cors_origins"]))
    merged["frontend_url"] = _env_str("TG_FRONTEND_URL", merged["frontend_url"])

    return Settings(**_ensure_secrets(merged))


# ---------------------------------------------------------------------------
# Reloadable wrapper
# ---------------------------------------------------------------------------


class ReloadableSettings:
    """
    Thread-safe wrapper around Settings with controlled refresh/override.

    Properties:
      - get(): returns an immutable Settings snapshot.
      - refresh(): reloads, preserving immutable_fields (secrets, backends).
      - set(): in-memory overrides with the same constraint.
    """

    def __init__(self, initial: Optional[Settings] = None) -> None:
        self._lock = threading.RLock()
        self._settings = initial or _load_settings()

    def get(self) -> Settings:
        with self._lock:
            return self._settings

    def refresh(self) -> Settings:
        with self._lock:
            old = self._settings
            new_data = _load_settings().model_dump()
            for key in old.immutable_fields:
                new_data[key] = getattr(old, key)
            new_data["immutable_fields"] = old.immutable_fields
            self._settings = Settings(**new_data)
            return self._settings

    def set(self, **overrides: Any) -> Settings:
        with self._lock:
            current = self._settings
            data = current.model_dump()
            for key, value in overrides.items():
                if key not in data:
                    continue
                if key in current.immutable_fields or key == "immutable_fields":
                    _log.warning("ignoring override of immutable setting %s", key)
                    continue
                data[key] = value
            self._settings = Settings(**data)
            return self._settings


def make_reloadable_settings(initial: Optional[Settings] = None) -> ReloadableSettings:
    """
    Factory used by the HTTP layer.
    """
    return ReloadableSettings(initial)


def settings_for_tests(**overrides: Any) -> Settings:
    """
    Build a development snapshot with fixed secrets and cheap hashing.
    """
    base: Dict[str, Any] = {
        "environment": "development",
        "access_token_secret": "test-access-secret-0123456789abcdef",
        "refresh_token_secret": "test-refresh-secret-0123456789abcdef",
        "argon2_time_cost": 1,
        "argon2_memory_cost": 1024,
        "argon2_parallelism": 1,
    }
    base.update(overrides)
    return Settings(**base)
