# FILE: trustgate/utils.py
from __future__ import annotations

import hashlib
import hmac
import ipaddress
import json
import secrets
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

# ---------------------------------------------------------------------------
# Canonical JSON + hashing helpers
# ---------------------------------------------------------------------------


def canonical_json_dumps(obj: Any, *, ensure_ascii: bool = False) -> str:
    """
    Serialize `obj` to a canonical JSON string (sorted keys, compact separators).

    Used for config hashing and for the sorted-query part of cache keys, so
    equal inputs always produce byte-equal output.
    """
    return json.dumps(
        obj,
        ensure_ascii=ensure_ascii,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def sha256_hex(data: Any, *, domain: Optional[str] = None) -> str:
    """
    SHA-256 hex digest of a str/bytes value, optionally domain-separated.

    Token material (reset, verification, backup codes, 2FA challenges) is only
    ever stored through this digest.
    """
    h = hashlib.sha256()
    if domain:
        h.update(b"domain:")
        h.update(domain.encode("utf-8"))
        h.update(b"\x00")
    if isinstance(data, (bytes, bytearray)):
        h.update(bytes(data))
    else:
        h.update(str(data).encode("utf-8"))
    return h.hexdigest()


def secure_compare(a: Optional[str], b: Optional[str]) -> bool:
    """Constant-time string comparison; None never matches."""
    if not isinstance(a, str) or not isinstance(b, str):
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def secure_compare_hex(a: str, b: str) -> bool:
    if not isinstance(a, str) or not isinstance(b, str):
        return False
    return hmac.compare_digest(a.lower(), b.lower())


def any_compare(candidate: str, options: Iterable[str]) -> Optional[str]:
    """
    Return the option equal to `candidate`, comparing every entry in constant
    time so the position of a match does not leak.
    """
    found: Optional[str] = None
    for opt in options:
        if secure_compare_hex(candidate, opt) and found is None:
            found = opt
    return found


def random_token(nbytes: int = 32) -> str:
    """Hex-encoded random token (32 bytes -> 64 hex chars)."""
    return secrets.token_hex(nbytes)


def random_digits(n: int = 6) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(n))


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def iso_utc(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    dt = datetime.fromtimestamp(float(ts), tz=timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Network helpers
# ---------------------------------------------------------------------------


def anonymize_ip(ip: str) -> str:
    """
    Best-effort IP anonymization for security logging.

    Keeps a coarse prefix and masks the rest.
    """
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return "*"

    if addr.version == 4:
        parts = ip.split(".")
        return ".".join(parts[:3] + ["x"])
    pieces = addr.compressed.split(":")
    if len(pieces) >= 3:
        return ":".join(pieces[:3]) + ":*"
    return "*"


def client_ip_from_scope(
    client_host: Optional[str],
    xff: Optional[str],
    *,
    respect_xff: bool,
    trusted_proxies: Iterable[str] = (),
    depth_limit: int = 3,
) -> str:
    """
    Determine client IP, honoring X-Forwarded-For only from trusted proxies.
    """
    ip = client_host or "unknown"
    if not respect_xff or not xff:
        return ip
    if ip not in set(trusted_proxies):
        return ip
    parts = [p.strip() for p in xff.split(",") if p.strip()]
    if not parts:
        return ip
    depth = max(1, depth_limit)
    return parts[min(len(parts) - 1, depth - 1)]


__all__ = [
    "canonical_json_dumps",
    "sha256_hex",
    "secure_compare",
    "secure_compare_hex",
    "any_compare",
    "random_token",
    "random_digits",
    "iso_utc",
    "anonymize_ip",
    "client_ip_from_scope",
]
