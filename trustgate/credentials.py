# FILE: trustgate/credentials.py
from __future__ import annotations

import asyncio
import re
import secrets
from dataclasses import dataclass
from typing import List, Optional, Tuple

import pyotp
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from .utils import any_compare, random_digits, random_token, sha256_hex

# ---------------------------------------------------------------------------
# Passwords (argon2id)
# ---------------------------------------------------------------------------


class PasswordService:
    """
    argon2id password hashing with per-install cost parameters.

    verify() never raises for a wrong password or a malformed stored hash;
    callers map False to `invalid-credentials`. The async variants run the
    hash in a worker thread so the event loop keeps serving.
    """

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4):
        self._ph = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Burned on unknown identities so both paths cost one argon2 verify.
        self._dummy_hash = self._ph.hash(secrets.token_urlsafe(16))

    @classmethod
    def from_settings(cls, settings) -> "PasswordService":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hash(self, password: str) -> str:
        return self._ph.hash(password)

    def verify(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash:
            try:
                self._ph.verify(self._dummy_hash, password or "")
            except VerificationError:
                pass
            return False
        try:
            return self._ph.verify(stored_hash, password or "")
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._ph.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    async def a_hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hash, password)

    async def a_verify(self, stored_hash: Optional[str], password: str) -> bool:
        return await asyncio.to_thread(self.verify, stored_hash, password)

    def unusable_password(self) -> str:
        """A hash of random material; used for accounts created via OAuth."""
        return self._ph.hash(secrets.token_urlsafe(48))


# ---------------------------------------------------------------------------
# TOTP
# ---------------------------------------------------------------------------


def new_totp_secret() -> str:
    return pyotp.random_base32()


def totp_uri(secret: str, account: str, issuer: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=account, issuer_name=issuer)


def verify_totp(secret: Optional[str], code: Optional[str], *, for_time: Optional[float] = None) -> bool:
    """6-digit TOTP with a drift tolerance of one step either side."""
    if not secret or not code:
        return False
    code = re.sub(r"\s+", "", str(code))
    if not re.fullmatch(r"\d{6}", code):
        return False
    totp = pyotp.TOTP(secret)
    if for_time is None:
        return bool(totp.verify(code, valid_window=1))
    return bool(totp.verify(code, for_time=int(for_time), valid_window=1))


# ---------------------------------------------------------------------------
# Backup codes
# ---------------------------------------------------------------------------

_BACKUP_DOMAIN = "tg:backup"


def _normalize_backup(code: str) -> Optional[str]:
    raw = re.sub(r"[^A-Za-z0-9]", "", code or "").upper()
    if len(raw) != 8:
        return None
    return f"{raw[:4]}-{raw[4:]}"


def hash_backup_code(code: str) -> str:
    norm = _normalize_backup(code) or ""
    return sha256_hex(norm, domain=_BACKUP_DOMAIN)


def generate_backup_codes(count: int = 10) -> Tuple[List[str], List[str]]:
    """Return (plain codes for the user, hashes for storage). Codes are XXXX-XXXX hex."""
    plain: List[str] = []
    for _ in range(int(count)):
        raw = secrets.token_hex(4).upper()
        plain.append(f"{raw[:4]}-{raw[4:]}")
    return plain, [hash_backup_code(c) for c in plain]


def match_backup_code(code: str, hashes: List[str]) -> Optional[str]:
    """Return the stored hash matching `code`, if any. The caller removes it."""
    if _normalize_backup(code) is None:
        return None
    return any_compare(hash_backup_code(code), hashes)


# ---------------------------------------------------------------------------
# One-time secrets stored by hash (email codes, link tokens, 2FA challenges)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IssuedSecret:
    plain: str
    digest: str
    expires_at: float


def issue_link_token(now: float, ttl_s: float, *, domain: str) -> IssuedSecret:
    """32 random bytes, hex; only the digest is persisted."""
    tok = random_token(32)
    return IssuedSecret(tok, sha256_hex(tok, domain=domain), now + float(ttl_s))


def issue_email_code(now: float, ttl_s: float) -> IssuedSecret:
    code = random_digits(6)
    return IssuedSecret(code, sha256_hex(code, domain="tg:email-code"), now + float(ttl_s))


def digest_link_token(token: str, *, domain: str) -> str:
    return sha256_hex(token or "", domain=domain)


def digest_email_code(code: str) -> str:
    return sha256_hex(re.sub(r"\s+", "", code or ""), domain="tg:email-code")


# Domain labels for link tokens.
VERIFY_DOMAIN = "tg:verify-email"
RESET_DOMAIN = "tg:reset-password"
EMAIL_CHANGE_DOMAIN = "tg:email-change"
CHALLENGE_DOMAIN = "tg:2fa-challenge"


__all__ = [
    "PasswordService",
    "new_totp_secret",
    "totp_uri",
    "verify_totp",
    "generate_backup_codes",
    "hash_backup_code",
    "match_backup_code",
    "IssuedSecret",
    "issue_link_token",
    "issue_email_code",
    "digest_link_token",
    "digest_email_code",
    "VERIFY_DOMAIN",
    "RESET_DOMAIN",
    "EMAIL_CHANGE_DOMAIN",
    "CHALLENGE_DOMAIN",
]
