# FILE: trustgate/tokens.py
from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from jwcrypto import jwk, jwt
from jwcrypto.common import JWException

from .config import MIN_SECRET_BYTES
from .errors import ConfigError, ErrorKind, TrustError
from .kv import KVStore
from .logging import log_security_event
from .storage import AsyncUserStore, User

logger = logging.getLogger(__name__)

_ALG = "HS256"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str

    def to_wire(self) -> Dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
        }


class TokenSigner:
    """
    HS256 JWT signer/verifier for one token type ("access" or "refresh").

    Access and refresh tokens use different secrets and carry a `typ` claim,
    so neither can stand in for the other.
    """

    def __init__(
        self,
        secret: str,
        *,
        typ: str,
        ttl_s: int,
        issuer: str = "trustgate",
        clock: Optional[Callable[[], float]] = None,
    ):
        if not secret:
            raise ConfigError("token secret must not be empty")
        if len(secret.encode("utf-8")) < MIN_SECRET_BYTES:
            raise ConfigError(f"token secret must be at least {MIN_SECRET_BYTES} bytes")
        self._key = jwk.JWK.from_password(secret)
        self.typ = typ
        self.ttl_s = int(ttl_s)
        self.issuer = issuer
        self._clock = clock or time.time

    def sign(self, claims: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        now = int(self._clock())
        body = dict(claims)
        body.update(
            {
                "iss": self.issuer,
                "iat": now,
                "exp": now + self.ttl_s,
                "typ": self.typ,
                "jti": body.get("jti") or uuid.uuid4().hex,
            }
        )
        tok = jwt.JWT(header={"alg": _ALG, "typ": "JWT"}, claims=body)
        tok.make_signed_token(self._key)
        return tok.serialize(), body

    def decode(self, token: Optional[str]) -> Dict[str, Any]:
        """Verify signature, type, issuer and expiry; raise `invalid-token` otherwise."""
        if not token or not isinstance(token, str) or token.count(".") != 2:
            raise TrustError(ErrorKind.INVALID_TOKEN)
        try:
            t = jwt.JWT(
                key=self._key,
                jwt=token,
                expected_type="JWS",
                algs=[_ALG],
                check_claims=False,
            )
            claims = json.loads(t.claims)
        except (JWException, ValueError, TypeError):
            raise TrustError(ErrorKind.INVALID_TOKEN)

        if not isinstance(claims, dict):
            raise TrustError(ErrorKind.INVALID_TOKEN)
        if claims.get("typ") != self.typ or claims.get("iss") != self.issuer:
            raise TrustError(ErrorKind.INVALID_TOKEN)
        exp = int(claims.get("exp", 0) or 0)
        if not exp or int(self._clock()) >= exp:
            raise TrustError(ErrorKind.INVALID_TOKEN, "Token expired")
        if not claims.get("sub"):
            raise TrustError(ErrorKind.INVALID_TOKEN)
        return claims


class TokenService:
    """
    Access/refresh token lifecycle.

      - Access tokens carry {sub, role, epoch}; they verify only while the
        user's token epoch still equals the claim.
      - Refresh tokens are live only while refresh:<jti> exists in the KV.
        Rotation pops that key, so exactly one caller can spend a refresh.
        Spending a refresh that is no longer live while its epoch and its
        session are still current is treated as theft: the epoch is bumped.
      - Each refresh belongs to a session on the user record; at most
        `max_sessions` are kept, the oldest are evicted and revoked.
    """

    def __init__(
        self,
        kv: KVStore,
        users: AsyncUserStore,
        *,
        access_secret: str,
        refresh_secret: str,
        access_ttl_s: int = 900,
        refresh_ttl_s: int = 7 * 24 * 3600,
        issuer: str = "trustgate",
        max_sessions: int = 5,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._kv = kv
        self._users = users
        self._clock = clock or time.time
        self.access = TokenSigner(
            access_secret, typ="access", ttl_s=min(900, int(access_ttl_s)), issuer=issuer, clock=self._clock
        )
        self.refresh = TokenSigner(
            refresh_secret, typ="refresh", ttl_s=refresh_ttl_s, issuer=issuer, clock=self._clock
        )
        self.max_sessions = int(max_sessions)

    @classmethod
    def from_settings(cls, kv: KVStore, users: AsyncUserStore, settings, **kw: Any) -> "TokenService":
        return cls(
            kv,
            users,
            access_secret=settings.access_token_secret,
            refresh_secret=settings.refresh_token_secret,
            access_ttl_s=settings.access_token_ttl_s,
            refresh_ttl_s=settings.refresh_token_ttl_s,
            issuer=settings.token_issuer,
            max_sessions=settings.max_sessions_per_user,
            **kw,
        )

    @staticmethod
    def _rkey(jti: str) -> str:
        return f"refresh:{jti}"

    # ------------------------------------------------------------------ #
    # Issue
    # ------------------------------------------------------------------ #

    async def issue_pair(
        self,
        user_id: str,
        *,
        device: Optional[str] = None,
        ip: Optional[str] = None,
        session_id: Optional[str] = None,
        mutate: Optional[Callable[[User], None]] = None,
    ) -> TokenPair:
        """
        Mint an access/refresh pair for the user's current epoch and role.

        With `session_id` the existing session is continued (rotation);
        otherwise a new session is opened. `mutate` is applied in the same
        write as the session bookkeeping (login history, challenge cleanup).
        """
        sid = session_id or uuid.uuid4().hex
        jti = uuid.uuid4().hex
        now = self._clock()
        expires_at = now + self.refresh.ttl_s
        max_sessions = self.max_sessions

        def _apply(u: User) -> Tuple[int, str, List[str]]:
            if mutate is not None:
                mutate(u)
            live = [s for s in u.sessions if float(s.get("expires_at") or 0) > now]
            evicted: List[str] = [s["jti"] for s in u.sessions if s not in live and s.get("jti")]
            existing = next((s for s in live if s.get("id") == sid), None)
            if existing is not None:
                if existing.get("jti"):
                    evicted.append(existing["jti"])
                existing.update({"jti": jti, "last_used": now, "expires_at": expires_at, "ip": ip})
            else:
                live.append(
                    {
                        "id": sid,
                        "jti": jti,
                        "device": device,
                        "ip": ip,
                        "created_at": now,
                        "last_used": now,
                        "expires_at": expires_at,
                    }
                )
            while len(live) > max_sessions:
                old = live.pop(0)
                if old.get("jti"):
                    evicted.append(old["jti"])
            u.sessions = live
            return u.token_epoch, u.role, evicted

        epoch, role, evicted = await self._users.mutate(user_id, _apply)

        access, _ = self.access.sign({"sub": user_id, "role": role, "epoch": epoch, "sid": sid})
        refresh, _ = self.refresh.sign({"sub": user_id, "epoch": epoch, "sid": sid, "jti": jti})
        await self._kv.set(
            self._rkey(jti),
            {"sub": user_id, "sid": sid, "epoch": epoch},
            ttl=self.refresh.ttl_s,
        )
        if evicted:
            await self._kv.delete_many(self._rkey(j) for j in evicted)
        return TokenPair(access, refresh, self.access.ttl_s, sid)

    # ------------------------------------------------------------------ #
    # Verify
    # ------------------------------------------------------------------ #

    async def authenticate(self, access_token: Optional[str]) -> Tuple[User, Dict[str, Any]]:
        claims = self.access.decode(access_token)
        user = await self._users.get(str(claims["sub"]))
        if user is None:
            raise TrustError(ErrorKind.INVALID_TOKEN)
        if int(claims.get("epoch", -1)) != int(user.token_epoch):
            raise TrustError(ErrorKind.TOKEN_REVOKED)
        return user, claims

    # ------------------------------------------------------------------ #
    # Rotate / revoke
    # ------------------------------------------------------------------ #

    async def rotate(
        self,
        refresh_token: Optional[str],
        *,
        device: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        claims = self.refresh.decode(refresh_token)
        user_id = str(claims["sub"])
        record = await self._kv.pop(self._rkey(str(claims.get("jti"))))
        if record is None:
            await self._on_reuse(
                user_id,
                int(claims.get("epoch", -1)),
                str(claims.get("sid")),
                ip=ip,
                user_agent=user_agent,
            )
            raise TrustError(ErrorKind.INVALID_TOKEN)

        user = await self._users.get(user_id)
        if user is None or int(claims.get("epoch", -1)) != int(user.token_epoch):
            raise TrustError(ErrorKind.INVALID_TOKEN)
        return await self.issue_pair(user_id, device=device, ip=ip, session_id=str(claims.get("sid")))

    async def _on_reuse(
        self,
        user_id: str,
        epoch: int,
        sid: str,
        *,
        ip: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        user = await self._users.get(user_id)
        if user is None or int(user.token_epoch) != epoch:
            return
        # Only a live session whose refresh has moved on counts as reuse.
        if not any(s.get("id") == sid for s in user.sessions):
            return
        log_security_event(
            logger,
            event="refresh_reuse",
            client_ip=ip,
            user_agent=user_agent,
            reason="rotated_refresh_presented",
            extra={"user": user_id},
        )
        await self.revoke_all(user_id)

    async def revoke(self, refresh_token: Optional[str]) -> bool:
        """Revoke one refresh token (logout). Unknown or invalid tokens are ignored."""
        try:
            claims = self.refresh.decode(refresh_token)
        except TrustError:
            return False
        jti = str(claims.get("jti"))
        await self._kv.delete(self._rkey(jti))

        def _drop(u: User) -> None:
            u.sessions = [s for s in u.sessions if s.get("jti") != jti]

        try:
            await self._users.mutate(str(claims["sub"]), _drop)
        except TrustError as e:
            if e.kind is not ErrorKind.NOT_FOUND:
                raise
        return True

    async def revoke_all(self, user_id: str, *, mutate: Optional[Callable[[User], None]] = None) -> int:
        """
        Bump the token epoch and drop every session.

        `mutate` lets a caller fold its own change (new password, new role,
        new email) into the same atomic write.
        """

        def _apply(u: User) -> Tuple[int, List[str]]:
            if mutate is not None:
                mutate(u)
            jtis = [s["jti"] for s in u.sessions if s.get("jti")]
            u.sessions = []
            return u.bump_epoch(), jtis

        epoch, jtis = await self._users.mutate(user_id, _apply)
        if jtis:
            await self._kv.delete_many(self._rkey(j) for j in jtis)
        return epoch

    async def revoke_session(self, user_id: str, session_id: str) -> bool:
        def _apply(u: User) -> Optional[str]:
            hit = next((s for s in u.sessions if s.get("id") == session_id), None)
            if hit is None:
                return None
            u.sessions = [s for s in u.sessions if s.get("id") != session_id]
            return hit.get("jti") or ""

        jti = await self._users.mutate(user_id, _apply)
        if jti is None:
            return False
        if jti:
            await self._kv.delete(self._rkey(jti))
        return True

    def list_sessions(self, user: User, *, current_sid: Optional[str] = None) -> List[Dict[str, Any]]:
        now = self._clock()
        out = []
        for s in user.sessions:
            if float(s.get("expires_at") or 0) <= now:
                continue
            out.append(
                {
                    "id": s.get("id"),
                    "device": s.get("device"),
                    "ip": s.get("ip"),
                    "createdAt": s.get("created_at"),
                    "lastUsed": s.get("last_used"),
                    "expiresAt": s.get("expires_at"),
                    "current": bool(current_sid and s.get("id") == current_sid),
                }
            )
        return out


__all__ = ["TokenPair", "TokenSigner", "TokenService"]
