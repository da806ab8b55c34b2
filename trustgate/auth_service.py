# FILE: trustgate/auth_service.py
"""
Credential flows behind the /auth and /users routes.

Every method here is a pipeline handler: it receives a RequestContext whose
inputs are already sanitized, rate-limited, CSRF-checked and authenticated
according to the route's TrustPolicy, and returns an Outcome. Failures are
raised as TrustError and rendered by the composer.

Multi-step record changes go through a single `mutate` (or through
TokenService.issue_pair / revoke_all with a folded-in mutation) so a
cancelled request never leaves a half-applied user record.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Callable, Dict, Optional

from .credentials import (
    CHALLENGE_DOMAIN,
    EMAIL_CHANGE_DOMAIN,
    RESET_DOMAIN,
    VERIFY_DOMAIN,
    PasswordService,
    digest_email_code,
    digest_link_token,
    generate_backup_codes,
    issue_email_code,
    issue_link_token,
    match_backup_code,
    new_totp_secret,
    totp_uri,
    verify_totp,
)
from .errors import ErrorKind, TrustError
from .logging import log_security_event
from .metrics import record_auth_event
from .notify import Mailer
from .oauth import OAuthVerifier, ProviderIdentity
from .pipeline import Outcome, RequestContext
from .storage import AsyncUserStore, User, new_user_id, normalize_email
from .tokens import TokenService
from .utils import iso_utc, secure_compare_hex

logger = logging.getLogger(__name__)

REGISTERED_MESSAGE = "User registered successfully. Please verify your email."
FORGOT_MESSAGE = "If the email exists, a reset link has been sent."


def _profile(user: User) -> Dict[str, Any]:
    view = user.public_view()
    view.update(
        {
            "profilePicture": user.profile_picture,
            "twoFactorEnabled": user.two_factor_enabled,
            "lastLogin": iso_utc(user.last_login),
            "createdAt": iso_utc(user.created_at),
        }
    )
    return view


class AuthService:
    def __init__(
        self,
        *,
        settings,
        users: AsyncUserStore,
        tokens: TokenService,
        passwords: PasswordService,
        mailer: Mailer,
        oauth: Optional[OAuthVerifier] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.settings = settings
        self.users = users
        self.tokens = tokens
        self.passwords = passwords
        self.mailer = mailer
        self.oauth = oauth or OAuthVerifier.from_settings(settings)
        self._clock = clock or time.time

    # ------------------------------------------------------------------ #
    # Shared steps
    # ------------------------------------------------------------------ #

    def _locked_error(self, user: User, now: float) -> TrustError:
        until = user.account_locked_until
        retry = int(math.ceil(until - now)) if until else None
        return TrustError(
            ErrorKind.LOCKED,
            "Account is locked. Please try again later.",
            retry_after=retry,
            details={"lockedUntil": iso_utc(until)},
        )

    async def _rehash(self, user: User, password: str) -> None:
        """Upgrade a hash made with weaker argon2 parameters."""
        old = user.password_hash
        new = await self.passwords.a_hash(password)

        def _apply(u: User) -> None:
            if u.password_hash == old:
                u.password_hash = new

        await self.users.mutate(user.id, _apply)
        logger.info("user.password_rehashed", extra={"user_id": user.id})

    async def _finish_login(
        self,
        ctx: RequestContext,
        user: User,
        *,
        extra: Optional[Callable[[User], None]] = None,
        event: str = "login_success",
    ) -> Outcome:
        """Open a session: history, last-active, lock reset and the token pair in one write."""
        now = self._clock()
        limit = self.settings.login_history_limit

        def _apply(u: User) -> None:
            if extra is not None:
                extra(u)
            u.account_locked = False
            u.account_locked_until = None
            u.last_login = now
            u.last_active = now
            u.append_login(ts=now, ip=ctx.client_ip, user_agent=ctx.user_agent, success=True, limit=limit)

        pair = await self.tokens.issue_pair(user.id, device=ctx.user_agent, ip=ctx.client_ip, mutate=_apply)
        record_auth_event(event)
        data = {"user": user.public_view()}
        data.update(pair.to_wire())
        return Outcome(data=data)

    async def _start_challenge(self, user: User) -> Outcome:
        now = self._clock()
        s = self.settings
        challenge = issue_link_token(now, s.two_factor_challenge_ttl_s, domain=CHALLENGE_DOMAIN)
        code = issue_email_code(now, s.email_code_ttl_s)

        def _apply(u: User) -> None:
            u.two_factor_temp_hash = challenge.digest
            u.two_factor_temp_expires = challenge.expires_at
            u.two_factor_attempts = 0
            u.email_code_hash = code.digest
            u.email_code_expires = code.expires_at

        await self.users.mutate(user.id, _apply)
        await self.mailer.send_two_factor_code(user.email, code.plain)
        record_auth_event("2fa_challenge")
        return Outcome(
            data={"requiresTwoFactor": True, "userId": user.id, "tempToken": challenge.plain},
            message="Two-factor authentication required",
        )

    async def _load_challenge(self, user_id: str, temp_token: str) -> User:
        user = await self.users.get(user_id)
        now = self._clock()
        digest = digest_link_token(temp_token, domain=CHALLENGE_DOMAIN)
        if (
            user is None
            or not user.two_factor_temp_hash
            or not secure_compare_hex(digest, user.two_factor_temp_hash)
            or (user.two_factor_temp_expires or 0) <= now
        ):
            raise TrustError(ErrorKind.INVALID_TOKEN, "Invalid or expired two-factor challenge")
        return user

    async def _require_password(self, user: User, password: str, message: str = "Invalid password") -> None:
        if not await self.passwords.a_verify(user.password_hash, password):
            raise TrustError(ErrorKind.INVALID_CREDENTIALS, message)

    async def _current(self, ctx: RequestContext) -> User:
        """Fresh copy of the authenticated user's record."""
        user = await self.users.get(ctx.user_id or "")
        if user is None:
            raise TrustError(ErrorKind.INVALID_TOKEN)
        return user

    # ------------------------------------------------------------------ #
    # Registration and e-mail verification
    # ------------------------------------------------------------------ #

    async def register(self, ctx: RequestContext) -> Outcome:
        d = ctx.data
        email = normalize_email(d.email)
        now = self._clock()
        existing = await self.users.get_by_email(email)
        if existing is not None:
            if not existing.verified:
                await self._issue_verification(existing)
            raise TrustError(ErrorKind.DUPLICATE_IDENTITY)

        pw_hash = await self.passwords.a_hash(d.password)
        tok = issue_link_token(now, self.settings.verification_token_ttl_s, domain=VERIFY_DOMAIN)
        user = await self.users.create(
            User(
                id=new_user_id(),
                email=email,
                password_hash=pw_hash,
                first_name=d.firstName,
                last_name=d.lastName,
                verification_token_hash=tok.digest,
                verification_expires=tok.expires_at,
                created_at=now,
                password_changed_at=now,
            )
        )
        await self.mailer.send_verification(user.email, tok.plain, first_name=user.first_name)
        pair = await self.tokens.issue_pair(user.id, device=ctx.user_agent, ip=ctx.client_ip)
        record_auth_event("register")
        data = {"user": user.public_view()}
        data.update(pair.to_wire())
        return Outcome(data=data, message=REGISTERED_MESSAGE, status=201)

    async def _issue_verification(self, user: User) -> None:
        tok = issue_link_token(self._clock(), self.settings.verification_token_ttl_s, domain=VERIFY_DOMAIN)

        def _apply(u: User) -> None:
            u.verification_token_hash = tok.digest
            u.verification_expires = tok.expires_at

        await self.users.mutate(user.id, _apply)
        await self.mailer.send_verification(user.email, tok.plain, first_name=user.first_name)

    async def verify_email(self, ctx: RequestContext) -> Outcome:
        token = str(ctx.path_params.get("token") or "")
        digest = digest_link_token(token, domain=VERIFY_DOMAIN)
        user = await self.users.find_by_token("verification_token_hash", digest)
        if user is None:
            if await self.users.find_by_token("verification_used_hash", digest) is not None:
                return Outcome(message="Email already verified")
            raise TrustError(ErrorKind.INVALID_TOKEN, "Invalid or expired verification token")
        if (user.verification_expires or 0) <= self._clock():
            raise TrustError(ErrorKind.INVALID_TOKEN, "Invalid or expired verification token")

        def _apply(u: User) -> None:
            if u.verification_token_hash != digest:
                raise TrustError(ErrorKind.INVALID_TOKEN, "Invalid or expired verification token")
            u.verified = True
            u.verification_used_hash = digest
            u.verification_token_hash = None
            u.verification_expires = None

        await self.users.mutate(user.id, _apply)
        record_auth_event("email_verified")
        return Outcome(message="Email verified successfully")

    async def resend_verification(self, ctx: RequestContext) -> Outcome:
        user = await self._current(ctx)
        if user.verified:
            raise TrustError(ErrorKind.CONFLICT, "Email already verified")
        await self._issue_verification(user)
        return Outcome(message="Verification email sent")

    # ------------------------------------------------------------------ #
    # Password recovery
    # ------------------------------------------------------------------ #

    async def forgot_password(self, ctx: RequestContext) -> Outcome:
        user = await self.users.get_by_email(ctx.data.email)
        if user is not None:
            tok = issue_link_token(self._clock(), self.settings.reset_token_ttl_s, domain=RESET_DOMAIN)

            def _apply(u: User) -> None:
                u.reset_token_hash = tok.digest
                u.reset_expires = tok.expires_at

            await self.users.mutate(user.id, _apply)
            await self.mailer.send_password_reset(user.email, tok.plain)
        return Outcome(message=FORGOT_MESSAGE)

    async def reset_password(self, ctx: RequestContext) -> Outcome:
        token = str(ctx.path_params.get("token") or "")
        digest = digest_link_token(token, domain=RESET_DOMAIN)
        user = await self.users.find_by_token("reset_token_hash", digest)
        now = self._clock()
        if user is None or (user.reset_expires or 0) <= now:
            raise TrustError(ErrorKind.INVALID_TOKEN, "Invalid or expired reset token")
        pw_hash = await self.passwords.a_hash(ctx.data.password)

        def _apply(u: User) -> None:
            if u.reset_token_hash != digest:
                raise TrustError(ErrorKind.INVALID_TOKEN, "Invalid or expired reset token")
            u.password_hash = pw_hash
            u.password_changed_at = now
            u.reset_token_hash = None
            u.reset_expires = None
            u.account_locked = False
            u.account_locked_until = None

        await self.tokens.revoke_all(user.id, mutate=_apply)
        await self.mailer.send_account_activity(user.email, "password reset")
        record_auth_event("password_reset")
        return Outcome(message="Password has been reset successfully")

    # ------------------------------------------------------------------ #
    # Login and second factor
    # ------------------------------------------------------------------ #

    async def login(self, ctx: RequestContext) -> Outcome:
        d = ctx.data
        now = self._clock()
        user = await self.users.get_by_email(d.email)
        if user is None:
            await self.passwords.a_verify(None, d.password)
            record_auth_event("login_failed")
            raise TrustError(ErrorKind.INVALID_CREDENTIALS, "Invalid email or password")
        if user.is_locked(now):
            raise self._locked_error(user, now)

        if not await self.passwords.a_verify(user.password_hash, d.password):
            limit = self.settings.login_history_limit

            def _failed(u: User) -> None:
                u.append_login(ts=now, ip=ctx.client_ip, user_agent=ctx.user_agent, success=False, limit=limit)

            await self.users.mutate(user.id, _failed)
            record_auth_event("login_failed")
            raise TrustError(ErrorKind.INVALID_CREDENTIALS, "Invalid email or password")

        if self.passwords.needs_rehash(user.password_hash):
            await self._rehash(user, d.password)

        ctx.login_succeeded = True
        if user.two_factor_enabled:
            return await self._start_challenge(user)
        return await self._finish_login(ctx, user)

    async def on_lock(self, email: str, client_ip: str, user_agent: Optional[str], locked_until: float) -> None:
        """Write-through of a login-throttle lock to the user record."""
        user = await self.users.get_by_email(email)
        if user is None:
            return
        limit = self.settings.login_history_limit
        now = self._clock()

        def _apply(u: User) -> None:
            u.account_locked = True
            u.account_locked_until = max(float(u.account_locked_until or 0), float(locked_until))
            u.append_login(ts=now, ip=client_ip, user_agent=user_agent, success=False, limit=limit)

        await self.users.mutate(user.id, _apply)
        await self.mailer.send_account_activity(
            user.email,
            "account locked after repeated failed sign-ins",
            details={"lockedUntil": iso_utc(locked_until)},
        )

    async def verify_2fa(self, ctx: RequestContext) -> Outcome:
        d = ctx.data
        user = await self._load_challenge(d.userId, d.tempToken)
        now = self._clock()
        code = d.code
        challenge = user.two_factor_temp_hash

        method = None
        backup_hash = None
        if verify_totp(user.two_factor_secret, code, for_time=now):
            method = "totp"
        elif (
            user.email_code_hash
            and (user.email_code_expires or 0) > now
            and secure_compare_hex(digest_email_code(code), user.email_code_hash)
        ):
            method = "email"
        else:
            backup_hash = match_backup_code(code, user.backup_codes)
            if backup_hash is not None:
                method = "backup"

        if method is None:
            cap = self.settings.two_factor_max_attempts

            def _miss(u: User) -> bool:
                if u.two_factor_temp_hash != challenge:
                    return True
                u.two_factor_attempts = int(u.two_factor_attempts) + 1
                if u.two_factor_attempts >= cap:
                    u.two_factor_temp_hash = None
                    u.two_factor_temp_expires = None
                    u.email_code_hash = None
                    u.email_code_expires = None
                    u.two_factor_attempts = 0
                    return True
                return False

            exhausted = await self.users.mutate(user.id, _miss)
            log_security_event(
                logger,
                event="2fa_failed",
                client_ip=ctx.client_ip,
                user_agent=ctx.user_agent,
                reason="challenge_exhausted" if exhausted else "invalid_code",
                extra={"user": user.id},
            )
            record_auth_event("2fa_failed")
            if exhausted:
                raise TrustError(ErrorKind.INVALID_CREDENTIALS, "Too many invalid codes. Please sign in again.")
            raise TrustError(ErrorKind.INVALID_CREDENTIALS, "Invalid verification code")

        def _consume(u: User) -> None:
            if u.two_factor_temp_hash != challenge:
                raise TrustError(ErrorKind.INVALID_TOKEN, "Invalid or expired two-factor challenge")
            if method == "backup":
                if backup_hash not in u.backup_codes:
                    raise TrustError(ErrorKind.INVALID_CREDENTIALS, "Invalid verification code")
                u.backup_codes = [h for h in u.backup_codes if h != backup_hash]
            u.two_factor_temp_hash = None
            u.two_factor_temp_expires = None
            u.two_factor_attempts = 0
            u.email_code_hash = None
            u.email_code_expires = None

        return await self._finish_login(ctx, user, extra=_consume, event=f"2fa_{method}")

    async def send_email_code(self, ctx: RequestContext) -> Outcome:
        d = ctx.data
        user = await self._load_challenge(d.userId, d.tempToken)
        code = issue_email_code(self._clock(), self.settings.email_code_ttl_s)
        challenge = user.two_factor_temp_hash

        def _apply(u: User) -> None:
            if u.two_factor_temp_hash != challenge:
                raise TrustError(ErrorKind.INVALID_TOKEN, "Invalid or expired two-factor challenge")
            u.email_code_hash = code.digest
            u.email_code_expires = code.expires_at

        await self.users.mutate(user.id, _apply)
        await self.mailer.send_two_factor_code(user.email, code.plain)
        return Outcome(message="Verification code sent")

    # ------------------------------------------------------------------ #
    # Token lifecycle
    # ------------------------------------------------------------------ #

    async def refresh(self, ctx: RequestContext) -> Outcome:
        pair = await self.tokens.rotate(
            ctx.data.refreshToken,
            device=ctx.user_agent,
            ip=ctx.client_ip,
            user_agent=ctx.user_agent,
        )
        record_auth_event("refresh")
        return Outcome(data=pair.to_wire())

    async def logout(self, ctx: RequestContext) -> Outcome:
        token = ctx.data.refreshToken if ctx.data is not None else None
        if token:
            await self.tokens.revoke(token)
        record_auth_event("logout")
        return Outcome(status=204)

    async def logout_all(self, ctx: RequestContext) -> Outcome:
        await self.tokens.revoke_all(ctx.user_id)
        record_auth_event("logout_all")
        return Outcome(message="Logged out from all devices")

    async def list_sessions(self, ctx: RequestContext) -> Outcome:
        user = await self._current(ctx)
        sid = (ctx.principal.claims or {}).get("sid")
        return Outcome(data={"sessions": self.tokens.list_sessions(user, current_sid=sid)})

    async def revoke_session(self, ctx: RequestContext) -> Outcome:
        if not await self.tokens.revoke_session(ctx.user_id, str(ctx.path_params.get("id") or "")):
            raise TrustError(ErrorKind.NOT_FOUND, "Session not found")
        return Outcome(message="Session revoked")

    # ------------------------------------------------------------------ #
    # 2FA lifecycle
    # ------------------------------------------------------------------ #

    async def setup_2fa(self, ctx: RequestContext) -> Outcome:
        user = await self._current(ctx)
        if user.two_factor_enabled:
            raise TrustError(ErrorKind.CONFLICT, "Two-factor authentication is already enabled")
        secret = new_totp_secret()

        def _apply(u: User) -> None:
            u.two_factor_pending_secret = secret

        await self.users.mutate(user.id, _apply)
        return Outcome(
            data={"secret": secret, "otpauthUrl": totp_uri(secret, user.email, self.settings.totp_issuer)},
            message="Scan the code with your authenticator app, then confirm with a code",
        )

    async def enable_2fa(self, ctx: RequestContext) -> Outcome:
        user = await self._current(ctx)
        if user.two_factor_enabled:
            raise TrustError(ErrorKind.CONFLICT, "Two-factor authentication is already enabled")
        pending = user.two_factor_pending_secret
        if not pending:
            raise TrustError(ErrorKind.VALIDATION, "Two-factor setup has not been started")
        if not verify_totp(pending, ctx.data.code, for_time=self._clock()):
            raise TrustError(ErrorKind.INVALID_CREDENTIALS, "Invalid verification code")
        plain, hashes = generate_backup_codes(self.settings.backup_code_count)

        def _apply(u: User) -> None:
            if u.two_factor_pending_secret != pending:
                raise TrustError(ErrorKind.CONFLICT, "Two-factor setup changed; start again")
            u.two_factor_secret = pending
            u.two_factor_pending_secret = None
            u.two_factor_enabled = True
            u.backup_codes = hashes

        await self.users.mutate(user.id, _apply)
        await self.mailer.send_account_activity(user.email, "two-factor authentication enabled")
        record_auth_event("2fa_enabled")
        return Outcome(data={"backupCodes": plain}, message="Two-factor authentication enabled")

    async def disable_2fa(self, ctx: RequestContext) -> Outcome:
        user = await self._current(ctx)
        if not user.two_factor_enabled:
            raise TrustError(ErrorKind.CONFLICT, "Two-factor authentication is not enabled")
        d = ctx.data
        await self._require_password(user, d.password)
        if not verify_totp(user.two_factor_secret, d.code, for_time=self._clock()):
            raise TrustError(ErrorKind.INVALID_CREDENTIALS, "Invalid verification code")

        def _apply(u: User) -> None:
            u.two_factor_enabled = False
            u.two_factor_secret = None
            u.two_factor_pending_secret = None
            u.backup_codes = []
            u.two_factor_temp_hash = None
            u.two_factor_temp_expires = None
            u.email_code_hash = None
            u.email_code_expires = None

        await self.tokens.revoke_all(user.id, mutate=_apply)
        await self.mailer.send_account_activity(user.email, "two-factor authentication disabled")
        record_auth_event("2fa_disabled")
        return Outcome(message="Two-factor authentication disabled")

    async def regenerate_backup_codes(self, ctx: RequestContext) -> Outcome:
        user = await self._current(ctx)
        if not user.two_factor_enabled:
            raise TrustError(ErrorKind.CONFLICT, "Two-factor authentication is not enabled")
        if not verify_totp(user.two_factor_secret, ctx.data.code, for_time=self._clock()):
            raise TrustError(ErrorKind.INVALID_CREDENTIALS, "Invalid verification code")
        plain, hashes = generate_backup_codes(self.settings.backup_code_count)

        def _apply(u: User) -> None:
            u.backup_codes = hashes

        await self.users.mutate(user.id, _apply)
        return Outcome(data={"backupCodes": plain}, message="Backup codes regenerated")

    async def status_2fa(self, ctx: RequestContext) -> Outcome:
        user = await self._current(ctx)
        return Outcome(
            data={
                "enabled": user.two_factor_enabled,
                "pendingSetup": bool(user.two_factor_pending_secret),
                "backupCodesRemaining": len(user.backup_codes),
            }
        )

    # ------------------------------------------------------------------ #
    # E-mail change
    # ------------------------------------------------------------------ #

    async def change_email(self, ctx: RequestContext) -> Outcome:
        user = await self._current(ctx)
        d = ctx.data
        await self._require_password(user, d.password)
        new_email = normalize_email(d.newEmail)
        if new_email == user.email:
            raise TrustError(ErrorKind.VALIDATION, "New email must differ from the current one")
        if await self.users.get_by_email(new_email) is not None:
            raise TrustError(ErrorKind.DUPLICATE_IDENTITY, "Email already in use")
        tok = issue_link_token(self._clock(), self.settings.email_change_token_ttl_s, domain=EMAIL_CHANGE_DOMAIN)

        def _apply(u: User) -> None:
            u.pending_email = new_email
            u.email_change_token_hash = tok.digest
            u.email_change_expires = tok.expires_at

        await self.users.mutate(user.id, _apply)
        await self.mailer.send_email_change(new_email, tok.plain)
        await self.mailer.send_account_activity(user.email, "e-mail change requested")
        return Outcome(message="Verification email sent to the new address")

    async def verify_email_change(self, ctx: RequestContext) -> Outcome:
        token = str(ctx.path_params.get("token") or "")
        digest = digest_link_token(token, domain=EMAIL_CHANGE_DOMAIN)
        user = await self.users.find_by_token("email_change_token_hash", digest)
        if user is None or not user.pending_email or (user.email_change_expires or 0) <= self._clock():
            raise TrustError(ErrorKind.INVALID_TOKEN, "Invalid or expired email change token")

        def _apply(u: User) -> None:
            if u.email_change_token_hash != digest or not u.pending_email:
                raise TrustError(ErrorKind.INVALID_TOKEN, "Invalid or expired email change token")
            u.email = u.pending_email
            u.pending_email = None
            u.email_change_token_hash = None
            u.email_change_expires = None
            u.verified = True

        await self.tokens.revoke_all(user.id, mutate=_apply)
        record_auth_event("email_changed")
        return Outcome(message="Email updated successfully")

    # ------------------------------------------------------------------ #
    # OAuth
    # ------------------------------------------------------------------ #

    async def google(self, ctx: RequestContext) -> Outcome:
        identity = await self.oauth.verify_google(ctx.data.idToken)
        return await self._oauth_login(ctx, identity)

    async def facebook(self, ctx: RequestContext) -> Outcome:
        identity = await self.oauth.verify_facebook(ctx.data.accessToken)
        return await self._oauth_login(ctx, identity)

    async def _oauth_login(self, ctx: RequestContext, identity: ProviderIdentity) -> Outcome:
        now = self._clock()
        user = await self.users.get_by_email(identity.email)
        if user is None:
            pw_hash = await asyncio.to_thread(self.passwords.unusable_password)
            user = await self.users.create(
                User(
                    id=new_user_id(),
                    email=identity.email,
                    password_hash=pw_hash,
                    first_name=identity.first_name,
                    last_name=identity.last_name,
                    verified=True,
                    oauth={identity.provider: identity.subject},
                    profile_picture=identity.picture,
                    created_at=now,
                )
            )
            record_auth_event(f"oauth_register_{identity.provider}")
        else:
            if user.is_locked(now):
                raise self._locked_error(user, now)
            linked = user.oauth.get(identity.provider)
            if linked and linked != identity.subject:
                raise TrustError(ErrorKind.INVALID_CREDENTIALS, "Account is linked to a different provider identity")

            def _link(u: User) -> None:
                u.oauth[identity.provider] = identity.subject
                u.verified = True
                if not u.profile_picture and identity.picture:
                    u.profile_picture = identity.picture

            await self.users.mutate(user.id, _link)

        if user.two_factor_enabled:
            return await self._start_challenge(user)
        return await self._finish_login(ctx, user, event=f"oauth_{identity.provider}")

    # ------------------------------------------------------------------ #
    # /users
    # ------------------------------------------------------------------ #

    async def get_profile(self, ctx: RequestContext) -> Outcome:
        user = await self._current(ctx)
        return Outcome(data={"user": _profile(user)})

    async def update_profile(self, ctx: RequestContext) -> Outcome:
        d = ctx.data
        now = self._clock()

        def _apply(u: User) -> User:
            if d.firstName is not None:
                u.first_name = d.firstName
            if d.lastName is not None:
                u.last_name = d.lastName
            if d.profileUrl is not None:
                u.profile_picture = d.profileUrl or None
            u.last_active = now
            return u

        user = await self.users.mutate(ctx.user_id, _apply)
        return Outcome(data={"user": _profile(user)}, message="Profile updated successfully")

    async def activity(self, ctx: RequestContext) -> Outcome:
        user = await self._current(ctx)
        history = [
            {
                "timestamp": iso_utc(h.get("timestamp")),
                "ip": h.get("ip"),
                "userAgent": h.get("userAgent"),
                "success": bool(h.get("success")),
            }
            for h in reversed(user.login_history)
        ]
        return Outcome(
            data={
                "loginHistory": history,
                "lastLogin": iso_utc(user.last_login),
                "lastActive": iso_utc(user.last_active),
            }
        )

    async def change_password(self, ctx: RequestContext) -> Outcome:
        user = await self._current(ctx)
        d = ctx.data
        await self._require_password(user, d.currentPassword, "Current password is incorrect")
        pw_hash = await self.passwords.a_hash(d.newPassword)
        now = self._clock()

        def _apply(u: User) -> None:
            u.password_hash = pw_hash
            u.password_changed_at = now

        await self.tokens.revoke_all(user.id, mutate=_apply)
        await self.mailer.send_account_activity(user.email, "password changed")
        record_auth_event("password_changed")
        return Outcome(message="Password changed successfully. Please log in again.")

    async def delete_account(self, ctx: RequestContext) -> Outcome:
        user = await self._current(ctx)
        await self._require_password(user, ctx.data.password)
        await self.tokens.revoke_all(user.id)
        await self.users.delete(user.id)
        record_auth_event("account_deleted")
        return Outcome(message="Account deleted")

    async def get_user(self, ctx: RequestContext) -> Outcome:
        user = await self.users.get(str(ctx.path_params.get("id") or ""))
        if user is None:
            raise TrustError(ErrorKind.NOT_FOUND, "User not found")
        return Outcome(data={"user": user.public_view()})

    async def set_role(self, ctx: RequestContext) -> Outcome:
        target = str(ctx.path_params.get("id") or "")
        role = ctx.data.role

        def _apply(u: User) -> None:
            u.role = role

        await self.tokens.revoke_all(target, mutate=_apply)
        logger.info("user.role_changed", extra={"target": target, "role": role, "by": ctx.user_id})
        record_auth_event("role_changed")
        user = await self.users.get(target)
        return Outcome(data={"user": user.public_view() if user else None}, message="Role updated")


__all__ = ["AuthService", "REGISTERED_MESSAGE", "FORGOT_MESSAGE"]
