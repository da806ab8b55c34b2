# FILE: trustgate/schemas.py
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class _Body(BaseModel):
    # Unknown fields are dropped rather than rejected; the sanitizer has
    # already scrubbed keys by the time a model sees the body.
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


# =============================================================================
# Registration / verification / recovery
# =============================================================================


class RegisterIn(_Body):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=256)
    firstName: str = Field("", max_length=100)
    lastName: str = Field("", max_length=100)


class EmailIn(_Body):
    email: EmailStr


class ResetPasswordIn(_Body):
    password: str = Field(..., min_length=6, max_length=256)


# =============================================================================
# Login / second factor / tokens
# =============================================================================


class LoginIn(_Body):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=256)


class Verify2faIn(_Body):
    userId: str = Field(..., min_length=1, max_length=64)
    tempToken: str = Field(..., min_length=1, max_length=256)
    code: str = Field(..., min_length=6, max_length=16, description="TOTP, e-mail code or backup code")


class ChallengeIn(_Body):
    userId: str = Field(..., min_length=1, max_length=64)
    tempToken: str = Field(..., min_length=1, max_length=256)


class RefreshIn(_Body):
    refreshToken: str = Field(..., min_length=1)


class LogoutIn(_Body):
    refreshToken: Optional[str] = None


class TotpIn(_Body):
    code: str = Field(..., min_length=6, max_length=16)


class Disable2faIn(_Body):
    password: str = Field(..., min_length=1, max_length=256)
    code: str = Field(..., min_length=6, max_length=16)


# =============================================================================
# Account management
# =============================================================================


class ChangeEmailIn(_Body):
    newEmail: EmailStr
    password: str = Field(..., min_length=1, max_length=256)


class ChangePasswordIn(_Body):
    currentPassword: str = Field(..., min_length=1, max_length=256)
    newPassword: str = Field(..., min_length=6, max_length=256)


class ProfileIn(_Body):
    firstName: Optional[str] = Field(None, max_length=100)
    lastName: Optional[str] = Field(None, max_length=100)
    profileUrl: Optional[str] = Field(None, max_length=2048)


class DeleteAccountIn(_Body):
    password: str = Field(..., min_length=1, max_length=256)


class RoleIn(_Body):
    role: str = Field(..., pattern=r"^(regular|support|moderator|admin)$")


# =============================================================================
# OAuth
# =============================================================================


class GoogleIn(_Body):
    idToken: str = Field(..., min_length=1)


class FacebookIn(_Body):
    accessToken: str = Field(..., min_length=1)


# =============================================================================
# Catalogue / cache admin
# =============================================================================


class CatalogItemIn(_Body):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field("", max_length=20000)
    url: Optional[str] = Field(None, max_length=2048)
    attributes: Dict[str, Any] = Field(default_factory=dict)


class CachePatternIn(_Body):
    pattern: str = Field(..., min_length=1, max_length=512)


__all__ = [
    "RegisterIn",
    "EmailIn",
    "ResetPasswordIn",
    "LoginIn",
    "Verify2faIn",
    "ChallengeIn",
    "RefreshIn",
    "LogoutIn",
    "TotpIn",
    "Disable2faIn",
    "ChangeEmailIn",
    "ChangePasswordIn",
    "ProfileIn",
    "DeleteAccountIn",
    "RoleIn",
    "GoogleIn",
    "FacebookIn",
    "CatalogItemIn",
    "CachePatternIn",
]
