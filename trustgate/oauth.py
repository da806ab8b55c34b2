# FILE: trustgate/oauth.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .errors import ErrorKind, TrustError

_logger = logging.getLogger(__name__)

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
FACEBOOK_GRAPH_URL = "https://graph.facebook.com"
FACEBOOK_API_VERSION = "v13.0"


@dataclass(frozen=True)
class ProviderIdentity:
    provider: str
    subject: str
    email: str
    first_name: str = ""
    last_name: str = ""
    picture: Optional[str] = None
    email_verified: bool = False


class OAuthVerifier:
    """
    Verifies provider-issued credentials over HTTPS.

    Google ID tokens go through the token-info endpoint (audience must be our
    client id, email_verified must be true). Facebook access tokens go through
    debug_token with an app token, then the profile is fetched. Any provider
    or transport failure becomes `invalid-credentials`.

    `transport` lets tests plug in an httpx.MockTransport.
    """

    def __init__(
        self,
        *,
        google_client_id: str = "",
        facebook_app_id: str = "",
        facebook_app_secret: str = "",
        timeout_s: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.google_client_id = google_client_id
        self.facebook_app_id = facebook_app_id
        self.facebook_app_secret = facebook_app_secret
        self.timeout_s = float(timeout_s)
        self._transport = transport

    @classmethod
    def from_settings(cls, settings, **kw: Any) -> "OAuthVerifier":
        return cls(
            google_client_id=settings.google_client_id,
            facebook_app_id=settings.facebook_app_id,
            facebook_app_secret=settings.facebook_app_secret,
            timeout_s=settings.oauth_timeout_s,
            **kw,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s), transport=self._transport)

    async def _get_json(self, client: httpx.AsyncClient, url: str, params: Dict[str, str], provider: str) -> Dict[str, Any]:
        try:
            r = await client.get(url, params=params)
        except httpx.HTTPError as e:
            _logger.warning("oauth.transport_error", extra={"provider": provider, "error": type(e).__name__})
            raise TrustError(ErrorKind.INVALID_CREDENTIALS, f"Invalid {provider} token")
        if r.status_code != 200:
            _logger.info("oauth.rejected", extra={"provider": provider, "status": r.status_code})
            raise TrustError(ErrorKind.INVALID_CREDENTIALS, f"Invalid {provider} token")
        try:
            data = r.json()
        except ValueError:
            raise TrustError(ErrorKind.INVALID_CREDENTIALS, f"Invalid {provider} token")
        if not isinstance(data, dict):
            raise TrustError(ErrorKind.INVALID_CREDENTIALS, f"Invalid {provider} token")
        return data

    async def verify_google(self, id_token: Optional[str]) -> ProviderIdentity:
        if not id_token:
            raise TrustError(ErrorKind.VALIDATION, "Google ID token is required")
        if not self.google_client_id:
            raise TrustError(ErrorKind.INVALID_CREDENTIALS, "Google sign-in is not configured")
        async with self._client() as client:
            data = await self._get_json(client, GOOGLE_TOKENINFO_URL, {"id_token": id_token}, "Google")

        if data.get("aud") != self.google_client_id:
            raise TrustError(ErrorKind.INVALID_CREDENTIALS, "Invalid Google token")
        verified = str(data.get("email_verified", "")).lower() == "true"
        if not verified or not data.get("email") or not data.get("sub"):
            raise TrustError(ErrorKind.INVALID_CREDENTIALS, "Google account e-mail is not verified")
        return ProviderIdentity(
            provider="google",
            subject=str(data["sub"]),
            email=str(data["email"]),
            first_name=str(data.get("given_name") or ""),
            last_name=str(data.get("family_name") or ""),
            picture=data.get("picture"),
            email_verified=True,
        )

    async def verify_facebook(self, access_token: Optional[str]) -> ProviderIdentity:
        if not access_token:
            raise TrustError(ErrorKind.VALIDATION, "Facebook access token is required")
        if not (self.facebook_app_id and self.facebook_app_secret):
            raise TrustError(ErrorKind.INVALID_CREDENTIALS, "Facebook sign-in is not configured")
        async with self._client() as client:
            app = await self._get_json(
                client,
                f"{FACEBOOK_GRAPH_URL}/oauth/access_token",
                {
                    "client_id": self.facebook_app_id,
                    "client_secret": self.facebook_app_secret,
                    "grant_type": "client_credentials",
                },
                "Facebook",
            )
            debug = await self._get_json(
                client,
                f"{FACEBOOK_GRAPH_URL}/debug_token",
                {"input_token": access_token, "access_token": str(app.get("access_token") or "")},
                "Facebook",
            )
            info = debug.get("data") or {}
            if not info.get("is_valid") or not info.get("user_id"):
                raise TrustError(ErrorKind.INVALID_CREDENTIALS, "Invalid Facebook token")
            if info.get("app_id") and str(info["app_id"]) != str(self.facebook_app_id):
                raise TrustError(ErrorKind.INVALID_CREDENTIALS, "Invalid Facebook token")
            profile = await self._get_json(
                client,
                f"{FACEBOOK_GRAPH_URL}/{FACEBOOK_API_VERSION}/{info['user_id']}",
                {"fields": "id,email,first_name,last_name,picture", "access_token": access_token},
                "Facebook",
            )

        if not profile.get("email") or not profile.get("id"):
            raise TrustError(ErrorKind.INVALID_CREDENTIALS, "Facebook account has no e-mail")
        picture = ((profile.get("picture") or {}).get("data") or {}).get("url")
        return ProviderIdentity(
            provider="facebook",
            subject=str(profile["id"]),
            email=str(profile["email"]),
            first_name=str(profile.get("first_name") or ""),
            last_name=str(profile.get("last_name") or ""),
            picture=picture,
            email_verified=True,
        )


__all__ = ["ProviderIdentity", "OAuthVerifier", "GOOGLE_TOKENINFO_URL", "FACEBOOK_GRAPH_URL"]
