# FILE: trustgate/tests/test_oauth.py
import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from trustgate.config import settings_for_tests
from trustgate.errors import ErrorKind, TrustError
from trustgate.oauth import OAuthVerifier
from trustgate.service_http import create_app

GOOGLE_INFO = {
    "aud": "client-1",
    "sub": "g-123",
    "email": "g@x.io",
    "email_verified": "true",
    "given_name": "Gia",
    "family_name": "Ro",
    "picture": "https://img.example/g.png",
}


def _google_transport(payload, status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/tokeninfo"
        assert request.url.params["id_token"] == "id-tok"
        return httpx.Response(status, json=payload)

    return httpx.MockTransport(handler)


def _facebook_transport(*, valid=True, app_id="fb-app"):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/oauth/access_token":
            return httpx.Response(200, json={"access_token": "app-token"})
        if path == "/debug_token":
            assert request.url.params["access_token"] == "app-token"
            return httpx.Response(200, json={"data": {"is_valid": valid, "user_id": "fb-9", "app_id": app_id}})
        if path == "/v13.0/fb-9":
            return httpx.Response(
                200,
                json={
                    "id": "fb-9",
                    "email": "f@x.io",
                    "first_name": "Fay",
                    "picture": {"data": {"url": "https://img.example/f.png"}},
                },
            )
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def _verifier(transport):
    return OAuthVerifier(
        google_client_id="client-1",
        facebook_app_id="fb-app",
        facebook_app_secret="fb-secret",
        transport=transport,
    )


def test_verify_google():
    ident = asyncio.run(_verifier(_google_transport(GOOGLE_INFO)).verify_google("id-tok"))
    assert ident.provider == "google"
    assert ident.subject == "g-123"
    assert ident.email == "g@x.io"
    assert ident.first_name == "Gia"


@pytest.mark.parametrize(
    "payload,status",
    [
        ({**GOOGLE_INFO, "aud": "someone-else"}, 200),
        ({**GOOGLE_INFO, "email_verified": "false"}, 200),
        ({"error": "invalid_token"}, 400),
    ],
)
def test_verify_google_rejects(payload, status):
    v = _verifier(_google_transport(payload, status))
    with pytest.raises(TrustError) as ei:
        asyncio.run(v.verify_google("id-tok"))
    assert ei.value.kind is ErrorKind.INVALID_CREDENTIALS


def test_verify_google_not_configured():
    v = OAuthVerifier(transport=_google_transport(GOOGLE_INFO))
    with pytest.raises(TrustError) as ei:
        asyncio.run(v.verify_google("id-tok"))
    assert ei.value.kind is ErrorKind.INVALID_CREDENTIALS


def test_verify_facebook():
    ident = asyncio.run(_verifier(_facebook_transport()).verify_facebook("user-tok"))
    assert ident.provider == "facebook"
    assert ident.email == "f@x.io"
    assert ident.picture == "https://img.example/f.png"


def test_verify_facebook_rejects_other_apps_and_invalid_tokens():
    for transport in (_facebook_transport(valid=False), _facebook_transport(app_id="other")):
        with pytest.raises(TrustError) as ei:
            asyncio.run(_verifier(transport).verify_facebook("user-tok"))
        assert ei.value.kind is ErrorKind.INVALID_CREDENTIALS


def _client(kv, store, mailer, clock, transport):
    app = create_app(
        settings_for_tests(),
        kv=kv,
        user_store=store,
        mailer=mailer,
        clock=clock,
        oauth=_verifier(transport),
    )
    return TestClient(app)


def test_google_sign_in_creates_verified_user(kv, store, mailer, clock):
    client = _client(kv, store, mailer, clock, _google_transport(GOOGLE_INFO))
    r = client.post("/auth/google", json={"idToken": "id-tok"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["accessToken"] and data["refreshToken"]
    user = store.get_by_email("g@x.io")
    assert user.verified is True
    assert user.oauth == {"google": "g-123"}

    # Second sign-in reuses the account.
    assert client.post("/auth/google", json={"idToken": "id-tok"}).status_code == 200
    assert store.count() == 1


def test_google_sign_in_links_existing_account(kv, store, mailer, clock):
    client = _client(kv, store, mailer, clock, _google_transport(GOOGLE_INFO))
    client.post("/auth/register", json={"email": "g@x.io", "password": "hunter22"})
    r = client.post("/auth/google", json={"idToken": "id-tok"})
    assert r.status_code == 200
    user = store.get_by_email("g@x.io")
    assert user.oauth["google"] == "g-123"
    assert user.verified is True


def test_facebook_sign_in(kv, store, mailer, clock):
    client = _client(kv, store, mailer, clock, _facebook_transport())
    r = client.post("/auth/facebook", json={"accessToken": "user-tok"})
    assert r.status_code == 200
    assert store.get_by_email("f@x.io").profile_picture == "https://img.example/f.png"


def test_oauth_failure_is_invalid_credentials(kv, store, mailer, clock):
    client = _client(kv, store, mailer, clock, _google_transport({"error": "bad"}, 400))
    r = client.post("/auth/google", json={"idToken": "id-tok"})
    assert r.status_code == 401
    assert r.json()["error"]["kind"] == "invalid-credentials"
    assert store.count() == 0
