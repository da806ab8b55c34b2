# FILE: trustgate/tests/test_csrf.py
import asyncio

import pytest
from starlette.responses import Response

from trustgate.csrf import CsrfService, is_safe_method, session_id_from
from trustgate.errors import ErrorKind, TrustError


def _reason(excinfo):
    assert excinfo.value.kind is ErrorKind.CSRF
    return excinfo.value.details["reason"]


def test_issue_then_verify_once(kv, clock):
    csrf = CsrfService(kv, clock=clock)

    async def body():
        tok = await csrf.issue()
        assert len(tok) == 64
        await csrf.verify(cookie_token=tok, submitted_token=tok)
        with pytest.raises(TrustError) as ei:
            await csrf.verify(cookie_token=tok, submitted_token=tok)
        assert _reason(ei) == "Invalid or expired CSRF token"

    asyncio.run(body())


def test_concurrent_verifies_spend_the_token_once(kv, clock):
    csrf = CsrfService(kv, clock=clock)

    async def body():
        tok = await csrf.issue()
        return await asyncio.gather(
            csrf.verify(cookie_token=tok, submitted_token=tok),
            csrf.verify(cookie_token=tok, submitted_token=tok),
            return_exceptions=True,
        )

    results = asyncio.run(body())
    assert results.count(None) == 1
    (err,) = [r for r in results if r is not None]
    assert isinstance(err, TrustError)
    assert err.kind is ErrorKind.CSRF


def test_cookie_and_submitted_must_match(kv, clock):
    csrf = CsrfService(kv, clock=clock)

    async def body():
        tok = await csrf.issue()
        with pytest.raises(TrustError) as ei:
            await csrf.verify(cookie_token=tok, submitted_token=None)
        assert _reason(ei) == "Missing CSRF token"
        with pytest.raises(TrustError) as ei:
            await csrf.verify(cookie_token=tok, submitted_token="x" + tok[1:])
        assert _reason(ei) == "CSRF token mismatch"
        # A mismatch does not spend the token.
        await csrf.verify(cookie_token=tok, submitted_token=tok)

    asyncio.run(body())


def test_token_expires(kv, clock):
    csrf = CsrfService(kv, ttl_s=60, clock=clock)

    async def body():
        tok = await csrf.issue()
        clock.advance(61)
        with pytest.raises(TrustError) as ei:
            await csrf.verify(cookie_token=tok, submitted_token=tok)
        assert _reason(ei) == "Invalid or expired CSRF token"

    asyncio.run(body())


def test_session_binding(kv, clock):
    csrf = CsrfService(kv, clock=clock)
    unbound = CsrfService(kv, bind_session=False, clock=clock)

    async def body():
        tok = await csrf.issue("s1")
        with pytest.raises(TrustError) as ei:
            await csrf.verify(cookie_token=tok, submitted_token=tok, session_id="s2")
        assert _reason(ei) == "CSRF token session mismatch"

        tok = await csrf.issue("s1")
        await csrf.verify(cookie_token=tok, submitted_token=tok, session_id="s1")

        tok = await unbound.issue("s1")
        assert (await kv.get(f"csrf:{tok}"))["session_id"] is None
        await unbound.verify(cookie_token=tok, submitted_token=tok, session_id="s2")

    asyncio.run(body())


@pytest.mark.parametrize(
    "headers,expected",
    [
        ({"user-agent": "Mozilla/5.0 (X11; Linux x86_64)"}, True),
        ({"user-agent": "curl/8.0"}, False),
        ({"user-agent": "curl/8.0", "X-Client-Kind": "browser"}, True),
        ({"user-agent": "Mozilla/5.0", "X-Client-Kind": "service"}, False),
    ],
)
def test_browser_detection(kv, headers, expected):
    assert CsrfService(kv).is_browser(headers) is expected


def test_attach_sets_cookie_and_header(kv):
    csrf = CsrfService(kv, secure=True, same_site="strict")
    resp = Response()
    csrf.attach(resp, "abc")
    cookie = resp.headers["set-cookie"]
    assert cookie.startswith("csrfToken=abc")
    assert "HttpOnly" in cookie and "Secure" in cookie
    assert "SameSite=strict" in cookie
    assert resp.headers["X-CSRF-Token"] == "abc"


def test_needs_issue(kv):
    assert CsrfService(kv, rotate=True).needs_issue("existing") is True
    assert CsrfService(kv, rotate=False).needs_issue("existing") is False
    assert CsrfService(kv, rotate=False).needs_issue(None) is True


def test_helpers():
    assert is_safe_method("get") and is_safe_method("OPTIONS")
    assert not is_safe_method("POST")
    assert session_id_from({"x-session-id": " s1 "}, {}) == "s1"
    assert session_id_from({}, {"sid": "c1"}) == "c1"
    assert session_id_from({"x-session-id": "x" * 200}, {}) is None
    assert session_id_from({}, {}) is None
