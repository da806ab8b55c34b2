# FILE: trustgate/tests/test_cache_routes.py
import asyncio

from fastapi.testclient import TestClient

from trustgate.config import settings_for_tests
from trustgate.service_http import create_app

COUPONS_KEY = "route-cache:/coupons:{}"


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _admin(signed_in, promote, email="admin@x.io"):
    token = signed_in(email=email)["accessToken"]
    promote(email)
    return token


def test_injected_empty_backends_are_used(kv, store, mailer, clock):
    assert len(kv) == 0
    app = create_app(settings_for_tests(), kv=kv, user_store=store, mailer=mailer, clock=clock)
    assert app.state.kv is kv
    r = TestClient(app).get("/coupons")
    assert r.headers["X-Cache"] == "MISS"
    assert asyncio.run(kv.get(COUPONS_KEY)) is not None
    assert asyncio.run(kv.ttl(COUPONS_KEY)) == settings_for_tests().cache_default_ttl_s


def test_anonymous_read_is_cached_then_invalidated(client, kv, signed_in, promote):
    r = client.get("/coupons")
    assert r.status_code == 200
    assert r.headers["X-Cache"] == "MISS"
    first = r.json()
    assert first["data"] == []
    assert asyncio.run(kv.get(COUPONS_KEY))["body"] == first

    r = client.get("/coupons")
    assert r.headers["X-Cache"] == "HIT"
    assert r.json() == first

    admin = _admin(signed_in, promote)
    r = client.post("/coupons", json={"name": "10% off shoes"}, headers=_auth(admin))
    assert r.status_code == 201
    assert r.json()["data"]["createdBy"]
    assert asyncio.run(kv.get(COUPONS_KEY)) is None

    r = client.get("/coupons")
    assert r.headers["X-Cache"] == "MISS"
    assert [c["name"] for c in r.json()["data"]] == ["10% off shoes"]


def test_query_is_part_of_the_key(client, kv):
    client.get("/coupons", params={"q": "shoe", "a": "1"})
    keys = asyncio.run(kv.scan("route-cache:/coupons:"))
    assert keys == ['route-cache:/coupons:{"a":"1","q":"shoe"}']


def test_authenticated_reads_bypass_the_cache(client, kv, signed_in):
    token = signed_in()["accessToken"]
    r = client.get("/coupons", headers=_auth(token))
    assert r.status_code == 200
    assert "X-Cache" not in r.headers
    assert asyncio.run(kv.scan("route-cache:")) == []


def test_invalid_token_on_optional_route_reads_as_anonymous(client):
    r = client.get("/stores", headers=_auth("not.a.token"))
    assert r.status_code == 200
    assert r.headers["X-Cache"] == "MISS"


def test_mutation_evicts_home_and_search(client, kv, signed_in, promote):
    client.get("/home")
    client.get("/search", params={"q": "x"})
    client.get("/deals")
    assert len(asyncio.run(kv.scan("route-cache:"))) == 3

    admin = _admin(signed_in, promote)
    assert client.post("/stores", json={"name": "Acme"}, headers=_auth(admin)).status_code == 201
    assert asyncio.run(kv.scan("route-cache:")) == ["route-cache:/deals:{}"]


def test_cache_entries_expire(client, clock):
    client.get("/cashback")
    assert client.get("/cashback").headers["X-Cache"] == "HIT"
    clock.advance(3601)
    assert client.get("/cashback").headers["X-Cache"] == "MISS"


def test_catalog_permissions(client, signed_in, promote):
    regular = signed_in()["accessToken"]
    r = client.post("/coupons", json={"name": "x"}, headers=_auth(regular))
    assert r.status_code == 403
    assert r.json()["error"]["kind"] == "forbidden"
    assert client.post("/coupons", json={"name": "x"}).status_code == 401

    mod = signed_in(email="mod@x.io")["accessToken"]
    promote("mod@x.io", role="moderator")
    r = client.post("/coupons", json={"name": "x"}, headers=_auth(mod))
    assert r.status_code == 201
    item_id = r.json()["data"]["id"]
    assert client.delete(f"/coupons/{item_id}", headers=_auth(mod)).status_code == 403

    admin = _admin(signed_in, promote)
    assert client.delete(f"/coupons/{item_id}", headers=_auth(admin)).status_code == 200
    assert client.delete(f"/coupons/{item_id}", headers=_auth(admin)).status_code == 404


def test_catalog_description_is_sanitized(client, signed_in, promote):
    admin = _admin(signed_in, promote)
    body = {
        "name": "<b>Deal</b>",
        "description": '<p onclick="x()">Hi <a href="javascript:alert(1)">there</a><script>bad()</script></p>',
    }
    r = client.post("/deals", json=body, headers=_auth(admin))
    assert r.status_code == 201
    item = r.json()["data"]
    assert item["name"] == "Deal"
    assert "onclick" not in item["description"]
    assert "javascript:" not in item["description"]
    assert "<script>" not in item["description"]
    assert item["description"].startswith("<p>Hi")


def test_search_requires_query(client):
    r = client.get("/search")
    assert r.status_code == 422
    # Failures are not cached.
    assert client.get("/search").status_code == 422


# --- cache administration ----------------------------------------------------------


def test_cache_admin_requires_admin(client, signed_in):
    token = signed_in()["accessToken"]
    assert client.get("/cache/stats").status_code == 401
    r = client.get("/cache/stats", headers=_auth(token))
    assert r.status_code == 403
    assert r.json()["error"]["message"] == "Access denied: admin role required"


def test_cache_admin_surface(client, kv, signed_in, promote):
    admin = _admin(signed_in, promote)
    client.get("/coupons")
    client.get("/coupons")
    client.get("/stores")

    r = client.get("/cache/stats", headers=_auth(admin))
    stats = r.json()["data"]
    assert stats["keys"] == 2
    assert stats["hits"] == 1
    assert stats["misses"] == 2

    r = client.get("/cache/value/route-cache:/coupons:{}", headers=_auth(admin))
    assert r.status_code == 200
    assert r.json()["data"]["value"]["status"] == 200

    r = client.post("/cache/clear", json={"pattern": "/stores"}, headers=_auth(admin))
    assert r.json()["data"]["deleted"] == 1

    assert client.delete("/cache/value/route-cache:/coupons:{}", headers=_auth(admin)).status_code == 200
    assert client.delete("/cache/value/route-cache:/coupons:{}", headers=_auth(admin)).status_code == 404

    client.get("/deals")
    r = client.post("/cache/clear-all", headers=_auth(admin))
    assert r.json()["data"]["deleted"] == 1


def test_cache_admin_is_confined_to_cache_namespace(client, kv, signed_in, promote):
    admin = _admin(signed_in, promote)
    asyncio.run(kv.set("csrf:abc", {"created_at": 0}))
    r = client.get("/cache/value/csrf:abc", headers=_auth(admin))
    assert r.status_code == 404
    client.post("/cache/clear", json={"pattern": "csrf:*"}, headers=_auth(admin))
    assert asyncio.run(kv.get("csrf:abc")) is not None


# --- API-key service routes ---------------------------------------------------------


def _service_client(kv, store, mailer, clock, **overrides):
    settings = settings_for_tests(api_keys={"analytics": "k-analytics", "billing": "k-billing"}, **overrides)
    return TestClient(create_app(settings, kv=kv, user_store=store, mailer=mailer, clock=clock))


def test_api_key_routes(kv, store, mailer, clock):
    client = _service_client(kv, store, mailer, clock)

    r = client.get("/external/status")
    assert r.status_code == 401
    assert r.json()["error"]["message"] == "API key is required"
    assert client.get("/external/status", headers={"X-API-Key": "nope"}).status_code == 401

    r = client.get("/external/status", headers={"X-API-Key": "k-billing"})
    assert r.status_code == 200
    assert r.json()["data"]["service"] == "billing"

    r = client.get("/analytics/summary", headers={"X-API-Key": "k-billing"})
    assert r.status_code == 403
    r = client.get("/analytics/summary", headers={"X-API-Key": "k-analytics"})
    assert r.status_code == 200
    assert r.json()["data"]["coupons"] == 0


def test_api_key_hourly_limit(kv, store, mailer, clock):
    client = _service_client(kv, store, mailer, clock, api_key_hourly_limit=2)
    h = {"X-API-Key": "k-billing"}
    assert client.get("/external/status", headers=h).status_code == 200
    assert client.get("/external/status", headers=h).status_code == 200
    r = client.get("/external/status", headers=h)
    assert r.status_code == 429
    assert int(r.headers["Retry-After"]) >= 1
    clock.advance(3600)
    assert client.get("/external/status", headers=h).status_code == 200
