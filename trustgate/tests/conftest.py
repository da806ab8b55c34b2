# FILE: trustgate/tests/conftest.py
import pyotp
import pytest
from fastapi.testclient import TestClient

from trustgate.config import settings_for_tests
from trustgate.kv import InMemoryKV
from trustgate.notify import CapturingMailer
from trustgate.service_http import create_app
from trustgate.storage import InMemoryUserStore

PASSWORD = "hunter22"
BROWSER = {"X-Client-Kind": "browser"}


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv(clock):
    return InMemoryKV(clock=clock)


@pytest.fixture
def store():
    return InMemoryUserStore()


@pytest.fixture
def mailer():
    return CapturingMailer()


@pytest.fixture
def settings():
    return settings_for_tests()


@pytest.fixture
def app(settings, kv, store, mailer, clock):
    return create_app(settings, kv=kv, user_store=store, mailer=mailer, clock=clock)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def register(client):
    def _register(email="a@x.io", password=PASSWORD, **extra):
        return client.post("/auth/register", json={"email": email, "password": password, **extra})

    return _register


@pytest.fixture
def login(client):
    def _login(email="a@x.io", password=PASSWORD, **kw):
        return client.post("/auth/login", json={"email": email, "password": password}, **kw)

    return _login


@pytest.fixture
def signed_in(register, login):
    """Register and sign in; returns the login `data` (tokens + user)."""

    def _signed_in(email="a@x.io", password=PASSWORD):
        assert register(email=email, password=password).status_code == 201
        r = login(email=email, password=password)
        assert r.status_code == 200, r.text
        return r.json()["data"]

    return _signed_in


@pytest.fixture
def promote(store):
    def _promote(email, role="admin"):
        user = store.get_by_email(email)

        def _apply(u):
            u.role = role

        store.mutate(user.id, _apply)
        return user.id

    return _promote


@pytest.fixture
def totp(clock):
    """Current TOTP code for a secret, on the fake clock."""

    def _totp(secret):
        return pyotp.TOTP(secret).at(int(clock()))

    return _totp
