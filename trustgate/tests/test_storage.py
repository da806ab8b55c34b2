# FILE: trustgate/tests/test_storage.py
import asyncio

import pytest

from trustgate.errors import ErrorKind, TrustError
from trustgate.storage import (
    AsyncUserStore,
    InMemoryUserStore,
    SQLiteUserStore,
    User,
    make_user_store,
    new_user_id,
)


@pytest.fixture(params=["memory", "sqlite"])
def backend(request):
    s = InMemoryUserStore() if request.param == "memory" else SQLiteUserStore(":memory:")
    yield s
    s.close()


def _user(email="a@x.io", **kw):
    return User(id=new_user_id(), email=email, password_hash="h", **kw)


def test_create_and_lookup(backend):
    u = backend.create(_user(" A@X.io "))
    assert u.email == "a@x.io"
    assert backend.get(u.id).email == "a@x.io"
    assert backend.get_by_email("a@X.IO").id == u.id
    assert backend.get("missing") is None
    assert backend.count() == 1


def test_duplicate_email(backend):
    backend.create(_user())
    with pytest.raises(TrustError) as ei:
        backend.create(_user("A@x.io"))
    assert ei.value.kind is ErrorKind.DUPLICATE_IDENTITY


def test_mutate_is_atomic(backend):
    u = backend.create(_user())

    def _apply(user):
        user.first_name = "Changed"
        user.bump_epoch()
        return user.token_epoch

    assert backend.mutate(u.id, _apply) == 1
    stored = backend.get(u.id)
    assert stored.first_name == "Changed" and stored.token_epoch == 1

    def _boom(user):
        user.first_name = "Lost"
        raise RuntimeError("nope")

    with pytest.raises(RuntimeError):
        backend.mutate(u.id, _boom)
    assert backend.get(u.id).first_name == "Changed"

    with pytest.raises(TrustError) as ei:
        backend.mutate("missing", _apply)
    assert ei.value.kind is ErrorKind.NOT_FOUND


def test_email_change_keeps_uniqueness(backend):
    a = backend.create(_user("a@x.io"))
    backend.create(_user("b@x.io"))

    def _take_b(user):
        user.email = "b@x.io"

    with pytest.raises(TrustError) as ei:
        backend.mutate(a.id, _take_b)
    assert ei.value.kind is ErrorKind.DUPLICATE_IDENTITY

    def _move(user):
        user.email = "C@x.io"

    backend.mutate(a.id, _move)
    assert backend.get_by_email("c@x.io").id == a.id
    assert backend.get_by_email("a@x.io") is None


def test_find_by_token(backend):
    u = backend.create(_user(reset_token_hash="d1"))
    assert backend.find_by_token("reset_token_hash", "d1").id == u.id
    assert backend.find_by_token("reset_token_hash", "d2") is None
    assert backend.find_by_token("reset_token_hash", "") is None
    with pytest.raises(ValueError):
        backend.find_by_token("password_hash", "h")


def test_delete(backend):
    u = backend.create(_user())
    assert backend.delete(u.id) is True
    assert backend.delete(u.id) is False
    assert backend.get_by_email("a@x.io") is None
    backend.create(_user())


def test_stored_records_are_not_shared():
    s = InMemoryUserStore()
    u = s.create(_user())
    got = s.get(u.id)
    got.sessions.append({"id": "x"})
    assert s.get(u.id).sessions == []


def test_user_helpers():
    u = _user()
    for i in range(55):
        u.append_login(ts=float(i), ip="ip", user_agent="ua", success=i % 2 == 0)
    assert len(u.login_history) == 50
    assert u.login_history[0]["timestamp"] == 5.0

    u.account_locked = True
    u.account_locked_until = 100.0
    assert u.is_locked(99.0)
    assert not u.is_locked(100.0)
    assert set(u.public_view()) == {"id", "email", "firstName", "lastName", "role", "verified"}
    assert User.from_doc({**u.to_doc(), "legacy": 1}).email == u.email


def test_async_facade():
    users = AsyncUserStore(InMemoryUserStore())

    async def body():
        u = await users.create(_user())
        assert (await users.get(u.id)).id == u.id
        with pytest.raises(TrustError) as ei:
            await users.get("x" * 65)
        assert ei.value.kind is ErrorKind.VALIDATION
        assert await users.count() == 1

    asyncio.run(body())


def test_make_user_store():
    assert isinstance(make_user_store(None), InMemoryUserStore)
    s = make_user_store("sqlite:///:memory:")
    assert isinstance(s, SQLiteUserStore)
    s.close()
    with pytest.raises(ValueError):
        make_user_store("mongodb://x")
