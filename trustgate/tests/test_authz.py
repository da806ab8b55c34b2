# FILE: trustgate/tests/test_authz.py
import pytest

from trustgate.authz import (
    PERMISSIONS,
    Principal,
    check_owner,
    check_permissions,
    check_roles,
    has_permission,
    has_role,
)
from trustgate.errors import ErrorKind, TrustError


def _user(role, uid="u1"):
    return Principal(kind="user", id=uid, role=role)


@pytest.mark.parametrize(
    "role,required,expected",
    [
        ("admin", "moderator", True),
        ("moderator", "support", True),
        ("support", "moderator", False),
        ("regular", "regular", True),
        ("ghost", "regular", False),
        (None, "regular", False),
        ("admin", "superuser", False),
    ],
)
def test_role_lattice(role, required, expected):
    assert has_role(role, required) is expected


@pytest.mark.parametrize(
    "role,permission,expected",
    [
        ("regular", "coupon:read", True),
        ("regular", "coupon:create", False),
        ("moderator", "deal:update", True),
        ("moderator", "store:delete", False),
        ("admin", "category:delete", True),
        ("moderator", "admin:reports", True),
        ("moderator", "admin:users", False),
        ("support", "support:tickets", True),
        ("regular", "support:access", False),
        ("admin", "nope:read", False),
    ],
)
def test_permission_table(role, permission, expected):
    assert has_permission(role, permission) is expected


def test_every_catalog_resource_is_listed():
    for res in ("coupon", "store", "deal", "category", "cashback"):
        for op in ("read", "create", "update", "delete"):
            assert f"{res}:{op}" in PERMISSIONS


def test_checks_raise_the_right_kinds():
    with pytest.raises(TrustError) as ei:
        check_roles(None, ["admin"])
    assert ei.value.kind is ErrorKind.UNAUTHENTICATED

    with pytest.raises(TrustError) as ei:
        check_roles(_user("moderator"), ["admin"])
    assert ei.value.kind is ErrorKind.FORBIDDEN
    assert ei.value.message == "Access denied: admin role required"

    check_roles(_user("admin"), ["moderator"])
    check_permissions(_user("moderator"), ["coupon:create"])
    with pytest.raises(TrustError) as ei:
        check_permissions(_user("regular"), ["coupon:create"])
    assert ei.value.message == "Access denied: Insufficient permissions"


def test_service_principals_fail_role_checks():
    svc = Principal(kind="service", id="analytics")
    with pytest.raises(TrustError) as ei:
        check_roles(svc, ["regular"])
    assert ei.value.kind is ErrorKind.FORBIDDEN
    with pytest.raises(TrustError):
        check_permissions(svc, ["coupon:read"])


def test_owner_check():
    check_owner(_user("regular", "u1"), "u1")
    check_owner(_user("admin", "u9"), "u1")
    with pytest.raises(TrustError) as ei:
        check_owner(_user("admin", "u9"), "u1", admin_bypass=False)
    assert ei.value.kind is ErrorKind.FORBIDDEN
    with pytest.raises(TrustError):
        check_owner(_user("regular", "u2"), "u1")
    with pytest.raises(TrustError):
        check_owner(_user("regular", "u1"), None)
