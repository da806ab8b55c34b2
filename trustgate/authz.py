# FILE: trustgate/authz.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Optional, Union

from .errors import ErrorKind, TrustError

# Fixed lattice: admin > moderator > support > regular.
ROLE_RANK: Dict[str, int] = {"regular": 0, "support": 1, "moderator": 2, "admin": 3}

_ALL = frozenset({"regular", "support", "moderator", "admin"})
_EDITORS = frozenset({"moderator", "admin"})
_ADMIN = frozenset({"admin"})
_SUPPORT = frozenset({"support", "moderator", "admin"})


def _crud(read=_ALL, create=_EDITORS, update=_EDITORS, delete=_ADMIN) -> Dict[str, FrozenSet[str]]:
    return {"read": read, "create": create, "update": update, "delete": delete}


def _expand(table: Dict[str, Dict[str, FrozenSet[str]]]) -> Dict[str, FrozenSet[str]]:
    return {f"{res}:{op}": roles for res, ops in table.items() for op, roles in ops.items()}


PERMISSIONS: Dict[str, FrozenSet[str]] = _expand(
    {
        "user": {"read": _ALL, "update": frozenset({"regular", "admin"}), "delete": _ADMIN},
        "content": _crud(),
        "coupon": _crud(),
        "cashback": _crud(),
        "store": _crud(),
        "deal": _crud(),
        "category": _crud(),
        "transaction": _crud(
            create=frozenset({"regular", "admin"}),
            update=frozenset({"support", "moderator", "admin"}),
        ),
        "admin": {
            "access": _ADMIN,
            "users": _ADMIN,
            "reports": frozenset({"moderator", "admin"}),
            "settings": _ADMIN,
        },
        "support": {"access": _SUPPORT, "tickets": _SUPPORT, "respond": _SUPPORT},
    }
)


def rank(role: Optional[str]) -> int:
    return ROLE_RANK.get(role or "", -1)


def has_role(user_role: Optional[str], required: str) -> bool:
    """True when user_role equals `required` or ranks above it."""
    r = rank(user_role)
    return r >= 0 and required in ROLE_RANK and r >= ROLE_RANK[required]


def has_permission(user_role: Optional[str], permission: str) -> bool:
    roles = PERMISSIONS.get(permission)
    if not roles:
        return False
    return any(has_role(user_role, r) for r in roles)


@dataclass(frozen=True)
class Principal:
    """
    Authenticated identity attached to a request.

    kind "user" carries a role; kind "service" (API key) carries none, so
    every role or permission check on it fails with `forbidden`.
    """

    kind: str
    id: str
    role: Optional[str] = None
    user: Any = None
    claims: Optional[Dict[str, Any]] = None

    @property
    def is_admin(self) -> bool:
        return self.kind == "user" and self.role == "admin"


OwnerFn = Callable[[Any], Union[Optional[str], Awaitable[Optional[str]]]]


def require_principal(principal: Optional[Principal]) -> Principal:
    if principal is None:
        raise TrustError(ErrorKind.UNAUTHENTICATED)
    return principal


def check_roles(principal: Optional[Principal], roles: Iterable[str]) -> None:
    p = require_principal(principal)
    wanted = list(roles)
    if not wanted:
        return
    if p.kind != "user" or not any(has_role(p.role, r) for r in wanted):
        raise TrustError(
            ErrorKind.FORBIDDEN,
            f"Access denied: {' or '.join(wanted)} role required",
        )


def check_permissions(principal: Optional[Principal], permissions: Iterable[str]) -> None:
    p = require_principal(principal)
    wanted = list(permissions)
    if not wanted:
        return
    if p.kind != "user" or not any(has_permission(p.role, perm) for perm in wanted):
        raise TrustError(ErrorKind.FORBIDDEN, "Access denied: Insufficient permissions")


def check_owner(principal: Optional[Principal], owner_id: Optional[str], *, admin_bypass: bool = True) -> None:
    p = require_principal(principal)
    if admin_bypass and p.is_admin:
        return
    if p.kind != "user" or owner_id is None or str(owner_id) != p.id:
        raise TrustError(ErrorKind.FORBIDDEN, "Access denied: You do not own this resource")


__all__ = [
    "ROLE_RANK",
    "PERMISSIONS",
    "Principal",
    "OwnerFn",
    "rank",
    "has_role",
    "has_permission",
    "require_principal",
    "check_roles",
    "check_permissions",
    "check_owner",
]
