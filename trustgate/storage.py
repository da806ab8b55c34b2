# FILE: trustgate/storage.py
"""
User record storage.

The user record is the single source of truth for identity, credentials,
token epoch, second-factor state, lockout state and login history. Every
other trust artefact (rate counters, CSRF tokens, refresh tokens, cached
responses) is reconstructable and lives in the KV store instead.

Backends:

  - InMemoryUserStore: dict of documents behind a lock; tests and local runs.
  - SQLiteUserStore:   one JSON document per row plus a UNIQUE email column.

Both expose `mutate(user_id, fn)`: the read-modify-write runs inside one
lock / IMMEDIATE transaction, so a multi-step change (verify email + bump
epoch + append history) either lands completely or not at all.

Driver errors are translated here: a duplicate email becomes
`duplicate-identity`, a busy/locked database becomes `upstream`. Calls are
run in a worker thread under the configured document-store deadline.
"""
from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .errors import ErrorKind, TrustError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ROLES = ("regular", "support", "moderator", "admin")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def new_user_id() -> str:
    return uuid.uuid4().hex


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    role: str = "regular"
    verified: bool = False
    pending_email: Optional[str] = None
    token_epoch: int = 0

    # second factor
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    two_factor_pending_secret: Optional[str] = None
    backup_codes: List[str] = field(default_factory=list)
    two_factor_temp_hash: Optional[str] = None
    two_factor_temp_expires: Optional[float] = None
    two_factor_attempts: int = 0
    email_code_hash: Optional[str] = None
    email_code_expires: Optional[float] = None

    # single-use link tokens (digests only)
    verification_token_hash: Optional[str] = None
    verification_expires: Optional[float] = None
    verification_used_hash: Optional[str] = None
    reset_token_hash: Optional[str] = None
    reset_expires: Optional[float] = None
    email_change_token_hash: Optional[str] = None
    email_change_expires: Optional[float] = None

    # lockout
    account_locked: bool = False
    account_locked_until: Optional[float] = None

    # activity
    login_history: List[Dict[str, Any]] = field(default_factory=list)
    last_login: Optional[float] = None
    last_active: Optional[float] = None
    sessions: List[Dict[str, Any]] = field(default_factory=list)
    oauth: Dict[str, str] = field(default_factory=dict)
    profile_picture: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    password_changed_at: Optional[float] = None

    def to_doc(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "User":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in doc.items() if k in known})

    def bump_epoch(self) -> int:
        """Token epochs only move forward."""
        self.token_epoch = int(self.token_epoch) + 1
        return self.token_epoch

    def append_login(
        self,
        *,
        ts: float,
        ip: Optional[str],
        user_agent: Optional[str],
        success: bool,
        limit: int = 50,
    ) -> None:
        self.login_history.append(
            {"timestamp": ts, "ip": ip, "userAgent": user_agent, "success": bool(success)}
        )
        if len(self.login_history) > limit:
            del self.login_history[: len(self.login_history) - limit]

    def is_locked(self, now: float) -> bool:
        if not self.account_locked:
            return False
        if self.account_locked_until is not None and self.account_locked_until <= now:
            return False
        return True

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "role": self.role,
            "verified": self.verified,
        }


class UserStore(ABC):
    """Synchronous document-store contract; see AsyncUserStore for the async face."""

    @abstractmethod
    def create(self, user: User) -> User:
        ...

    @abstractmethod
    def get(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    def get_by_email(self, email: str) -> Optional[User]:
        ...

    @abstractmethod
    def find_by_token(self, field_name: str, digest: str) -> Optional[User]:
        """Find the user whose `field_name` equals `digest` (token hash lookups)."""

    @abstractmethod
    def mutate(self, user_id: str, fn: Callable[[User], T]) -> T:
        """
        Apply fn to the current record and persist it atomically.

        Raises `not-found` if the user does not exist. If fn raises, nothing
        is written.
        """

    @abstractmethod
    def delete(self, user_id: str) -> bool:
        ...

    @abstractmethod
    def count(self) -> int:
        ...

    def close(self) -> None:
        return None


_TOKEN_FIELDS = frozenset(
    {
        "verification_token_hash",
        "verification_used_hash",
        "reset_token_hash",
        "email_change_token_hash",
        "two_factor_temp_hash",
    }
)


def _check_token_field(name: str) -> None:
    if name not in _TOKEN_FIELDS:
        raise ValueError(f"not a token field: {name}")


# ------------------------------
# In-memory implementation
# ------------------------------


class InMemoryUserStore(UserStore):
    """
    Thread-safe in-memory store.

    Documents are stored as plain dicts and re-hydrated on every read, so a
    caller can never mutate the stored record except through mutate().
    """

    def __init__(self):
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._by_email: Dict[str, str] = {}
        self._g = threading.RLock()

    def _load(self, user_id: str) -> Optional[User]:
        doc = self._docs.get(user_id)
        return User.from_doc(json.loads(json.dumps(doc))) if doc is not None else None

    def create(self, user: User) -> User:
        email = normalize_email(user.email)
        with self._g:
            if email in self._by_email:
                raise TrustError(ErrorKind.DUPLICATE_IDENTITY)
            user.email = email
            self._docs[user.id] = json.loads(json.dumps(user.to_doc()))
            self._by_email[email] = user.id
            return self._load(user.id)  # type: ignore[return-value]

    def get(self, user_id: str) -> Optional[User]:
        with self._g:
            return self._load(user_id)

    def get_by_email(self, email: str) -> Optional[User]:
        with self._g:
            uid = self._by_email.get(normalize_email(email))
            return self._load(uid) if uid else None

    def find_by_token(self, field_name: str, digest: str) -> Optional[User]:
        _check_token_field(field_name)
        if not digest:
            return None
        with self._g:
            for uid, doc in self._docs.items():
                if doc.get(field_name) == digest:
                    return self._load(uid)
        return None

    def mutate(self, user_id: str, fn: Callable[[User], T]) -> T:
        with self._g:
            user = self._load(user_id)
            if user is None:
                raise TrustError(ErrorKind.NOT_FOUND, "User not found")
            old_email = normalize_email(self._docs[user_id]["email"])
            result = fn(user)
            new_email = normalize_email(user.email)
            if new_email != old_email:
                owner = self._by_email.get(new_email)
                if owner is not None and owner != user_id:
                    raise TrustError(ErrorKind.DUPLICATE_IDENTITY)
                self._by_email.pop(old_email, None)
                self._by_email[new_email] = user_id
                user.email = new_email
            self._docs[user_id] = json.loads(json.dumps(user.to_doc()))
            return result

    def delete(self, user_id: str) -> bool:
        with self._g:
            doc = self._docs.pop(user_id, None)
            if doc is None:
                return False
            self._by_email.pop(normalize_email(doc["email"]), None)
            return True

    def count(self) -> int:
        with self._g:
            return len(self._docs)


# ------------------------------
# SQLite implementation
# ------------------------------

_SQL_SCHEMA = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS users (
  id          TEXT PRIMARY KEY,
  email       TEXT NOT NULL UNIQUE,
  doc         TEXT NOT NULL,
  created_at  REAL NOT NULL,
  updated_at  REAL NOT NULL
);
"""


class _SQLite:
    """
    Small wrapper around sqlite3 to centralize connection & transactions.

    Characteristics:
      - Single shared connection with check_same_thread=False; guarded by a
        re-entrant lock since calls arrive from worker threads.
      - IMMEDIATE transactions to avoid write skew.
      - WAL mode and busy_timeout to behave reasonably under moderate load.
    """

    def __init__(self, path: str):
        self._path = path
        self._g = threading.RLock()
        self._conn = sqlite3.connect(
            self._path,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout=30000;")
        self._conn.executescript(_SQL_SCHEMA)

    def tx(self):
        """
        Context manager for IMMEDIATE transactions.

        Usage:
            with db.tx() as conn:
                conn.execute(...)
        """
        outer = self

        class _Tx:
            def __enter__(self):
                outer._g.acquire()
                try:
                    outer._conn.execute("BEGIN IMMEDIATE;")
                except BaseException:
                    outer._g.release()
                    raise
                return outer._conn

            def __exit__(self, exc_type, exc, tb):
                try:
                    if exc_type is None:
                        outer._conn.execute("COMMIT;")
                    else:
                        outer._conn.execute("ROLLBACK;")
                finally:
                    outer._g.release()

        return _Tx()

    def close(self) -> None:
        with self._g:
            self._conn.close()


def _translate_sqlite(e: sqlite3.Error) -> TrustError:
    if isinstance(e, sqlite3.IntegrityError):
        return TrustError(ErrorKind.DUPLICATE_IDENTITY)
    if isinstance(e, sqlite3.OperationalError):
        return TrustError(ErrorKind.UPSTREAM, "Document store unavailable")
    return TrustError(ErrorKind.INTERNAL)


class SQLiteUserStore(UserStore):
    """
    SQLite-backed user store.

    The record is one JSON document; `email` is duplicated into a UNIQUE
    column so the database itself enforces identity uniqueness.
    """

    def __init__(self, path: str = "trustgate.db"):
        self._db = _SQLite(path)

    @staticmethod
    def _row_to_user(row: Optional[sqlite3.Row]) -> Optional[User]:
        if row is None:
            return None
        return User.from_doc(json.loads(row["doc"]))

    def create(self, user: User) -> User:
        user.email = normalize_email(user.email)
        now = time.time()
        try:
            with self._db.tx() as conn:
                conn.execute(
                    "INSERT INTO users(id,email,doc,created_at,updated_at) VALUES(?,?,?,?,?)",
                    (user.id, user.email, json.dumps(user.to_doc()), now, now),
                )
        except sqlite3.Error as e:
            raise _translate_sqlite(e) from e
        return user

    def get(self, user_id: str) -> Optional[User]:
        try:
            with self._db.tx() as conn:
                row = conn.execute("SELECT doc FROM users WHERE id=?", (user_id,)).fetchone()
        except sqlite3.Error as e:
            raise _translate_sqlite(e) from e
        return self._row_to_user(row)

    def get_by_email(self, email: str) -> Optional[User]:
        try:
            with self._db.tx() as conn:
                row = conn.execute(
                    "SELECT doc FROM users WHERE email=?", (normalize_email(email),)
                ).fetchone()
        except sqlite3.Error as e:
            raise _translate_sqlite(e) from e
        return self._row_to_user(row)

    def find_by_token(self, field_name: str, digest: str) -> Optional[User]:
        _check_token_field(field_name)
        if not digest:
            return None
        try:
            with self._db.tx() as conn:
                row = conn.execute(
                    f"SELECT doc FROM users WHERE json_extract(doc, '$.{field_name}') = ? LIMIT 1",
                    (digest,),
                ).fetchone()
        except sqlite3.Error as e:
            raise _translate_sqlite(e) from e
        return self._row_to_user(row)

    def mutate(self, user_id: str, fn: Callable[[User], T]) -> T:
        try:
            with self._db.tx() as conn:
                row = conn.execute("SELECT doc FROM users WHERE id=?", (user_id,)).fetchone()
                user = self._row_to_user(row)
                if user is None:
                    raise TrustError(ErrorKind.NOT_FOUND, "User not found")
                result = fn(user)
                user.email = normalize_email(user.email)
                conn.execute(
                    "UPDATE users SET email=?, doc=?, updated_at=? WHERE id=?",
                    (user.email, json.dumps(user.to_doc()), time.time(), user_id),
                )
                return result
        except sqlite3.Error as e:
            raise _translate_sqlite(e) from e

    def delete(self, user_id: str) -> bool:
        try:
            with self._db.tx() as conn:
                cur = conn.execute("DELETE FROM users WHERE id=?", (user_id,))
                return cur.rowcount > 0
        except sqlite3.Error as e:
            raise _translate_sqlite(e) from e

    def count(self) -> int:
        with self._db.tx() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM users").fetchone()[0])

    def close(self) -> None:
        self._db.close()


# ------------------------------
# Async facade with deadlines
# ------------------------------


class AsyncUserStore:
    """
    Runs UserStore calls in a worker thread under `timeout_s`.

    A cancelled or timed-out call either committed fully in its thread or
    rolled back; no partial record is ever visible.
    """

    def __init__(self, store: UserStore, *, timeout_s: float = 10.0):
        self.store = store
        self._timeout = float(timeout_s)

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("user_store.timeout", extra={"op": getattr(fn, "__name__", "?")})
            raise TrustError(ErrorKind.TIMEOUT, "Document store timed out")

    async def create(self, user: User) -> User:
        return await self._run(self.store.create, user)

    async def get(self, user_id: str) -> Optional[User]:
        if not user_id or not isinstance(user_id, str) or len(user_id) > 64:
            raise TrustError(ErrorKind.VALIDATION, "Invalid user id")
        return await self._run(self.store.get, user_id)

    async def get_by_email(self, email: str) -> Optional[User]:
        return await self._run(self.store.get_by_email, email)

    async def find_by_token(self, field_name: str, digest: str) -> Optional[User]:
        return await self._run(self.store.find_by_token, field_name, digest)

    async def mutate(self, user_id: str, fn: Callable[[User], T]) -> T:
        return await self._run(self.store.mutate, user_id, fn)

    async def delete(self, user_id: str) -> bool:
        return await self._run(self.store.delete, user_id)

    async def count(self) -> int:
        return await self._run(self.store.count)


def make_user_store(dsn: Optional[str]) -> UserStore:
    """
    Factory for UserStore backends.

    Accepted DSNs:
      - None, "" or "memory"          -> InMemoryUserStore
      - "sqlite:///path/to/users.db"  -> SQLiteUserStore(path="path/to/users.db")
      - "sqlite:///:memory:"          -> SQLiteUserStore(path=":memory:")
    """
    if not dsn or dsn.strip().lower() in ("memory", "mem://"):
        return InMemoryUserStore()
    dsn_s = dsn.strip()
    if dsn_s.lower().startswith("sqlite:///"):
        return SQLiteUserStore(path=dsn_s[len("sqlite:///"):])
    raise ValueError(f"Unsupported user store dsn: {dsn}")


__all__ = [
    "ROLES",
    "User",
    "UserStore",
    "InMemoryUserStore",
    "SQLiteUserStore",
    "AsyncUserStore",
    "make_user_store",
    "normalize_email",
    "new_user_id",
]
