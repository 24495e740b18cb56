"""Persistence for users, policies and the transaction log."""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union
from uuid import UUID, uuid4

from callipsos.errors import DatabaseError, from_db

log = logging.getLogger(__name__)

UuidLike = Union[UUID, str]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    telegram_id INTEGER UNIQUE,
    wallet_address TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS policies (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    name TEXT NOT NULL,
    rules_json TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_policies_user_active ON policies (user_id, active);

CREATE TABLE IF NOT EXISTS transaction_log (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    policy_id TEXT REFERENCES policies(id),
    request_json TEXT NOT NULL,
    verdict TEXT NOT NULL,
    reasons_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transaction_log_user ON transaction_log (user_id);
"""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _stamp(moment: datetime) -> str:
    return moment.isoformat(timespec="microseconds")


def _timestamp_json(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


def _uuid(value: UuidLike) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def _optional_uuid(value: Optional[str]) -> Optional[UUID]:
    return None if value is None else UUID(value)


@dataclass(frozen=True)
class User:
    id: UUID
    telegram_id: Optional[int]
    wallet_address: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def _from_row(cls, row: sqlite3.Row) -> "User":
        return cls(
            id=UUID(row["id"]),
            telegram_id=row["telegram_id"],
            wallet_address=row["wallet_address"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def to_json(self) -> dict:
        return {
            "id": str(self.id),
            "telegram_id": self.telegram_id,
            "wallet_address": self.wallet_address,
            "created_at": _timestamp_json(self.created_at),
            "updated_at": _timestamp_json(self.updated_at),
        }


@dataclass(frozen=True)
class PolicyRow:
    id: UUID
    user_id: UUID
    name: str
    rules_json: Any
    active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def _from_row(cls, row: sqlite3.Row) -> "PolicyRow":
        return cls(
            id=UUID(row["id"]),
            user_id=UUID(row["user_id"]),
            name=row["name"],
            rules_json=json.loads(row["rules_json"]),
            active=bool(row["active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def to_json(self) -> dict:
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "name": self.name,
            "rules_json": self.rules_json,
            "active": self.active,
            "created_at": _timestamp_json(self.created_at),
            "updated_at": _timestamp_json(self.updated_at),
        }


@dataclass(frozen=True)
class TransactionLogRow:
    id: UUID
    user_id: UUID
    policy_id: Optional[UUID]
    request_json: Any
    verdict: str
    reasons_json: Any
    created_at: datetime

    @classmethod
    def _from_row(cls, row: sqlite3.Row) -> "TransactionLogRow":
        return cls(
            id=UUID(row["id"]),
            user_id=UUID(row["user_id"]),
            policy_id=_optional_uuid(row["policy_id"]),
            request_json=json.loads(row["request_json"]),
            verdict=row["verdict"],
            reasons_json=json.loads(row["reasons_json"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def to_json(self) -> dict:
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "policy_id": None if self.policy_id is None else str(self.policy_id),
            "request_json": self.request_json,
            "verdict": self.verdict,
            "reasons_json": self.reasons_json,
            "created_at": _timestamp_json(self.created_at),
        }


class Database:
    """A thread-safe handle on the application's SQLite database."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._conn = connection
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._conn.execute("PRAGMA foreign_keys = ON")

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _execute(
        self, sql: str, params: tuple = (), *, map_constraints: bool = False
    ) -> tuple[int, list]:
        with self._lock:
            try:
                cursor = self._conn.execute(sql, params)
                rows = cursor.fetchall()
                self._conn.commit()
                return cursor.rowcount, rows
            except sqlite3.Error as exc:
                with contextlib.suppress(sqlite3.Error):
                    self._conn.rollback()
                if map_constraints:
                    raise from_db(exc) from exc
                raise DatabaseError(exc) from exc

    def migrate(self) -> None:
        """Create the schema if it does not exist yet."""
        with self._lock:
            try:
                self._conn.executescript(_SCHEMA)
            except sqlite3.Error as exc:
                raise DatabaseError(exc) from exc
        log.info("Migrations applied")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ── users ───────────────────────────────────────────────

    def create_user(self, telegram_id: Optional[int] = None) -> User:
        """Insert a new user; a duplicate telegram id raises Conflict."""
        now = _now()
        user = User(
            id=uuid4(),
            telegram_id=telegram_id,
            wallet_address=None,
            created_at=now,
            updated_at=now,
        )
        self._execute(
            "INSERT INTO users (id, telegram_id, created_at, updated_at) "
            "VALUES (?, ?, ?, ?)",
            (str(user.id), telegram_id, _stamp(now), _stamp(now)),
            map_constraints=True,
        )
        return user

    def find_user(self, user_id: UuidLike) -> Optional[User]:
        _, rows = self._execute(
            "SELECT id, telegram_id, wallet_address, created_at, updated_at "
            "FROM users WHERE id = ?",
            (str(_uuid(user_id)),),
        )
        return User._from_row(rows[0]) if rows else None

    # ── policies ────────────────────────────────────────────

    def create_policy(self, user_id: UuidLike, name: str, rules_json: Any) -> PolicyRow:
        """Insert an active policy; an unknown user raises NotFound."""
        now = _now()
        policy = PolicyRow(
            id=uuid4(),
            user_id=_uuid(user_id),
            name=name,
            rules_json=rules_json,
            active=True,
            created_at=now,
            updated_at=now,
        )
        self._execute(
            "INSERT INTO policies (id, user_id, name, rules_json, active, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, 1, ?, ?)",
            (
                str(policy.id),
                str(policy.user_id),
                name,
                json.dumps(rules_json),
                _stamp(now),
                _stamp(now),
            ),
            map_constraints=True,
        )
        return policy

    def find_policy(self, policy_id: UuidLike) -> Optional[PolicyRow]:
        _, rows = self._execute(
            "SELECT id, user_id, name, rules_json, active, created_at, updated_at "
            "FROM policies WHERE id = ?",
            (str(_uuid(policy_id)),),
        )
        return PolicyRow._from_row(rows[0]) if rows else None

    def active_policies(self, user_id: UuidLike) -> list[PolicyRow]:
        """All active policies of a user, oldest first."""
        _, rows = self._execute(
            "SELECT id, user_id, name, rules_json, active, created_at, updated_at "
            "FROM policies WHERE user_id = ? AND active = 1 "
            "ORDER BY created_at ASC, rowid ASC",
            (str(_uuid(user_id)),),
        )
        return [PolicyRow._from_row(row) for row in rows]

    def soft_delete_policy(self, policy_id: UuidLike) -> bool:
        """Deactivate a policy; True if it exists."""
        count, _ = self._execute(
            "UPDATE policies SET active = 0, updated_at = ? WHERE id = ?",
            (_stamp(_now()), str(_uuid(policy_id))),
        )
        return count > 0

    # ── transaction log ─────────────────────────────────────

    def log_transaction(
        self,
        user_id: UuidLike,
        policy_id: Optional[UuidLike],
        request_json: Any,
        verdict: str,
        reasons_json: Any,
    ) -> TransactionLogRow:
        now = _now()
        entry = TransactionLogRow(
            id=uuid4(),
            user_id=_uuid(user_id),
            policy_id=None if policy_id is None else _uuid(policy_id),
            request_json=request_json,
            verdict=verdict,
            reasons_json=reasons_json,
            created_at=now,
        )
        self._execute(
            "INSERT INTO transaction_log "
            "(id, user_id, policy_id, request_json, verdict, reasons_json, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                str(entry.id),
                str(entry.user_id),
                None if entry.policy_id is None else str(entry.policy_id),
                json.dumps(request_json),
                verdict,
                json.dumps(reasons_json),
                _stamp(now),
            ),
        )
        return entry

    def transaction_logs(self, user_id: UuidLike) -> list[TransactionLogRow]:
        """All log entries of a user, most recent first."""
        _, rows = self._execute(
            "SELECT id, user_id, policy_id, request_json, verdict, reasons_json, created_at "
            "FROM transaction_log WHERE user_id = ? "
            "ORDER BY created_at DESC, rowid DESC",
            (str(_uuid(user_id)),),
        )
        return [TransactionLogRow._from_row(row) for row in rows]


def _database_path(database_url: str) -> str:
    if database_url.startswith("sqlite:"):
        path = database_url[len("sqlite:"):]
        if path.startswith("//"):
            path = path[2:]
        if not path:
            raise ValueError(f"database URL has no path: {database_url!r}")
        return path
    if "://" in database_url:
        raise ValueError(f"unsupported database URL: {database_url!r}")
    return database_url


def connect(database_url: str) -> Database:
    """Open the database named by a sqlite: URL or a plain file path."""
    path = _database_path(database_url)
    try:
        connection = sqlite3.connect(path, check_same_thread=False)
    except sqlite3.Error as exc:
        raise DatabaseError(exc) from exc
    database = Database(connection)
    log.info("Connected to database")
    return database