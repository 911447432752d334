"""SQLite persistence for activities and sessions."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel

from track.activities import ActivityRegistry, DeletePolicy
from track.sessions import Session, SessionStore, to_utc

SCHEMA = """
CREATE TABLE IF NOT EXISTS activities (
    name TEXT PRIMARY KEY,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY,
    activity TEXT NOT NULL,
    start_at TEXT NOT NULL,
    end_at TEXT,
    notes TEXT NOT NULL DEFAULT '',
    CHECK (end_at IS NULL OR end_at > start_at)
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_start ON sessions(start_at);
CREATE INDEX IF NOT EXISTS idx_sessions_activity ON sessions(activity);
"""

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

ACTIVE_KEY = "active_activity"
DELETE_POLICY_KEY = "delete_policy"

logger = logging.getLogger(__name__)


def format_timestamp(value: datetime) -> str:
    """Format as UTC ISO 8601 with a Z suffix (sorts lexicographically)."""
    return to_utc(value).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(ts: str) -> datetime:
    """Parse ISO 8601 timestamp to datetime."""
    return datetime.fromisoformat(ts.replace("Z", "+00:00"))


class ExportedSession(BaseModel):
    """Session record as written by `track export` and read by `track import`.

    Ids are local to a database, so imports ignore them and allocate new ones.
    """

    id: int | None = None
    activity: str
    start: datetime
    end: datetime | None = None
    notes: str = ""

    @classmethod
    def from_session(cls, session: Session) -> ExportedSession:
        return cls(
            id=session.id,
            activity=session.activity,
            start=session.start,
            end=session.end,
            notes=session.notes,
        )


class TrackDatabase:
    """SQLite-backed storage for the registry and session store.

    The database is the persisted form only: commands load a snapshot,
    mutate it in memory and save it back. Not thread-safe.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._init_schema()

    def __enter__(self) -> TrackDatabase:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    @classmethod
    def open(cls, path: Path, *, timeout: float = 5.0) -> TrackDatabase:
        """Open or create a database at the given path.

        ``timeout`` is how long a mutating command waits for another
        process holding the write lock.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(path, timeout=timeout)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    @classmethod
    def open_in_memory(cls) -> TrackDatabase:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        return cls(conn)

    def load(self) -> tuple[ActivityRegistry, SessionStore]:
        """Materialize the registry and session store.

        Raises TrackError if the stored sessions violate the store's
        invariants, and pydantic's ValidationError for malformed rows.
        """
        cursor = self._conn.execute("SELECT name, created_at FROM activities")
        activities = {row["name"]: parse_timestamp(row["created_at"]) for row in cursor}
        registry = ActivityRegistry(activities, active=self.get_setting(ACTIVE_KEY))

        cursor = self._conn.execute(
            "SELECT id, activity, start_at, end_at, notes FROM sessions ORDER BY start_at ASC"
        )
        sessions = [
            Session(
                id=row["id"],
                activity=row["activity"],
                start=parse_timestamp(row["start_at"]),
                end=parse_timestamp(row["end_at"]) if row["end_at"] else None,
                notes=row["notes"],
            )
            for row in cursor
        ]
        store = SessionStore.from_sessions(sessions, registry)
        logger.debug("Loaded %d activities and %d sessions", len(registry), len(store))
        return registry, store

    def save(self, registry: ActivityRegistry, store: SessionStore, *, commit: bool = True) -> None:
        """Replace the persisted activities and sessions with the given state.

        Args:
            registry: Activities to persist, including the active one.
            store: Sessions to persist, written in start order.
            commit: Whether to commit immediately (default True).
                    Set to False when called within a larger transaction.
        """
        self._conn.execute("DELETE FROM activities")
        self._conn.executemany(
            "INSERT INTO activities (name, created_at) VALUES (?, ?)",
            [(name, format_timestamp(registry.created_at(name))) for name in registry.names],
        )
        self._conn.execute("DELETE FROM sessions")
        self._conn.executemany(
            """
            INSERT INTO sessions (id, activity, start_at, end_at, notes)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                (
                    session.id,
                    session.activity,
                    format_timestamp(session.start),
                    format_timestamp(session.end) if session.end else None,
                    session.notes,
                )
                for session in store
            ],
        )
        self.set_setting(ACTIVE_KEY, registry.active, commit=False)
        if commit:
            self._conn.commit()
        logger.debug("Saved %d activities and %d sessions", len(registry), len(store))

    @contextmanager
    def transaction(self) -> Iterator[tuple[ActivityRegistry, SessionStore]]:
        """Load, yield for mutation, and save under an exclusive write lock.

        BEGIN IMMEDIATE takes SQLite's reserved lock up front, so a second
        process running a mutating command waits (up to the connection
        timeout) instead of interleaving its own load/save. Nothing is saved
        if the body raises.
        """
        self._conn.execute("BEGIN IMMEDIATE")
        with self._conn:  # Commits on success, rolls back on error
            registry, store = self.load()
            yield registry, store
            self.save(registry, store, commit=False)

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        row = self._conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def set_setting(self, key: str, value: str | None, *, commit: bool = True) -> None:
        """Store a setting; None removes it."""
        if value is None:
            self._conn.execute("DELETE FROM settings WHERE key = ?", (key,))
        else:
            self._conn.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
        if commit:
            self._conn.commit()

    def get_delete_policy(self) -> DeletePolicy:
        """Persisted activity deletion policy (default: reject)."""
        value = self.get_setting(DELETE_POLICY_KEY)
        if value is None:
            return DeletePolicy.REJECT
        try:
            return DeletePolicy(value)
        except ValueError:
            logger.warning("Ignoring unknown delete policy %r in settings", value)
            return DeletePolicy.REJECT

    def set_delete_policy(self, policy: DeletePolicy) -> None:
        self.set_setting(DELETE_POLICY_KEY, policy.value)

    def count_sessions(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]
