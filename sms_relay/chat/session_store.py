"""Server-side session storage for SMS conversations.

A session is a small key -> bytes mapping identified by an opaque id that
travels in a cookie. Twilio echoes cookies back on later webhook calls for the
same sender/recipient pair, which is what scopes a conversation.

Provides:
- SessionBackend: storage interface (read/write/delete whole sessions)
- InMemorySessionBackend: process-local store with sliding idle expiration
- SQLiteSessionBackend: persistent store with the same semantics
- Session: per-request handle with load/get/set/remove/commit

Concurrent requests for the same session are not serialized: each loads its
own copy and the last commit wins.
"""

import secrets
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from sms_relay.utils.logger import LoggerManager

Clock = Callable[[], datetime]

DEFAULT_IDLE_TIMEOUT = timedelta(minutes=20)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


class SessionBackend(ABC):
    """Storage for whole sessions, keyed by session id."""

    @abstractmethod
    def read(self, session_id: str) -> Optional[Dict[str, bytes]]:
        """Return the session's items, or None if unknown or expired.

        Reading counts as activity and pushes back the idle expiration.
        """

    @abstractmethod
    def write(self, session_id: str, items: Dict[str, bytes]) -> None:
        """Replace all items of a session."""

    @abstractmethod
    def delete(self, session_id: str) -> None:
        """Remove a session. Unknown ids are ignored."""

    @abstractmethod
    def purge_expired(self) -> int:
        """Drop idle sessions and return how many were removed."""

    def close(self) -> None:
        """Release resources held by the backend."""


class InMemorySessionBackend(SessionBackend):
    """Process-local session store.

    Sessions live in a dict guarded by a lock, since webhook handlers and
    thread-pool workers touch it concurrently. Everything is lost on restart.

    Attributes:
        idle_timeout: Sessions not accessed for this long are discarded
    """

    def __init__(self, idle_timeout: timedelta = DEFAULT_IDLE_TIMEOUT, clock: Clock = _utcnow):
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._entries: Dict[str, Tuple[Dict[str, bytes], datetime]] = {}
        self._lock = threading.Lock()
        self.logger = LoggerManager.get_logger(__name__)

    def read(self, session_id: str) -> Optional[Dict[str, bytes]]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return None
            items, last_access = entry
            if now - last_access > self.idle_timeout:
                del self._entries[session_id]
                self.logger.debug("Session expired on read", extra={"session_id": session_id})
                return None
            self._entries[session_id] = (items, now)
            return dict(items)

    def write(self, session_id: str, items: Dict[str, bytes]) -> None:
        with self._lock:
            self._entries[session_id] = (dict(items), self._clock())

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    def purge_expired(self) -> int:
        cutoff = self._clock() - self.idle_timeout
        with self._lock:
            expired = [sid for sid, (_, seen) in self._entries.items() if seen < cutoff]
            for session_id in expired:
                del self._entries[session_id]

        if expired:
            self.logger.info("Purged idle sessions", extra={"count": len(expired)})
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SQLiteSessionBackend(SessionBackend):
    """SQLite-backed session store.

    One row per session plus one row per item, with items removed through a
    foreign key cascade when their session goes away.

    Attributes:
        db_path: Path to SQLite database file
        idle_timeout: Sessions not accessed for this long are discarded
        _conn: SQLite connection (lazy-loaded)
    """

    _SCHEMA = """
    CREATE TABLE IF NOT EXISTS sessions (
        session_id TEXT PRIMARY KEY,
        created_at TEXT NOT NULL,
        last_accessed_at TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS session_items (
        session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
        item_key TEXT NOT NULL,
        item_value BLOB NOT NULL,
        PRIMARY KEY (session_id, item_key)
    );
    CREATE INDEX IF NOT EXISTS idx_sessions_last_accessed ON sessions(last_accessed_at);
    """

    def __init__(
        self,
        db_path: Path,
        idle_timeout: timedelta = DEFAULT_IDLE_TIMEOUT,
        clock: Clock = _utcnow,
    ):
        """Initialize session store.

        Args:
            db_path: Path to SQLite database (created if not exists)
            idle_timeout: Inactivity period after which a session expires
            clock: Source of the current UTC time
        """
        self.db_path = Path(db_path)
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self.logger = LoggerManager.get_logger(__name__)
        self._ensure_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the shared connection with foreign keys enabled."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    def _ensure_schema(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            conn = self._get_connection()
            conn.executescript(self._SCHEMA)
            conn.commit()
        self.logger.info(
            "Session database schema initialized", extra={"db_path": str(self.db_path)}
        )

    def read(self, session_id: str) -> Optional[Dict[str, bytes]]:
        now = self._clock()
        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                "SELECT last_accessed_at FROM sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            if not row:
                return None

            if now - datetime.fromisoformat(row[0]) > self.idle_timeout:
                conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
                conn.commit()
                self.logger.debug("Session expired on read", extra={"session_id": session_id})
                return None

            cursor = conn.execute(
                "SELECT item_key, item_value FROM session_items WHERE session_id = ?",
                (session_id,),
            )
            items = {key: bytes(value) for key, value in cursor.fetchall()}

            conn.execute(
                "UPDATE sessions SET last_accessed_at = ? WHERE session_id = ?",
                (now.isoformat(), session_id),
            )
            conn.commit()
        return items

    def write(self, session_id: str, items: Dict[str, bytes]) -> None:
        now = self._clock().isoformat()
        with self._lock:
            conn = self._get_connection()
            conn.execute(
                """
                INSERT INTO sessions (session_id, created_at, last_accessed_at)
                VALUES (?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    last_accessed_at = excluded.last_accessed_at
                """,
                (session_id, now, now),
            )
            conn.execute("DELETE FROM session_items WHERE session_id = ?", (session_id,))
            conn.executemany(
                """
                INSERT INTO session_items (session_id, item_key, item_value)
                VALUES (?, ?, ?)
                """,
                [(session_id, key, sqlite3.Binary(value)) for key, value in items.items()],
            )
            conn.commit()

    def delete(self, session_id: str) -> None:
        with self._lock:
            conn = self._get_connection()
            conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
            conn.commit()

    def purge_expired(self) -> int:
        cutoff = self._clock() - self.idle_timeout
        with self._lock:
            conn = self._get_connection()
            cursor = conn.execute(
                "DELETE FROM sessions WHERE last_accessed_at < ?",
                (cutoff.isoformat(),),
            )
            count = cursor.rowcount
            conn.commit()

        self.logger.info(
            "Purged idle sessions",
            extra={"count": count, "idle_timeout_minutes": self.idle_timeout.total_seconds() / 60},
        )
        return count

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None


class Session:
    """Per-request view of one session.

    `load()` reads the session from the backend once; `get`, `set` and
    `remove` work on that copy and `commit()` writes it back if anything
    changed. A session that ends up empty is deleted from the backend.

    An unknown or expired id is never reused: loading it starts a new session
    under a freshly generated id.

    Attributes:
        backend: Storage the session is read from and committed to
        session_id: Current id (changes on load if the requested one was unknown)
        is_new: Whether the session did not exist in the backend when loaded
    """

    def __init__(self, backend: SessionBackend, session_id: Optional[str] = None):
        self.backend = backend
        self.requested_id = session_id
        self.session_id = session_id or new_session_id()
        self.is_new = session_id is None
        self._items: Dict[str, bytes] = {}
        self._loaded = False
        self._modified = False

    def load(self) -> None:
        """Hydrate the session from the backend (no-op once loaded)."""
        if self._loaded:
            return
        items = self.backend.read(self.requested_id) if self.requested_id else None
        if items is None:
            if self.requested_id:
                self.session_id = new_session_id()
            self.is_new = True
            self._items = {}
        else:
            self._items = items
        self._loaded = True

    def get(self, key: str) -> Optional[bytes]:
        self.load()
        return self._items.get(key)

    def set(self, key: str, value: bytes) -> None:
        self.load()
        self._items[key] = bytes(value)
        self._modified = True

    def remove(self, key: str) -> None:
        self.load()
        if self._items.pop(key, None) is not None:
            self._modified = True

    @property
    def is_modified(self) -> bool:
        return self._modified

    @property
    def is_empty(self) -> bool:
        return not self._items

    def commit(self) -> None:
        """Persist changes made during this request."""
        if not self._modified:
            return
        if self._items:
            self.backend.write(self.session_id, self._items)
        else:
            self.backend.delete(self.session_id)
        self._modified = False
