"""
Key-value storage media for persisted sessions.

Both media enforce a byte capacity the way a browser's local storage does:
a write that would push the total size of keys + values past the quota
raises QuotaExceededError and leaves the previous value in place.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Dict, Optional

from .errors import QuotaExceededError, StorageUnavailableError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024

# ── Schema ────────────────────────────────────────────────────────────────────

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT DEFAULT (datetime('now')),
    description TEXT
);

CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    size INTEGER NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);
"""


def _entry_size(key: str, value: str) -> int:
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


class KeyValueStorage:
    """Interface every storage medium implements."""

    capacity_bytes: int = DEFAULT_QUOTA_BYTES

    def get_item(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set_item(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove_item(self, key: str) -> None:
        raise NotImplementedError

    def used_bytes(self) -> int:
        raise NotImplementedError


# ── In-memory ─────────────────────────────────────────────────────────────────


class MemoryStorage(KeyValueStorage):
    """Dict-backed medium, mostly for tests and ephemeral runs."""

    def __init__(self, capacity_bytes: int = DEFAULT_QUOTA_BYTES):
        self.capacity_bytes = capacity_bytes
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        current = self._items.get(key)
        used = self.used_bytes()
        if current is not None:
            used -= _entry_size(key, current)
        needed = used + _entry_size(key, value)
        if needed > self.capacity_bytes:
            raise QuotaExceededError(
                f"Writing {key!r} needs {needed} bytes, capacity is {self.capacity_bytes}"
            )
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def used_bytes(self) -> int:
        return sum(_entry_size(k, v) for k, v in self._items.items())


# ── SQLite ────────────────────────────────────────────────────────────────────


class SqliteStorage(KeyValueStorage):
    """Thread-safe SQLite key-value file with a byte quota."""

    def __init__(self, db_path: Path, *, capacity_bytes: int = DEFAULT_QUOTA_BYTES):
        self.db_path = Path(db_path).expanduser()
        self.capacity_bytes = capacity_bytes
        self._local = threading.local()
        self._initialized = False

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, timeout=5.0, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA busy_timeout=5000;")
        except (OSError, sqlite3.Error) as e:
            raise StorageUnavailableError(f"Cannot open {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row
        self._local.conn = conn
        if not self._initialized:
            self._initialize(conn)
        return conn

    def _initialize(self, conn: sqlite3.Connection) -> None:
        """Create tables if this is a fresh database."""
        conn.executescript(SCHEMA_SQL)
        conn.execute(
            "INSERT OR IGNORE INTO schema_version (version, description) VALUES (?, ?)",
            (SCHEMA_VERSION, "desksync key-value schema"),
        )
        conn.commit()
        self._initialized = True

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn:
            conn.close()
            self._local.conn = None

    def get_item(self, key: str) -> Optional[str]:
        try:
            row = self._conn().execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Read from {self.db_path} failed: {e}") from e
        return row["value"] if row else None

    def set_item(self, key: str, value: str) -> None:
        conn = self._conn()
        size = _entry_size(key, value)
        try:
            row = conn.execute(
                "SELECT COALESCE(SUM(size), 0) AS used FROM kv WHERE key != ?", (key,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Write to {self.db_path} failed: {e}") from e
        needed = (row["used"] if row else 0) + size
        if needed > self.capacity_bytes:
            raise QuotaExceededError(
                f"Writing {key!r} needs {needed} bytes, capacity is {self.capacity_bytes}"
            )
        try:
            conn.execute(
                """INSERT INTO kv (key, value, size) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                     value=excluded.value, size=excluded.size, updated_at=datetime('now')""",
                (key, value, size),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageUnavailableError(f"Write to {self.db_path} failed: {e}") from e

    def remove_item(self, key: str) -> None:
        conn = self._conn()
        try:
            conn.execute("DELETE FROM kv WHERE key=?", (key,))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageUnavailableError(f"Delete from {self.db_path} failed: {e}") from e

    def used_bytes(self) -> int:
        row = self._conn().execute("SELECT COALESCE(SUM(size), 0) AS used FROM kv").fetchone()
        return int(row["used"]) if row else 0

    def stats(self) -> Dict[str, object]:
        conn = self._conn()
        keys = conn.execute("SELECT COUNT(*) AS c FROM kv").fetchone()["c"]
        db_size = self.db_path.stat().st_size if self.db_path.exists() else 0
        return {
            "storage_path": str(self.db_path),
            "db_size_mb": round(db_size / (1024 * 1024), 2),
            "keys": keys,
            "used_bytes": self.used_bytes(),
            "capacity_bytes": self.capacity_bytes,
        }


# ── Singleton accessor ────────────────────────────────────────────────────────

_storage_instances: Dict[str, SqliteStorage] = {}
_storage_lock = threading.Lock()


def get_storage() -> SqliteStorage:
    """Get or create the configured storage (process-wide singleton per path)."""
    from .config import Config

    cfg = Config.load()
    key = str(cfg.resolved_storage_path)

    with _storage_lock:
        if key not in _storage_instances:
            _storage_instances[key] = SqliteStorage(
                cfg.resolved_storage_path, capacity_bytes=cfg.storage_quota_bytes
            )
        return _storage_instances[key]
