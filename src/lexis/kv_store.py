"""
Lexis key-value stores -- where snapshots and seed chunks are persisted.

``SQLiteKVStore`` keeps one ``kv`` table in a WAL-mode database shared by
every Lexis process on the machine. ``InMemoryKVStore`` is the throwaway
variant for tests and ephemeral engines.

Usage:
    kv = SQLiteKVStore()
    kv.set("learning_store", b"...")
    data = kv.get("learning_store")
"""

import logging
import sqlite3
import threading
import time as _time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from lexis.config import lexis_home
from lexis.crypto import secure_connect

logger = logging.getLogger("lexis.kv_store")

_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 0.5  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, value: bytes) -> None: ...

    def delete(self, key: str) -> bool: ...

    def keys(self, prefix: str = "") -> List[str]: ...

    def close(self) -> None: ...


class InMemoryKVStore:
    """Dict-backed store; nothing survives the process."""

    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self._lock = threading.Lock()
        self._data: Dict[str, bytes] = dict(initial or {})

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError(f"value must be bytes, got {type(value).__name__}")
        with self._lock:
            self._data[key] = bytes(value)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def close(self) -> None:
        pass


class SQLiteKVStore:
    """SQLite-backed key-value store (WAL mode, owner-only file)."""

    def __init__(self, db_path=None):
        self.db_path = Path(db_path) if db_path else (lexis_home() / "lexis.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        self._lock = threading.Lock()
        self._closed = False
        self._conn = self._connect()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = secure_connect(
            self.db_path,
            timeout=30,
            check_same_thread=False,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=30000")
        return conn

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """CREATE TABLE IF NOT EXISTS kv (
                       key TEXT PRIMARY KEY,
                       value BLOB NOT NULL,
                       updated_at TEXT NOT NULL
                   )"""
            )
            self._commit()

    def _commit(self) -> None:
        _retry_on_locked(self._conn.commit)

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return bytes(row[0]) if row else None

    def set(self, key: str, value: bytes) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError(f"value must be bytes, got {type(value).__name__}")
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            _retry_on_locked(
                self._conn.execute,
                """INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
                (key, sqlite3.Binary(bytes(value)), now),
            )
            self._commit()

    def delete(self, key: str) -> bool:
        with self._lock:
            cur = _retry_on_locked(self._conn.execute, "DELETE FROM kv WHERE key = ?", (key,))
            self._commit()
            return cur.rowcount > 0

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key", (len(prefix), prefix)
            ).fetchall()
        return [r[0] for r in rows]

    def close(self) -> None:
        """Close the database connection. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        try:
            # Flush WAL before closing so other processes can checkpoint
            self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
        except sqlite3.Error as e:
            logger.debug("WAL checkpoint on close failed: %s", e)
        try:
            self._conn.close()
        except sqlite3.Error as e:
            logger.debug("Database close failed: %s", e)
