"""
Key-value backend using SQLite.

One row per top-level key (``history``, ``library``, ``playlists``,
``settings``), each holding a JSON document.  Every write of a key is one
statement, so each key is atomic on its own; the record store never relies
on several keys changing together.

Several processes may open the same file.  WAL mode and a busy timeout
let them interleave reads and writes without "database is locked" errors.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

from .backend import DEFAULT_QUOTA_BYTES, encoded_size
from .errors import BackendUnavailable, QuotaExceeded

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class SqliteKeyValueStore:
    """
    SQLite-backed flat key-value store with a byte quota.

    Thread-safe within a process (one connection guarded by a lock);
    safe across processes via SQLite's own file locking.
    """

    def __init__(self, store_path: Path, quota_bytes: int = DEFAULT_QUOTA_BYTES):
        """
        Args:
            store_path: Path to SQLite database file
            quota_bytes: Maximum total size of keys + JSON values (0 = unlimited)
        """
        self._db_path = Path(store_path)
        self.quota_bytes = quota_bytes
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                str(self._db_path), check_same_thread=False, timeout=10.0,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            version = self._conn.execute("PRAGMA user_version").fetchone()[0]
            if version < SCHEMA_VERSION:
                self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            self._conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise BackendUnavailable(f"Cannot open {self._db_path}: {e}") from e

    def _now(self) -> str:
        """Current timestamp in ISO format."""
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise BackendUnavailable(f"Store is closed: {self._db_path}")
        return self._conn

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, keys: Sequence[str]) -> dict[str, Any]:
        """
        Read the given keys.

        Returns:
            Dict mapping key -> decoded JSON value (missing keys omitted).
            A value that is not valid JSON is returned as its raw string so
            the caller can detect and repair the corruption.
        """
        keys = list(keys)
        if not keys:
            return {}
        placeholders = ",".join("?" * len(keys))
        try:
            with self._lock:
                rows = self._require_conn().execute(
                    f"SELECT key, value_json FROM kv WHERE key IN ({placeholders})",
                    keys,
                ).fetchall()
        except sqlite3.Error as e:
            raise BackendUnavailable(f"Read of {keys} failed: {e}") from e

        result: dict[str, Any] = {}
        for row in rows:
            try:
                result[row["key"]] = json.loads(row["value_json"])
            except json.JSONDecodeError:
                logger.warning("Undecodable value stored under %r", row["key"])
                result[row["key"]] = row["value_json"]
        return result

    def bytes_in_use(self, keys: Optional[Sequence[str]] = None) -> int:
        """Total stored size of the given keys (or all keys) in bytes."""
        try:
            with self._lock:
                conn = self._require_conn()
                if keys is None:
                    rows = conn.execute("SELECT key, value_json FROM kv").fetchall()
                else:
                    keys = list(keys)
                    if not keys:
                        return 0
                    placeholders = ",".join("?" * len(keys))
                    rows = conn.execute(
                        f"SELECT key, value_json FROM kv WHERE key IN ({placeholders})",
                        keys,
                    ).fetchall()
        except sqlite3.Error as e:
            raise BackendUnavailable(f"Size query failed: {e}") from e
        return sum(encoded_size(row["key"], row["value_json"]) for row in rows)

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def set(self, items: dict[str, Any]) -> None:
        """
        Write each key.

        Raises:
            QuotaExceeded: if the result would exceed ``quota_bytes``
            BackendUnavailable: on any SQLite failure
        """
        if not items:
            return
        encoded = {k: json.dumps(v, ensure_ascii=False) for k, v in items.items()}
        now = self._now()
        try:
            with self._lock:
                conn = self._require_conn()
                if self.quota_bytes > 0:
                    self._check_quota(conn, encoded)
                for key, value_json in encoded.items():
                    conn.execute(
                        "INSERT OR REPLACE INTO kv (key, value_json, updated_at) VALUES (?, ?, ?)",
                        (key, value_json, now),
                    )
                    conn.commit()
        except sqlite3.Error as e:
            raise BackendUnavailable(f"Write of {sorted(encoded)} failed: {e}") from e

    def _check_quota(self, conn: sqlite3.Connection, encoded: dict[str, str]) -> None:
        rows = conn.execute("SELECT key, value_json FROM kv").fetchall()
        total = sum(
            encoded_size(row["key"], row["value_json"])
            for row in rows if row["key"] not in encoded
        ) + sum(encoded_size(k, v) for k, v in encoded.items())
        if total > self.quota_bytes:
            raise QuotaExceeded(
                f"Write of {sorted(encoded)} needs {total} bytes (quota {self.quota_bytes})"
            )

    def remove(self, keys: Sequence[str]) -> None:
        """Delete the given keys."""
        keys = list(keys)
        if not keys:
            return
        placeholders = ",".join("?" * len(keys))
        try:
            with self._lock:
                conn = self._require_conn()
                conn.execute(f"DELETE FROM kv WHERE key IN ({placeholders})", keys)
                conn.commit()
        except sqlite3.Error as e:
            raise BackendUnavailable(f"Delete of {keys} failed: {e}") from e

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
