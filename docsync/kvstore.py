"""
Persistent key-value store using SQLite.

Holds the small pieces of state that must survive a restart: fallback
document metadata, the granted storage directory, the chat session
token and archived conversations. Values are JSON-encoded and grouped
by namespace.
"""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional

from .types import utc_now


class KeyValueStore:
    """
    SQLite-backed namespaced key-value map.

    Pass ``":memory:"`` for a throwaway store (tests, one-off runs).
    """

    def __init__(self, db_path: Path | str):
        """
        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        if str(self._db_path) != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                namespace TEXT NOT NULL,
                key TEXT NOT NULL,
                value_json TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (namespace, key)
            )
        """)
        self._conn.commit()

    def get(self, namespace: str, key: str, default: Any = None) -> Any:
        with self._lock:
            row = self._conn.execute(
                "SELECT value_json FROM kv WHERE namespace = ? AND key = ?",
                (namespace, key),
            ).fetchone()
        if row is None:
            return default
        return json.loads(row[0])

    def set(self, namespace: str, key: str, value: Any) -> None:
        value_json = json.dumps(value, ensure_ascii=False)
        with self._lock:
            self._conn.execute("""
                INSERT OR REPLACE INTO kv (namespace, key, value_json, updated_at)
                VALUES (?, ?, ?, ?)
            """, (namespace, key, value_json, utc_now()))
            self._conn.commit()

    def delete(self, namespace: str, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM kv WHERE namespace = ? AND key = ?",
                (namespace, key),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def keys(self, namespace: str) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT key FROM kv WHERE namespace = ? ORDER BY key",
                (namespace,),
            ).fetchall()
        return [r[0] for r in rows]

    def items(self, namespace: str) -> dict[str, Any]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT key, value_json FROM kv WHERE namespace = ? ORDER BY key",
                (namespace,),
            ).fetchall()
        return {k: json.loads(v) for k, v in rows}

    def clear(self, namespace: str) -> int:
        """Remove every key in a namespace. Returns the count removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM kv WHERE namespace = ?", (namespace,))
            self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
