"""
cache/store.py -- SQLite-backed TTL cache for short-lived login state.

Holds every ephemeral record that does not need a relational home: WebAuthn
challenges, QR login sessions and bindings, QR login results, pending OIDC
authorization requests and authorization codes. Keys are deterministic
strings ("login_success_{deviceId}", "oidc_request_{requestId}",
"auth_code_{code}") and every row carries an absolute ms-epoch expiry.

pop() is the consumption primitive. Two callers racing on the same key both
may read the row, but only the one whose DELETE removes it (rowcount == 1)
gets the value back. The other observes None.

Usage:
    cache = EphemeralCache()
    cache.set("auth_code_abc", {"user_id": "..."}, ttl_seconds=300)
    data = cache.pop("auth_code_abc")   # dict once, None afterwards
    cache.purge_expired()               # call periodically to trim old entries
"""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Optional, Union

from core.clock import now_ms

_DDL = """
CREATE TABLE IF NOT EXISTS ephemeral (
    key            TEXT PRIMARY KEY,
    data           TEXT NOT NULL,
    expires_at_ms  INTEGER NOT NULL
);
"""


class EphemeralCache:
    def __init__(self, db_path: Union[str, Path] = ":memory:") -> None:
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        # One connection is shared by the thread pool; serialise access to it.
        self._lock = threading.Lock()
        if str(db_path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        """Store value under key, replacing any existing entry."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO ephemeral (key, data, expires_at_ms) VALUES (?, ?, ?)",
                (key, json.dumps(value), now_ms() + ttl_seconds * 1000),
            )
            self._conn.commit()

    def get(self, key: str) -> Optional[dict]:
        """Return the value for key if it exists and hasn't expired."""
        with self._lock:
            row = self._conn.execute(
                "SELECT data, expires_at_ms FROM ephemeral WHERE key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None
            data, expires_at_ms = row
            if expires_at_ms <= now_ms():
                self._delete(key)
                return None
            return json.loads(data)

    def pop(self, key: str) -> Optional[dict]:
        """Atomically read and remove key. Returns None if absent, expired, or already taken."""
        with self._lock:
            row = self._conn.execute(
                "SELECT data, expires_at_ms FROM ephemeral WHERE key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None
            cursor = self._conn.execute("DELETE FROM ephemeral WHERE key = ?", (key,))
            self._conn.commit()
            if cursor.rowcount != 1:
                return None
            data, expires_at_ms = row
            if expires_at_ms <= now_ms():
                return None
            return json.loads(data)

    def delete(self, key: str) -> None:
        with self._lock:
            self._delete(key)

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM ephemeral WHERE expires_at_ms <= ?", (now_ms(),))
            self._conn.commit()
            return cursor.rowcount

    def _delete(self, key: str) -> None:
        self._conn.execute("DELETE FROM ephemeral WHERE key = ?", (key,))
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()
