"""
local_store.py - SQLite-backed durable key/value store

Every piece of kiosk state (app state, submission queue, analytics batch,
sync cursors) lives here as an independent JSON-encoded top-level entry.
The store enforces a hard byte capacity so a runaway queue cannot starve
the rest of the kiosk.
"""

import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, List
import logging

from .errors import StorageError, StorageExhaustedError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("LocalStore")

DEFAULT_CAPACITY_BYTES = 5 * 1024 * 1024

# Store keys
STORAGE_KEY_STATE = "kioskAppState"
STORAGE_KEY_QUEUE = "submissionQueue"
STORAGE_KEY_ANALYTICS = "surveyAnalytics"
STORAGE_KEY_LAST_SYNC = "lastSync"
STORAGE_KEY_LAST_ANALYTICS_SYNC = "lastAnalyticsSync"
STORAGE_KEY_QUARANTINE = "submissionQuarantine"
STORAGE_KEY_AMBIGUOUS_COUNT = "ambiguousSyncCount"


class LocalStore:
    """Durable key/value store with a hard capacity."""

    def __init__(self, db_path, capacity_bytes: int = DEFAULT_CAPACITY_BYTES):
        self.db_path = str(db_path)
        self.capacity_bytes = capacity_bytes
        self._ensure_data_dir()
        self._init_db()

    def _ensure_data_dir(self):
        """Create the data directory if it doesn't exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize schema if tables don't exist."""
        conn = self._get_connection()
        try:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            ''')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS activity_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    status TEXT DEFAULT 'pending',
                    details TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            ''')
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to initialise store at {self.db_path}: {e}") from e
        finally:
            conn.close()
        logger.info(f"Local store initialized at: {self.db_path}")

    # ==================== Key/Value ====================

    def get(self, key: str, default: Any = None) -> Any:
        """
        Read and decode a value.

        A missing key or an entry that no longer decodes returns `default`;
        the corrupt entry is logged and left in place for inspection.
        """
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read key '{key}': {e}") from e
        finally:
            conn.close()

        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except ValueError as e:
            logger.error(f"Failed to decode key '{key}': {e}")
            return default

    def set(self, key: str, value: Any):
        """Encode and write a value. Raises StorageExhaustedError over capacity."""
        encoded = json.dumps(value, separators=(",", ":"))
        size = len(encoded.encode("utf-8"))

        conn = self._get_connection()
        try:
            others = conn.execute(
                "SELECT COALESCE(SUM(LENGTH(CAST(value AS BLOB))), 0) FROM kv_store WHERE key != ?",
                (key,),
            ).fetchone()[0]
            required = others + size
            if required > self.capacity_bytes:
                logger.error(f"Failed to write key '{key}': {required} bytes exceeds {self.capacity_bytes}")
                raise StorageExhaustedError(key, required, self.capacity_bytes)

            conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                (key, encoded, time.time()),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to write key '{key}': {e}") from e
        finally:
            conn.close()

    def set_many(self, updates: Dict[str, Any]):
        """
        Write several keys in one transaction. A value of None removes the key.

        Capacity is checked against the state after every update applies,
        so moving data between two keys is not counted twice.
        """
        encoded = {
            key: json.dumps(value, separators=(",", ":")) if value is not None else None
            for key, value in updates.items()
        }
        touched = list(encoded)
        placeholders = ", ".join("?" for _ in touched)
        size = sum(len(value.encode("utf-8")) for value in encoded.values() if value is not None)

        conn = self._get_connection()
        try:
            others = conn.execute(
                f"SELECT COALESCE(SUM(LENGTH(CAST(value AS BLOB))), 0) FROM kv_store WHERE key NOT IN ({placeholders})",
                touched,
            ).fetchone()[0]
            required = others + size
            if required > self.capacity_bytes:
                label = ", ".join(touched)
                logger.error(f"Failed to write keys '{label}': {required} bytes exceeds {self.capacity_bytes}")
                raise StorageExhaustedError(label, required, self.capacity_bytes)

            now = time.time()
            for key, value in encoded.items():
                if value is None:
                    conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                else:
                    conn.execute(
                        "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                        (key, value, now),
                    )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to write keys {touched}: {e}") from e
        finally:
            conn.close()

    def remove(self, key: str):
        conn = self._get_connection()
        try:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to remove key '{key}': {e}") from e
        finally:
            conn.close()

    def keys(self) -> List[str]:
        conn = self._get_connection()
        try:
            rows = conn.execute("SELECT key FROM kv_store ORDER BY key").fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list keys: {e}") from e
        finally:
            conn.close()
        return [row["key"] for row in rows]

    def usage(self) -> Dict[str, Any]:
        """Per-key byte sizes plus a `_TOTAL` entry."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT key, LENGTH(CAST(value AS BLOB)) AS size FROM kv_store ORDER BY key"
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to measure store: {e}") from e
        finally:
            conn.close()

        info = {row["key"]: {"size": row["size"], "sizeKB": round(row["size"] / 1024, 2)} for row in rows}
        total = sum(row["size"] for row in rows)
        info["_TOTAL"] = {
            "size": total,
            "sizeKB": round(total / 1024, 2),
            "capacity": self.capacity_bytes,
            "percentUsed": round(total / self.capacity_bytes * 100, 1) if self.capacity_bytes else 0,
        }
        return info

    # ==================== Activity Logging ====================

    def log_activity(self, event_type: str, status: str = 'pending', details: str = None):
        """Log a sync/storage activity event."""
        conn = self._get_connection()
        try:
            conn.execute('''
                INSERT INTO activity_logs (event_type, status, details)
                VALUES (?, ?, ?)
            ''', (event_type, status, details))
            conn.commit()
        except sqlite3.Error as e:
            # The activity log is diagnostic only.
            logger.warning(f"Failed to log activity '{event_type}': {e}")
        finally:
            conn.close()

    def get_recent_logs(self, limit: int = 50) -> List[Dict]:
        """Get recent activity logs, newest first."""
        conn = self._get_connection()
        try:
            rows = conn.execute('''
                SELECT * FROM activity_logs
                ORDER BY id DESC
                LIMIT ?
            ''', (limit,)).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read activity logs: {e}") from e
        finally:
            conn.close()
        return [dict(row) for row in rows]


class AppStateStore:
    """Foreground survey progress, persisted so a restart resumes cleanly."""

    def __init__(self, store: LocalStore):
        self.store = store

    @staticmethod
    def default_state() -> Dict[str, Any]:
        return {
            "currentQuestionIndex": 0,
            "formData": {},
            "questionTimeSpent": {},
            "adminClickCount": 0,
        }

    def load(self) -> Dict[str, Any]:
        state = self.store.get(STORAGE_KEY_STATE)
        if not isinstance(state, dict):
            return self.default_state()
        merged = self.default_state()
        merged.update(state)
        return merged

    def save(self, state: Dict[str, Any]):
        self.store.set(STORAGE_KEY_STATE, state)

    def clear(self):
        self.store.remove(STORAGE_KEY_STATE)
