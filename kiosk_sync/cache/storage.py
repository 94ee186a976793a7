"""
storage.py - Named cache generations on disk

A generation is a named set of (request key -> response) entries. Generations
are created on demand, enumerated in creation order and deleted wholesale in
a single transaction.
"""

import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlsplit

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("CacheStorage")


def request_key(url: str) -> str:
    """Cache key for a URL: path plus query, origin dropped."""
    parts = urlsplit(url)
    key = parts.path or "/"
    if parts.query:
        key = f"{key}?{parts.query}"
    return key


@dataclass
class CachedResponse:
    status: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)
    url: str = ""
    opaque: bool = False
    stored_at: Optional[float] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        for name, value in self.headers.items():
            if name.lower() == "content-type":
                return value
        return "application/octet-stream"

    @classmethod
    def text(cls, status: int, text: str, content_type: str = "text/plain; charset=utf-8") -> "CachedResponse":
        return cls(status=status, body=text.encode("utf-8"), headers={"Content-Type": content_type})

    @classmethod
    def json(cls, status: int, data) -> "CachedResponse":
        return cls(
            status=status,
            body=json.dumps(data).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )

    def json_body(self):
        return json.loads(self.body.decode("utf-8"))


class CacheStorage:
    """SQLite-backed registry of cache generations."""

    def __init__(self, db_path):
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self):
        conn = self._get_connection()
        try:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS cache_generations (
                    name TEXT PRIMARY KEY,
                    created_at REAL NOT NULL
                )
            ''')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS cache_entries (
                    generation TEXT NOT NULL,
                    request_key TEXT NOT NULL,
                    status INTEGER NOT NULL,
                    headers TEXT NOT NULL,
                    body BLOB NOT NULL,
                    url TEXT,
                    opaque INTEGER DEFAULT 0,
                    stored_at REAL NOT NULL,
                    PRIMARY KEY (generation, request_key),
                    FOREIGN KEY (generation) REFERENCES cache_generations(name) ON DELETE CASCADE
                )
            ''')
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Cache storage initialized at: {self.db_path}")

    def open(self, name: str) -> "Generation":
        """Open a generation, creating it if needed."""
        conn = self._get_connection()
        try:
            conn.execute(
                "INSERT OR IGNORE INTO cache_generations (name, created_at) VALUES (?, ?)",
                (name, time.time()),
            )
            conn.commit()
        finally:
            conn.close()
        return Generation(self, name)

    def has(self, name: str) -> bool:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT 1 FROM cache_generations WHERE name = ?", (name,)).fetchone()
        finally:
            conn.close()
        return row is not None

    def keys(self) -> List[str]:
        """Generation names in creation order."""
        conn = self._get_connection()
        try:
            rows = conn.execute("SELECT name FROM cache_generations ORDER BY created_at, rowid").fetchall()
        finally:
            conn.close()
        return [row["name"] for row in rows]

    def delete(self, name: str) -> bool:
        conn = self._get_connection()
        try:
            with conn:
                conn.execute("DELETE FROM cache_entries WHERE generation = ?", (name,))
                cursor = conn.execute("DELETE FROM cache_generations WHERE name = ?", (name,))
            deleted = cursor.rowcount > 0
        finally:
            conn.close()
        if deleted:
            logger.info(f"Deleted cache generation: {name}")
        return deleted

    def delete_except(self, keep: Iterable[str]) -> List[str]:
        """Delete every generation not in `keep`, atomically. Returns the deleted names."""
        keep = set(keep)
        conn = self._get_connection()
        try:
            with conn:
                names = [row["name"] for row in conn.execute("SELECT name FROM cache_generations").fetchall()]
                doomed = [name for name in names if name not in keep]
                for name in doomed:
                    conn.execute("DELETE FROM cache_entries WHERE generation = ?", (name,))
                    conn.execute("DELETE FROM cache_generations WHERE name = ?", (name,))
        finally:
            conn.close()
        for name in doomed:
            logger.info(f"Deleting old cache: {name}")
        return doomed

    def match(self, key: str, generations: Optional[Iterable[str]] = None) -> Optional[CachedResponse]:
        """First entry for `key`, searching `generations` in order (default: all)."""
        names = list(generations) if generations is not None else self.keys()
        for name in names:
            response = Generation(self, name).match(key)
            if response is not None:
                return response
        return None


class Generation:
    def __init__(self, storage: CacheStorage, name: str):
        self.storage = storage
        self.name = name

    def __repr__(self):
        return f"Generation({self.name!r})"

    def put(self, key: str, response: CachedResponse):
        conn = self.storage._get_connection()
        try:
            with conn:
                conn.execute(
                    "INSERT OR IGNORE INTO cache_generations (name, created_at) VALUES (?, ?)",
                    (self.name, time.time()),
                )
                conn.execute('''
                    INSERT OR REPLACE INTO cache_entries
                    (generation, request_key, status, headers, body, url, opaque, stored_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    self.name,
                    key,
                    response.status,
                    json.dumps(response.headers),
                    sqlite3.Binary(response.body),
                    response.url,
                    1 if response.opaque else 0,
                    time.time(),
                ))
        finally:
            conn.close()

    def match(self, key: str) -> Optional[CachedResponse]:
        conn = self.storage._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM cache_entries WHERE generation = ? AND request_key = ?",
                (self.name, key),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return CachedResponse(
            status=row["status"],
            body=bytes(row["body"]),
            headers=json.loads(row["headers"]),
            url=row["url"] or "",
            opaque=bool(row["opaque"]),
            stored_at=row["stored_at"],
        )

    def delete(self, key: str) -> bool:
        conn = self.storage._get_connection()
        try:
            with conn:
                cursor = conn.execute(
                    "DELETE FROM cache_entries WHERE generation = ? AND request_key = ?",
                    (self.name, key),
                )
        finally:
            conn.close()
        return cursor.rowcount > 0

    def keys(self) -> List[str]:
        conn = self.storage._get_connection()
        try:
            rows = conn.execute(
                "SELECT request_key FROM cache_entries WHERE generation = ? ORDER BY request_key",
                (self.name,),
            ).fetchall()
        finally:
            conn.close()
        return [row["request_key"] for row in rows]
