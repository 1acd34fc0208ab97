"""SQLite-backed cache storage that persists buckets across restarts."""

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from .models import CacheRequest, CachedResponse
from .storage import CacheBucket, CacheStorage, StorageError, _check_storable

logger = logging.getLogger(__name__)

# Global lock for thread-safe database access.
# SQLite allows concurrent reads but only one writer at a time, and the
# connection is shared between the proxy threads and the lifecycle workers.
_db_lock = threading.Lock()


def init_db(db_path: str) -> sqlite3.Connection:
    """Initialize the cache database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        StorageError: If database initialization fails.
    """
    try:
        parent_dir = Path(db_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS buckets (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                bucket_id INTEGER NOT NULL,
                method TEXT NOT NULL,
                url TEXT NOT NULL,
                request_url TEXT NOT NULL,
                status INTEGER NOT NULL,
                reason TEXT NOT NULL,
                headers TEXT NOT NULL,
                body BLOB NOT NULL,
                stored_at TEXT NOT NULL,
                seq INTEGER NOT NULL,
                PRIMARY KEY (bucket_id, method, url)
            )
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise StorageError(f"Failed to initialize cache database: {e}")
    except OSError as e:
        raise StorageError(f"Failed to create cache database directory: {e}")


def _encode_headers(headers: tuple[tuple[str, str], ...]) -> str:
    return json.dumps([list(pair) for pair in headers])


def _decode_headers(raw: str) -> tuple[tuple[str, str], ...]:
    return tuple((str(name), str(value)) for name, value in json.loads(raw))


def _row_to_response(row: sqlite3.Row | None) -> CachedResponse | None:
    if row is None:
        return None
    return CachedResponse(
        url=row["request_url"],
        status=row["status"],
        reason=row["reason"],
        headers=_decode_headers(row["headers"]),
        body=bytes(row["body"]),
    )


class SqliteBucket(CacheBucket):
    """A bucket stored as rows of the entries table."""

    def __init__(self, conn: sqlite3.Connection, bucket_id: int, name: str) -> None:
        super().__init__(name)
        self._conn = conn
        self._bucket_id = bucket_id

    def match(self, request: CacheRequest) -> CachedResponse | None:
        if not request.is_cacheable:
            return None
        method, url = request.cache_key
        try:
            with _db_lock:
                row = self._conn.execute(
                    """
                    SELECT request_url, status, reason, headers, body
                    FROM entries
                    WHERE bucket_id = ? AND method = ? AND url = ?
                    """,
                    (self._bucket_id, method, url),
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read from bucket '{self.name}': {e}")
        return _row_to_response(row)

    def put_all(self, entries: Iterable[tuple[CacheRequest, CachedResponse]]) -> None:
        batch = list(entries)
        for request, response in batch:
            _check_storable(request, response)

        stored_at = datetime.now(UTC).isoformat()
        try:
            with _db_lock:
                # Connection context manager commits the whole batch or rolls it back.
                with self._conn:
                    row = self._conn.execute(
                        "SELECT COALESCE(MAX(seq), 0) AS seq FROM entries WHERE bucket_id = ?",
                        (self._bucket_id,),
                    ).fetchone()
                    seq = row["seq"]
                    for request, response in batch:
                        seq += 1
                        method, url = request.cache_key
                        self._conn.execute(
                            """
                            INSERT OR REPLACE INTO entries
                            (bucket_id, method, url, request_url, status, reason, headers, body, stored_at, seq)
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                            """,
                            (
                                self._bucket_id,
                                method,
                                url,
                                response.url,
                                response.status,
                                response.reason,
                                _encode_headers(response.headers),
                                sqlite3.Binary(response.body),
                                stored_at,
                                seq,
                            ),
                        )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write to bucket '{self.name}': {e}")

    def keys(self) -> list[CacheRequest]:
        try:
            with _db_lock:
                rows = self._conn.execute(
                    "SELECT method, url FROM entries WHERE bucket_id = ? ORDER BY seq",
                    (self._bucket_id,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list bucket '{self.name}': {e}")
        return [CacheRequest(url=row["url"], method=row["method"]) for row in rows]


class SqliteCacheStorage(CacheStorage):
    """Cache storage persisted in a single SQLite database file."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    @classmethod
    def from_path(cls, db_path: str) -> "SqliteCacheStorage":
        """Open (or create) the database at db_path."""
        return cls(init_db(db_path))

    def keys(self) -> list[str]:
        try:
            with _db_lock:
                rows = self._conn.execute("SELECT name FROM buckets ORDER BY id").fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list buckets: {e}")
        return [row["name"] for row in rows]

    def open(self, name: str) -> CacheBucket:
        try:
            with _db_lock:
                with self._conn:
                    self._conn.execute(
                        "INSERT OR IGNORE INTO buckets (name, created_at) VALUES (?, ?)",
                        (name, datetime.now(UTC).isoformat()),
                    )
                row = self._conn.execute("SELECT id FROM buckets WHERE name = ?", (name,)).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open bucket '{name}': {e}")
        return SqliteBucket(self._conn, row["id"], name)

    def has(self, name: str) -> bool:
        try:
            with _db_lock:
                row = self._conn.execute("SELECT 1 FROM buckets WHERE name = ?", (name,)).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to look up bucket '{name}': {e}")
        return row is not None

    def delete(self, name: str) -> bool:
        try:
            with _db_lock:
                with self._conn:
                    row = self._conn.execute("SELECT id FROM buckets WHERE name = ?", (name,)).fetchone()
                    if row is None:
                        return False
                    deleted = self._conn.execute("DELETE FROM entries WHERE bucket_id = ?", (row["id"],)).rowcount
                    self._conn.execute("DELETE FROM buckets WHERE id = ?", (row["id"],))
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete bucket '{name}': {e}")

        logger.debug("Deleted bucket %s (%d entries)", name, deleted)
        return True

    def match_in(self, name: str, request: CacheRequest) -> CachedResponse | None:
        if not request.is_cacheable:
            return None
        method, url = request.cache_key
        try:
            with _db_lock:
                row = self._conn.execute(
                    """
                    SELECT e.request_url AS request_url, e.status AS status, e.reason AS reason,
                           e.headers AS headers, e.body AS body
                    FROM entries e
                    JOIN buckets b ON b.id = e.bucket_id
                    WHERE b.name = ? AND e.method = ? AND e.url = ?
                    """,
                    (name, method, url),
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read from bucket '{name}': {e}")
        return _row_to_response(row)

    def close(self) -> None:
        """Close the underlying connection."""
        with _db_lock:
            self._conn.close()
