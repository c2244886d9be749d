"""SQLite storage for the annotation mirror.

Schema includes:
- annotations: one JSON-serialized annotation per ID (the record store)
- annotation_tags: annotation ID -> ';'-joined tags
- tag_annotations: tag -> ';'-joined annotation IDs
- meta: scalar values such as per-scope sync cursors

This module stores and fetches raw values. Keeping the two tag tables
consistent with the records is the job of index.IndexEngine.
"""

import fcntl
import json
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .config import get_data_dir
from .errors import AnnotationNotFound, IndexEncodingError, StoreError, StoreLocked


DB_FILENAME = 'marginalia.db'
LOCK_FILENAME = 'marginalia.lock'

SCHEMA = """
-- Records: the annotation as the API returned it
CREATE TABLE IF NOT EXISTS annotations (
    id TEXT PRIMARY KEY,
    data TEXT NOT NULL                -- JSON
);

-- annotation -> tags ('Untagged' sentinel when there are none)
CREATE TABLE IF NOT EXISTS annotation_tags (
    id TEXT PRIMARY KEY,
    tags TEXT NOT NULL
);

-- tag -> annotation IDs
CREATE TABLE IF NOT EXISTS tag_annotations (
    tag TEXT PRIMARY KEY,
    ids TEXT NOT NULL
);

-- Scalars: sync cursors etc.
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT
);
"""


class Database:
    """SQLite database connection and operations."""

    def __init__(self, db_dir: Path | None = None):
        """Initialize database.

        Args:
            db_dir: Directory holding the database and its lock file
        """
        self.db_dir = Path(db_dir) if db_dir else get_data_dir() / 'db'
        self.db_path = self.db_dir / DB_FILENAME
        self._conn = None
        self._lock_fd = None
        self._in_transaction = False

    def connect(self):
        """Get or create database connection."""
        if self._conn is None:
            try:
                self.db_dir.mkdir(parents=True, exist_ok=True)
                self._acquire_lock()
                self._conn = sqlite3.connect(self.db_path)
                self._conn.row_factory = sqlite3.Row
                self._init_schema()
            except sqlite3.Error as e:
                self.close()
                raise StoreError(f"Couldn't open database {self.db_path}: {e}") from e
            except OSError as e:
                self.close()
                raise StoreError(f"Couldn't open database directory {self.db_dir}: {e}") from e
        return self._conn

    def _acquire_lock(self):
        """Take an exclusive, non-blocking lock on the database directory."""
        fd = os.open(self.db_dir / LOCK_FILENAME, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            os.close(fd)
            raise StoreLocked(
                f"{self.db_dir} is in use by another marginalia process"
            ) from None
        self._lock_fd = fd

    def _init_schema(self):
        """Initialize database schema."""
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    def close(self):
        """Close database connection and release the directory lock."""
        if self._conn:
            self._conn.close()
            self._conn = None
        if self._lock_fd is not None:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
            os.close(self._lock_fd)
            self._lock_fd = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args):
        self.close()

    @contextmanager
    def transaction(self):
        """Group several writes into one commit; roll back on error.

        Nested calls join the outer transaction.
        """
        conn = self.connect()
        if self._in_transaction:
            yield conn
            return
        self._in_transaction = True
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise StoreError(f"Database write failed: {e}") from e
        finally:
            self._in_transaction = False

    def _commit(self):
        if not self._in_transaction:
            self._conn.commit()

    # Record operations

    def put_record(self, annotation_id: str, record: dict[str, Any]) -> None:
        """Insert or replace a serialized annotation."""
        conn = self.connect()
        conn.execute("""
            INSERT INTO annotations (id, data) VALUES (?, ?)
            ON CONFLICT(id) DO UPDATE SET data = excluded.data
        """, (annotation_id, json.dumps(record)))
        self._commit()

    def get_record(self, annotation_id: str) -> dict[str, Any]:
        """Get a serialized annotation by ID."""
        conn = self.connect()
        row = conn.execute(
            "SELECT data FROM annotations WHERE id = ?", (annotation_id,)
        ).fetchone()
        if row is None:
            raise AnnotationNotFound(annotation_id)
        return _decode_record(annotation_id, row['data'])

    def remove_record(self, annotation_id: str) -> dict[str, Any]:
        """Delete a serialized annotation, returning what was stored."""
        record = self.get_record(annotation_id)
        conn = self.connect()
        conn.execute("DELETE FROM annotations WHERE id = ?", (annotation_id,))
        self._commit()
        return record

    def record_exists(self, annotation_id: str) -> bool:
        conn = self.connect()
        cursor = conn.execute("SELECT 1 FROM annotations WHERE id = ?", (annotation_id,))
        return cursor.fetchone() is not None

    def iter_records(self) -> Iterator[dict[str, Any]]:
        """Lazily yield every stored record. Call again to restart."""
        conn = self.connect()
        cursor = conn.execute("SELECT id, data FROM annotations ORDER BY id")
        for row in cursor:
            yield _decode_record(row['id'], row['data'])

    def count_records(self) -> int:
        conn = self.connect()
        return conn.execute("SELECT COUNT(*) FROM annotations").fetchone()[0]

    # Tag index rows

    def get_annotation_tags(self, annotation_id: str) -> str | None:
        conn = self.connect()
        row = conn.execute(
            "SELECT tags FROM annotation_tags WHERE id = ?", (annotation_id,)
        ).fetchone()
        return row['tags'] if row else None

    def set_annotation_tags(self, annotation_id: str, joined: str) -> None:
        conn = self.connect()
        conn.execute("""
            INSERT INTO annotation_tags (id, tags) VALUES (?, ?)
            ON CONFLICT(id) DO UPDATE SET tags = excluded.tags
        """, (annotation_id, joined))
        self._commit()

    def delete_annotation_tags(self, annotation_id: str) -> None:
        conn = self.connect()
        conn.execute("DELETE FROM annotation_tags WHERE id = ?", (annotation_id,))
        self._commit()

    def iter_annotation_tags(self) -> Iterator[tuple[str, str]]:
        conn = self.connect()
        for row in conn.execute("SELECT id, tags FROM annotation_tags ORDER BY id"):
            yield row['id'], row['tags']

    def get_tag_annotations(self, tag: str) -> str | None:
        conn = self.connect()
        row = conn.execute(
            "SELECT ids FROM tag_annotations WHERE tag = ?", (tag,)
        ).fetchone()
        return row['ids'] if row else None

    def set_tag_annotations(self, tag: str, joined: str) -> None:
        conn = self.connect()
        conn.execute("""
            INSERT INTO tag_annotations (tag, ids) VALUES (?, ?)
            ON CONFLICT(tag) DO UPDATE SET ids = excluded.ids
        """, (tag, joined))
        self._commit()

    def delete_tag_annotations(self, tag: str) -> None:
        conn = self.connect()
        conn.execute("DELETE FROM tag_annotations WHERE tag = ?", (tag,))
        self._commit()

    def iter_tag_annotations(self) -> Iterator[tuple[str, str]]:
        conn = self.connect()
        for row in conn.execute("SELECT tag, ids FROM tag_annotations ORDER BY tag"):
            yield row['tag'], row['ids']

    # Meta

    def get_meta(self, key: str) -> str | None:
        conn = self.connect()
        row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row['value'] if row else None

    def set_meta(self, key: str, value: str) -> None:
        conn = self.connect()
        conn.execute("""
            INSERT INTO meta (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """, (key, value))
        self._commit()

    # Maintenance

    def clear(self) -> None:
        """Delete all annotations, index rows and cursors."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM annotations")
            conn.execute("DELETE FROM annotation_tags")
            conn.execute("DELETE FROM tag_annotations")
            conn.execute("DELETE FROM meta")

    def get_stats(self) -> dict[str, Any]:
        """Get database statistics."""
        conn = self.connect()

        annotations = conn.execute("SELECT COUNT(*) FROM annotations").fetchone()[0]
        tags = conn.execute("SELECT COUNT(*) FROM tag_annotations").fetchone()[0]
        cursors = conn.execute(
            "SELECT key, value FROM meta WHERE key LIKE 'sync_cursor:%' ORDER BY key"
        ).fetchall()

        return {
            'annotations': annotations,
            'tags': tags,
            'cursors': {row['key'][len('sync_cursor:'):]: row['value'] for row in cursors},
        }


def _decode_record(annotation_id: str, data: str) -> dict[str, Any]:
    try:
        record = json.loads(data)
    except json.JSONDecodeError as e:
        raise IndexEncodingError(f"Stored record for {annotation_id!r} is corrupt: {e}") from e
    if not isinstance(record, dict):
        raise IndexEncodingError(f"Stored record for {annotation_id!r} is not an object")
    return record


def get_database(db_dir: Path | None = None) -> Database:
    """Get a database instance."""
    return Database(db_dir)
