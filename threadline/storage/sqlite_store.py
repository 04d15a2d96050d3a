"""
SQLite storage for conversation threads.
Single portable file. One row per thread; messages are a JSON column so a
thread is always written and read as one unit. Query with SQL. Export to JSON.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path

from threadline.storage.base import StorageError, ThreadStore, check_fields
from threadline.storage.models import Thread, deserialize_messages, serialize_messages

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS threads (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    messages TEXT NOT NULL DEFAULT '[]',
    previous_response_id TEXT DEFAULT NULL,
    uploaded_file_ids TEXT NOT NULL DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE INDEX IF NOT EXISTS idx_threads_updated
    ON threads(updated_at);
"""

ACTIVE_THREAD_KEY = "active_thread_id"


def _row_to_thread(row: sqlite3.Row) -> Thread:
    try:
        messages = deserialize_messages(json.loads(row["messages"] or "[]"))
        uploaded_file_ids = list(json.loads(row["uploaded_file_ids"] or "[]"))
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        raise StorageError(f"Corrupt thread row {row['id']}: {e}") from e
    return Thread(
        id=row["id"],
        title=row["title"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        messages=messages,
        previous_response_id=row["previous_response_id"],
        uploaded_file_ids=uploaded_file_ids,
    )


def _column_value(key: str, value):
    if key == "messages":
        return json.dumps(serialize_messages(value), ensure_ascii=False)
    if key == "uploaded_file_ids":
        return json.dumps(list(value))
    return value


class SQLiteStore(ThreadStore):
    """SQLite thread store. Every call opens its own connection."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def list_threads(self) -> list[Thread]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM threads ORDER BY updated_at DESC"
            ).fetchall()
        return [_row_to_thread(r) for r in rows]

    def get_thread(self, thread_id: str) -> Thread | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM threads WHERE id = ?", (thread_id,)
            ).fetchone()
        return _row_to_thread(row) if row else None

    def save_thread(self, thread: Thread) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO threads
                   (id, title, created_at, updated_at, messages, previous_response_id, uploaded_file_ids)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (thread.id, thread.title, thread.created_at, thread.updated_at,
                 _column_value("messages", thread.messages),
                 thread.previous_response_id,
                 _column_value("uploaded_file_ids", thread.uploaded_file_ids)),
            )
        logger.debug("Saved thread %s (%d messages)", thread.id, len(thread.messages))

    def update_thread(self, thread_id: str, fields: dict) -> bool:
        check_fields(fields)
        if not fields:
            return self.get_thread(thread_id) is not None
        keys = sorted(fields)
        assignments = ", ".join(f"{k} = ?" for k in keys)
        values = [_column_value(k, fields[k]) for k in keys]
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE threads SET {assignments} WHERE id = ?",
                (*values, thread_id),
            )
            updated = cur.rowcount > 0
        if not updated:
            logger.debug("Ignoring update for missing thread %s", thread_id)
        return updated

    def delete_thread(self, thread_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
            conn.execute(
                "DELETE FROM meta WHERE key = ? AND value = ?",
                (ACTIVE_THREAD_KEY, thread_id),
            )
            deleted = cur.rowcount > 0
        logger.debug("Deleted thread %s (existed=%s)", thread_id, deleted)
        return deleted

    def clear_all(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM threads")
            conn.execute("DELETE FROM meta WHERE key = ?", (ACTIVE_THREAD_KEY,))
        logger.info("Cleared all threads")

    def get_active_thread_id(self) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM meta WHERE key = ?", (ACTIVE_THREAD_KEY,)
            ).fetchone()
        return row["value"] if row else None

    def set_active_thread_id(self, thread_id: str | None) -> None:
        with self._connect() as conn:
            if thread_id is None:
                conn.execute("DELETE FROM meta WHERE key = ?", (ACTIVE_THREAD_KEY,))
            else:
                conn.execute(
                    "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                    (ACTIVE_THREAD_KEY, thread_id),
                )

    def get_stats(self) -> dict:
        """Thread and message counts."""
        threads = self.list_threads()
        by_role: dict[str, int] = {}
        for thread in threads:
            for msg in thread.messages:
                by_role[msg.role] = by_role.get(msg.role, 0) + 1
        return {
            "threads": len(threads),
            "messages": sum(by_role.values()),
            "messages_by_role": by_role,
        }
