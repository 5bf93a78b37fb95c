"""SQLite implementation of RecordStore.

This module provides the local-first, crash-safe record store using:
- sqlite-utils for schema management and upserts
- WAL mode for better concurrent performance
- asyncio.to_thread so store calls never block the event loop
- Exponential backoff retry for database lock handling
"""

import asyncio
import json
import sqlite3
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

try:
    from sqlite_utils import Database
except ImportError:
    raise ImportError(
        "sqlite-utils is required for queue functionality. "
        "Install it with: pip install sqlite-utils"
    )

from .backends import RecordStore


# SQLite schema SQL
SCHEMA_SQL = """
-- Generic key-value records (values are JSON documents)
CREATE TABLE IF NOT EXISTS records (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class SQLiteRecordStore(RecordStore):
    """SQLite-based key-value store.

    Features:
    - WAL mode for concurrent readers (e.g. a second CLI process)
    - Atomic per-key upserts
    - One connection shared across worker threads, serialized by a lock
    """

    def __init__(self, db_path: str, max_retries: int = 3):
        """Initialize record database.

        Args:
            db_path: Path to SQLite database file (":memory:" for tests)
            max_retries: Retry attempts when the database is locked

        Creates schema if database doesn't exist.
        """
        self.db_path = db_path
        self.max_retries = max_retries
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        # Calls hop between worker threads via asyncio.to_thread
        conn = sqlite3.connect(db_path, check_same_thread=False)
        self.db = Database(conn)
        self._lock = threading.Lock()

        if db_path != ":memory:":
            self.db.conn.execute("PRAGMA journal_mode=WAL")
            self.db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
            self.db.conn.commit()

        self.db.executescript(SCHEMA_SQL)

    def close(self) -> None:
        self.db.conn.close()

    async def get(self, key: str) -> Optional[Any]:
        return await self._run(self._get_sync, key)

    async def set(self, key: str, value: Any) -> None:
        await self._run(self._set_sync, key, value)

    async def delete(self, key: str) -> None:
        await self._run(self._delete_sync, key)

    async def list_keys(self) -> List[str]:
        return await self._run(self._list_keys_sync)

    async def _run(self, fn, *args):
        return await asyncio.to_thread(self._with_retry, fn, *args)

    def _with_retry(self, fn, *args):
        """Run ``fn`` under the connection lock with backoff on SQLITE_BUSY.

        Exponential backoff: 100ms, 200ms, 400ms delays.
        """
        for attempt in range(self.max_retries):
            try:
                with self._lock:
                    return fn(*args)
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < self.max_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise

    def _get_sync(self, key: str) -> Optional[Any]:
        rows = list(self.db["records"].rows_where("key = ?", [key]))
        if not rows:
            return None
        return json.loads(rows[0]["value"])

    def _set_sync(self, key: str, value: Any) -> None:
        with self.db.conn:
            self.db["records"].insert(
                {
                    "key": key,
                    "value": json.dumps(value),
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                },
                pk="key",
                replace=True,
            )

    def _delete_sync(self, key: str) -> None:
        with self.db.conn:
            self.db.execute("DELETE FROM records WHERE key = ?", [key])

    def _list_keys_sync(self) -> List[str]:
        return [row["key"] for row in self.db["records"].rows_where(select="key")]
