"""SQLite connection factory with WAL mode, foreign keys and transactions."""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path


class Database:
    """Thread-safe SQLite connection manager.

    Uses WAL mode for concurrent readers and a threading lock for writes.
    Each thread gets its own connection via thread-local storage, so
    background workers never share a cursor with request handlers.
    """

    def __init__(self, db_path: str | Path, busy_timeout_ms: int = 5000) -> None:
        self._db_path = str(db_path)
        self._busy_timeout_ms = busy_timeout_ms
        self._local = threading.local()
        self._write_lock = threading.Lock()

    @property
    def path(self) -> str:
        return self._db_path

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    def fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        return self._get_conn().execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        return self._get_conn().execute(sql, params).fetchall()

    def write(self, sql: str, params: tuple = ()) -> int:
        """Execute and commit a single write. Returns the affected row count."""
        with self._write_lock:
            conn = self._get_conn()
            try:
                cursor = conn.execute(sql, params)
            except Exception:
                conn.rollback()
                raise
            conn.commit()
            return cursor.rowcount

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group several writes into one commit.

        Use the yielded connection directly; calling :meth:`write` inside
        the block would deadlock on the write lock.
        """
        with self._write_lock:
            conn = self._get_conn()
            try:
                yield conn
            except Exception:
                conn.rollback()
                raise
            conn.commit()

    def write_script(self, sql: str) -> None:
        """Execute a multi-statement SQL script."""
        with self._write_lock:
            self._get_conn().executescript(sql)

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
