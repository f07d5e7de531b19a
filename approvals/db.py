"""
Publication Approvals — SQLite Backend

One connection shared by the status store, change feed, instance
store, event outbox and dead-letter sink. Access is serialized by a
re-entrant lock; ``transaction()`` opens BEGIN IMMEDIATE so a
read-check-write sequence is a single compare-and-swap.

Usage:
    from approvals.db import SQLiteBackend

    db = SQLiteBackend("approvals.db")
    with db.transaction():
        row = db.fetchone("SELECT ...", (...))
        db.execute("UPDATE ...", (...))
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from approvals.types import TransientStoreError

logger = logging.getLogger("publication_approvals.db")


class SQLiteBackend:
    """Thread-safe wrapper around a single sqlite3 connection."""

    def __init__(self, path: str = ":memory:", wal: bool = True, busy_timeout: int = 5000):
        self.path = path
        try:
            # Autocommit mode: transactions are opened explicitly.
            self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
            self._conn.row_factory = sqlite3.Row
            if wal:
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(f"PRAGMA busy_timeout={busy_timeout}")
        except sqlite3.OperationalError as e:
            raise TransientStoreError(f"Cannot open status store at {path}: {e}") from e
        self._lock = threading.RLock()
        self._depth = 0
        self._pending: list[Callable[[], None]] = []
        logger.info("SQLite backend initialized: %s", path)

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                return self._conn.execute(sql, params)
            except sqlite3.OperationalError as e:
                raise TransientStoreError(str(e)) from e

    def executescript(self, sql: str) -> None:
        with self._lock:
            self._conn.executescript(sql)

    def fetchone(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        row = self.execute(sql, params).fetchone()
        return dict(row) if row is not None else None

    def fetchall(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        return [dict(r) for r in self.execute(sql, params).fetchall()]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Explicit transaction boundary. Nested use joins the outer
        transaction; only the outermost block commits. Callbacks
        registered through ``after_commit`` run once the outermost
        block has committed and the lock is released.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self.execute("BEGIN IMMEDIATE")
            self._depth = 1
            self._pending = []
            try:
                yield
            except BaseException:
                self._rollback()
                self._pending = []
                raise
            else:
                try:
                    self.execute("COMMIT")
                except BaseException:
                    self._rollback()
                    self._pending = []
                    raise
            finally:
                self._depth = 0
            callbacks, self._pending = self._pending, []

        for callback in callbacks:
            callback()

    def after_commit(self, callback: Callable[[], None]) -> None:
        """
        Run ``callback`` after the current transaction commits, or
        immediately when no transaction is open. A rollback discards it.
        """
        with self._lock:
            # Holding the lock with depth > 0 means this thread owns the transaction.
            if self._depth:
                self._pending.append(callback)
                return
        callback()

    def _rollback(self) -> None:
        if not self._conn.in_transaction:
            return
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error("ROLLBACK failed on %s: %s", self.path, e)

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def close(self) -> None:
        with self._lock:
            self._conn.close()
