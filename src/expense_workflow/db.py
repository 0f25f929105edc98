from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import StorageError


def connect_sqlite(path: str | Path = ":memory:", check_same_thread: bool = True) -> sqlite3.Connection:
    conn = sqlite3.connect(path, check_same_thread=check_same_thread)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def apply_sqlite_migration(conn: sqlite3.Connection, migration_path: str | Path) -> None:
    sql = Path(migration_path).read_text(encoding="utf-8")
    conn.executescript(sql)


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the block as one write transaction, committing on success.

    The write lock is taken up front so that status checks and the writes that
    depend on them see the same snapshot.
    """
    try:
        with conn:
            if not conn.in_transaction:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
    except sqlite3.Error as exc:
        raise StorageError(f"Database operation failed: {exc}") from exc
