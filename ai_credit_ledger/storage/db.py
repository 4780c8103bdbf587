"""
Database connection management.

Provides SQLite connections and write transactions for the ledger.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "ai_credit_ledger.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Connections run in autocommit mode; writes are grouped explicitly with
    `transaction()`.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before failing

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block as one atomic write transaction.

    BEGIN IMMEDIATE takes the write lock before any read, so a
    read-modify-write inside the block observes every prior commit.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def is_conflict(error: sqlite3.OperationalError) -> bool:
    """Whether an operational error is a lock/busy conflict worth retrying."""
    message = str(error).lower()
    return "locked" in message or "busy" in message
