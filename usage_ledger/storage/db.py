"""
Database connection management.

Provides SQLite connections shared by every pipeline worker, plus the
timestamp and money encodings used in all tables.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Iterator, Optional

DEFAULT_DB_PATH = "usage_ledger.db"

# Fixed-width UTC text so that string comparison in SQL orders correctly
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Connections run in autocommit mode; callers open explicit transactions
    with ``transaction()`` where several writes must land atomically.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=30.0, isolation_level=None,
                           check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 30000")
    return conn


@contextmanager
def connection_scope(db_path: str, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
    """Yield ``conn`` if the caller already holds one, else a fresh connection closed on exit."""
    if conn is not None:
        yield conn
        return
    owned = get_connection(db_path)
    try:
        yield owned
    finally:
        owned.close()


@contextmanager
def transaction(conn: sqlite3.Connection, immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """Run a block inside one transaction, rolling back on any error.

    Args:
        conn: Connection opened by ``get_connection``
        immediate: Take the write lock up front (``BEGIN IMMEDIATE``)
    """
    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def to_db_time(value: datetime) -> str:
    """Encode a datetime as fixed-width UTC text. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def from_db_time(value: str) -> datetime:
    """Decode a timestamp written by ``to_db_time``."""
    return datetime.fromisoformat(value)


def to_db_money(value: Decimal) -> str:
    return str(value)


def from_db_money(value: str) -> Decimal:
    return Decimal(value)
