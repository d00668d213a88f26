"""
Database connection management.

Provides SQLite connections and write transactions for the authentication
log store.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "auth_billing.db"
DEFAULT_TIMEOUT = 10.0


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_TIMEOUT) -> sqlite3.Connection:
    """Open a connection to the log store with foreign keys enforced.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before failing
    """
    conn = sqlite3.connect(str(Path(db_path)), timeout=timeout)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_TIMEOUT) -> Iterator[sqlite3.Connection]:
    """Yield a connection inside a single write transaction.

    The transaction commits when the block exits normally and rolls back
    if it raises. The connection is always closed.
    """
    conn = get_connection(db_path, timeout)
    try:
        conn.execute("BEGIN")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
