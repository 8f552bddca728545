"""
Database connection management.

Provides SQLite connections for the ledger and job history.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "tryon_ledger.db"

# Seconds a writer waits for another writer's lock before failing
BUSY_TIMEOUT_SECONDS = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    The connection runs in autocommit mode so callers control transactions
    explicitly with BEGIN IMMEDIATE / COMMIT / ROLLBACK.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
