"""
SQLite connections for ledger persistence.

Snapshot saves take a write lock with ``BEGIN IMMEDIATE``; a second device
saving at the same moment waits up to ``busy_timeout`` seconds for it
instead of failing with "database is locked".
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ink_economy.db"
DEFAULT_BUSY_TIMEOUT = 10.0


def get_connection(db_path: str = DEFAULT_DB_PATH, busy_timeout: float = DEFAULT_BUSY_TIMEOUT) -> sqlite3.Connection:
    """Open the ledger database, creating its parent directory if needed.

    Args:
        db_path: Path to SQLite database file
        busy_timeout: Seconds to wait for another writer's lock

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    if db_path != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=busy_timeout)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
