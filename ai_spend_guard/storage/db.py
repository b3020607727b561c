"""
Database connection management.

Provides SQLite connection for rollup state and spend history.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ai_spend_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    The connection waits on locks held by other writers instead of failing
    immediately.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=30.0)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
