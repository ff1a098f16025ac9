"""
Database connection management.

Provides SQLite connections for gateway state persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = ".ai-budget-gateway.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> sqlite3.Connection:
    """Create and return a SQLite connection.

    The busy timeout lets several gateway processes share one database file
    without failing immediately on a locked write.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a locked database

    Returns:
        SQLite connection whose rows support access by column name
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=timeout)
    conn.row_factory = sqlite3.Row
    return conn
