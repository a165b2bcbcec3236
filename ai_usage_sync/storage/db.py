"""
Database connection management.

Provides the SQLite connection and schema behind the local table store.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ai_usage_sync.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection.

    The parent directory is created when missing.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path).expanduser()
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    return conn


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the entity table if it doesn't exist.

    Every logical table shares one SQLite table; entities are keyed by
    (table_name, partition_key, row_key) and their properties are stored
    as a JSON document.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS table_entity (
                table_name TEXT NOT NULL,
                partition_key TEXT NOT NULL,
                row_key TEXT NOT NULL,
                properties TEXT NOT NULL,
                PRIMARY KEY (table_name, partition_key, row_key)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS table_registry (
                table_name TEXT PRIMARY KEY
            )
        """)
        conn.commit()
    finally:
        conn.close()
