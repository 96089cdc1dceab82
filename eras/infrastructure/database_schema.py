"""
Database schema initialization for Eras.

Every legacy access record is a whole JSON document in kv_store. The version
column backs compare-and-swap writes; it starts at 1 and increments on every
write to the key.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from eras.observability.logging import get_logger

logger = get_logger(__name__)

EXPECTED_TABLES = ("kv_store",)


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Args:
        db_path: Path to the database file

    Side Effects:
    - Creates the parent directory if needed
    - Creates kv_store and its index if they don't exist
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_kv_store_updated_at ON kv_store(updated_at);
        """)
        conn.commit()
    finally:
        conn.close()

    logger.info("Database schema ready at %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Check that every expected table exists.

    Raises:
        ValueError: If a table is missing
    """
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    present = {row[0] for row in rows}
    missing = [table for table in EXPECTED_TABLES if table not in present]
    if missing:
        raise ValueError(f"Missing tables: {', '.join(missing)}")
    return True
