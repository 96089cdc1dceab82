"""
Key-value record store.

Legacy access records are whole JSON documents addressed by string keys:

- legacy_access_{ownerId}        one LegacyAccessConfig per owner
- unlock_token_{tokenId}         issued UnlockTokens
- cancel_unlock_{cancelToken}    grace-period cancel links
- verification_token_{token}     token -> (owner, beneficiary) index
- owner_profile_{ownerId}        owner email/display name for sweeps

Every key carries a version that increments on each write, which lets callers
do compare-and-swap updates on records that several writers touch.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, Protocol

from eras.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from eras.observability.logging import get_logger

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    """Interface the legacy access core needs from its record store."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def get_by_prefix(self, prefix: str) -> list[Any]:
        """Return every value whose key starts with prefix (case-sensitive)."""
        ...

    def get_versioned(self, key: str) -> tuple[Any, int] | None:
        """Return (value, version) or None if the key is absent."""
        ...

    def compare_and_set(self, key: str, value: Any, expected_version: int | None) -> bool:
        """
        Write value only if the stored version still equals expected_version.

        expected_version=None means "only if the key does not exist yet".
        Returns False when another writer got there first.
        """
        ...


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class SQLiteKeyValueStore:
    """KeyValueStore backed by the kv_store table of the shared SQLite database."""

    @retry_on_db_lock()
    def get(self, key: str) -> Any | None:
        with get_db_connection() as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        return json.loads(row["value"]) if row else None

    @retry_on_db_lock()
    def set(self, key: str, value: Any) -> None:
        """
        Unconditional upsert.

        Side Effects:
            - Writes the row and bumps its version
        """
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO kv_store (key, value, version, updated_at)
                VALUES (?, ?, 1, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    version = kv_store.version + 1,
                    updated_at = excluded.updated_at
                """,
                (key, json.dumps(value), _now_iso()),
            )

    @retry_on_db_lock()
    def delete(self, key: str) -> None:
        with db_transaction() as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))

    @retry_on_db_lock()
    def get_by_prefix(self, prefix: str) -> list[Any]:
        # substr comparison instead of LIKE: LIKE is case-insensitive and treats _ as a wildcard
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT value FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [json.loads(row["value"]) for row in rows]

    @retry_on_db_lock()
    def get_versioned(self, key: str) -> tuple[Any, int] | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT value, version FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
        if not row:
            return None
        return json.loads(row["value"]), row["version"]

    @retry_on_db_lock()
    def compare_and_set(self, key: str, value: Any, expected_version: int | None) -> bool:
        """
        Conditional write.

        Side Effects:
            - Inserts or updates the row when the version matches
        """
        payload = json.dumps(value)
        with db_transaction() as conn:
            if expected_version is None:
                cursor = conn.execute(
                    """
                    INSERT INTO kv_store (key, value, version, updated_at)
                    VALUES (?, ?, 1, ?)
                    ON CONFLICT(key) DO NOTHING
                    """,
                    (key, payload, _now_iso()),
                )
            else:
                cursor = conn.execute(
                    """
                    UPDATE kv_store
                    SET value = ?, version = version + 1, updated_at = ?
                    WHERE key = ? AND version = ?
                    """,
                    (payload, _now_iso(), key, expected_version),
                )
            written = cursor.rowcount == 1

        if not written:
            logger.debug("Conditional write lost for key %s (expected version %s)", key, expected_version)
        return written


_store: SQLiteKeyValueStore | None = None


def get_kv_store() -> SQLiteKeyValueStore:
    """Get or create the process-wide store instance."""
    global _store
    if _store is None:
        _store = SQLiteKeyValueStore()
    return _store
