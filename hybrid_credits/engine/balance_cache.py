"""On-device balance cache.

Holds the last-known BalanceRecord per identity so the app can show a
balance and fail fast on zero credits without a network round-trip. The
cache is written only by the reconciliation engine; it never talks to the
network.

Usage:
    cache = BalanceCache(Path("data/hybrid_credits.db"))
    cache.save(record)
    record = cache.load(identity)
    cache.clear(identity)
"""

from __future__ import annotations

import json
import logging

from .models import BalanceRecord, Identity
from .sqlite_store import SQLiteStore, _with_retry

logger = logging.getLogger(__name__)


class BalanceCache(SQLiteStore):
    """SQLite-backed BalanceRecord persistence, one row per identity key."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS balance_records (
            identity_key TEXT PRIMARY KEY,
            record_json TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """

    def load(self, identity: Identity) -> BalanceRecord | None:
        """Load the cached record for an identity.

        A row that no longer parses into a valid record is logged and
        treated as absent.

        Returns:
            BalanceRecord if found, None otherwise
        """
        def do_load() -> tuple[str, ...] | None:
            with self._connect_read() as conn:
                cursor = conn.execute(
                    "SELECT record_json FROM balance_records WHERE identity_key = ?",
                    (identity.key,),
                )
                result: tuple[str, ...] | None = cursor.fetchone()
                return result

        row = _with_retry(do_load)
        if row is None:
            return None

        try:
            return BalanceRecord.from_dict(json.loads(row[0]))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable cache entry for %s: %s", identity.key, e)
            return None

    def save(self, record: BalanceRecord) -> None:
        """Upsert the record for its identity in one transaction."""
        record_json = json.dumps(record.to_dict())

        def do_save() -> None:
            with self._connect_write() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO balance_records (identity_key, record_json, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    """,
                    (record.identity.key, record_json),
                )
                conn.commit()

        _with_retry(do_save)

    def clear(self, identity: Identity) -> None:
        """Remove the cached record for an identity."""
        def do_clear() -> None:
            with self._connect_write() as conn:
                conn.execute(
                    "DELETE FROM balance_records WHERE identity_key = ?",
                    (identity.key,),
                )
                conn.commit()

        _with_retry(do_clear)

    def list_identities(self) -> list[str]:
        """List all identity keys with a cached record."""
        def do_list() -> list[str]:
            with self._connect_read() as conn:
                cursor = conn.execute(
                    "SELECT identity_key FROM balance_records ORDER BY identity_key"
                )
                return [row[0] for row in cursor.fetchall()]

        return _with_retry(do_list)
