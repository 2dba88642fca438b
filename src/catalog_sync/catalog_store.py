"""
PostgreSQL catalog storage for the synchronizer (the upsert executor).

Uses ``asyncpg`` for async database access.  All queries use parameterized
placeholders ($1, $2, ...): **never** string interpolation, to prevent
SQL injection.

Each batch is applied inside a single transaction: either every entry in
the batch is inserted/updated, or none is.  Existing keys get their
``size_bytes`` and ``modified_at`` refreshed and ``popularity`` bumped by
one; new keys start at ``popularity = 0``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import asyncpg

from catalog_sync.models import CatalogEntry

logger = logging.getLogger("catalog_sync.catalog_store")

# PostgreSQL's wire protocol caps bind parameters per statement.
_MAX_BIND_PARAMS = 32767
_ROW_WIDTH = 7
_COLUMNS = (
    "storage_key, title, contributor, collection, category, "
    "size_bytes, modified_at, popularity"
)
_UPSERT_SUFFIX = """
    ON CONFLICT (storage_key) DO UPDATE SET
        size_bytes = EXCLUDED.size_bytes,
        modified_at = EXCLUDED.modified_at,
        popularity = catalog_entry.popularity + 1
    RETURNING (xmax = 0) AS inserted
"""


@dataclass(slots=True)
class BatchResult:
    inserted: int = 0
    updated: int = 0

    @property
    def committed(self) -> int:
        return self.inserted + self.updated


def dedupe_entries(entries: Sequence[CatalogEntry]) -> List[CatalogEntry]:
    """Collapse repeated storage keys, keeping the last occurrence.

    PostgreSQL rejects an ``ON CONFLICT DO UPDATE`` statement that would
    touch the same row twice.
    """
    by_key: Dict[str, CatalogEntry] = {}
    for entry in entries:
        by_key.pop(entry.storage_key, None)
        by_key[entry.storage_key] = entry
    return list(by_key.values())


class CatalogStore:
    """Manages ``catalog_entry`` persistence in PostgreSQL.

    Args:
        pool: An ``asyncpg`` connection pool (created via
              :func:`shared.db.get_connection_pool`).
        statement_timeout: Per-statement timeout in seconds.
        max_rows_per_statement: Upper bound on rows per INSERT; larger
              batches are split across statements in the same transaction.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        statement_timeout: Optional[float] = 60.0,
        max_rows_per_statement: Optional[int] = None,
    ) -> None:
        self._pool = pool
        self._timeout = statement_timeout
        limit = _MAX_BIND_PARAMS // _ROW_WIDTH
        if max_rows_per_statement:
            limit = min(limit, max(1, int(max_rows_per_statement)))
        self._rows_per_statement = limit
        self._upsert_sql_cache: Dict[int, str] = {}

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    @staticmethod
    def _entry_params(entry: CatalogEntry) -> tuple:
        return (
            entry.storage_key,
            entry.title,
            entry.contributor,
            entry.collection,
            entry.category,
            entry.size_bytes,
            entry.modified_at,
        )

    def _upsert_sql(self, row_count: int) -> str:
        sql = self._upsert_sql_cache.get(row_count)
        if sql is None:
            values_sql: List[str] = []
            for idx in range(row_count):
                base = idx * _ROW_WIDTH
                placeholders = ", ".join(
                    f"${base + i}" for i in range(1, _ROW_WIDTH + 1)
                )
                values_sql.append(f"({placeholders}, 0)")
            sql = (
                f"INSERT INTO catalog_entry ({_COLUMNS}) VALUES "
                + ", ".join(values_sql)
                + _UPSERT_SUFFIX
            )
            self._upsert_sql_cache[row_count] = sql
        return sql

    async def apply_batch(self, entries: Sequence[CatalogEntry]) -> BatchResult:
        """Upsert a batch atomically.

        Returns:
            Counts of newly inserted and updated rows.

        Raises:
            asyncpg.PostgresError: On any database failure; the transaction
                is rolled back and no row of the batch is committed.
        """
        rows = dedupe_entries(entries)
        if not rows:
            return BatchResult()
        if len(rows) != len(entries):
            logger.debug(
                "Collapsed %d duplicate keys in batch", len(entries) - len(rows)
            )

        result = BatchResult()
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for start in range(0, len(rows), self._rows_per_statement):
                    chunk = rows[start:start + self._rows_per_statement]
                    params: List[Any] = []
                    for entry in chunk:
                        params.extend(self._entry_params(entry))
                    records = await conn.fetch(
                        self._upsert_sql(len(chunk)), *params, timeout=self._timeout
                    )
                    inserted = sum(1 for record in records if record["inserted"])
                    result.inserted += inserted
                    result.updated += len(records) - inserted

        logger.debug(
            "Batch upsert: %d inserted, %d updated", result.inserted, result.updated
        )
        return result

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def get_catalog_stats(self) -> Dict[str, Any]:
        """Return summary statistics for status output."""
        row = await self._pool.fetchrow(
            """
            SELECT COUNT(*) AS total_entries,
                   COALESCE(SUM(size_bytes), 0) AS total_bytes,
                   MAX(modified_at) AS last_modified
            FROM catalog_entry
            """
        )
        last_modified = row["last_modified"] if row else None
        return {
            "total_entries": int(row["total_entries"]) if row else 0,
            "total_bytes": int(row["total_bytes"]) if row else 0,
            "last_modified": last_modified.isoformat() if last_modified else None,
        }
