"""
Database helpers: connection pool management, schema initialisation,
and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  The pool is small: the
synchronizer commits one batch transaction at a time, and the
bound only leaves room for the audit writer and status queries.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import asyncpg

logger = logging.getLogger("shared.db")

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS catalog_entry (
        id                 BIGSERIAL PRIMARY KEY,
        storage_key        TEXT NOT NULL UNIQUE,
        title              TEXT NOT NULL,
        contributor        TEXT NOT NULL,
        collection         TEXT NOT NULL DEFAULT 'unknown',
        category           TEXT NOT NULL DEFAULT 'unknown',
        size_bytes         BIGINT NOT NULL DEFAULT 0 CHECK (size_bytes >= 0),
        modified_at        TIMESTAMPTZ,
        external_reference TEXT,
        popularity         INTEGER NOT NULL DEFAULT 0 CHECK (popularity >= 0),
        created_at         TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_catalog_entry_contributor
    ON catalog_entry (contributor)
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_audit_log (
        id        BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMPTZ DEFAULT NOW(),
        service   TEXT NOT NULL,
        action    TEXT NOT NULL,
        details   JSONB,
        success   BOOLEAN NOT NULL
    )
    """,
)


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(
    config: Dict[str, Any],
    password: Optional[str] = None,
) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: Database configuration dict with keys ``host``, ``port``,
                ``database``, ``user`` and optionally ``min_size``,
                ``max_size``, ``command_timeout``.  A missing ``host``
                means the local Unix socket.
        password: Password from the keychain, or ``None`` for peer auth.

    Returns:
        An ``asyncpg.Pool`` instance.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
        OSError: If the server is unreachable.
    """
    min_size = max(1, int(config.get("min_size", 1)))
    max_size = max(min_size, int(config.get("max_size", 4)))
    pool = await asyncpg.create_pool(
        host=config.get("host"),
        port=config.get("port", 5432),
        database=config.get("database", "catalog"),
        user=config.get("user"),
        password=password,
        min_size=min_size,
        max_size=max_size,
        command_timeout=config.get("command_timeout", 60),
    )
    logger.info(
        "Database pool created: %s@%s/%s (size %d-%d)",
        config.get("user"),
        config.get("host") or "local socket",
        config.get("database", "catalog"),
        min_size,
        max_size,
    )
    return pool


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------


async def init_database(pool: asyncpg.Pool) -> None:
    """Create tables and indexes if they do not exist.

    Executed once at startup.  Idempotent (uses IF NOT EXISTS).

    Tables:
        - ``catalog_entry``: one row per remote object, unique on
          ``storage_key``.
        - ``sync_audit_log``: structured audit events.
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in _SCHEMA_STATEMENTS:
                await conn.execute(statement)
    logger.info("Database schema verified")


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """Verify the database is reachable and responsive.

    Returns:
        ``True`` if a simple query succeeds, ``False`` otherwise.
    """
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1;")
            return result == 1
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError):
        logger.exception("Database health check failed")
        return False
