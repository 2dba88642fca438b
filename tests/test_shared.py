"""
Unit tests for the shared helpers: secrets lookup, audit logging and the
database health check.
"""

import json
import subprocess
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from shared.audit import AuditLogger
from shared.db import health_check, init_database
from shared.secrets import get_optional_secret, get_secret


class _AsyncContext:
    def __init__(self, value=None):
        self.value = value

    async def __aenter__(self):
        return self.value

    async def __aexit__(self, exc_type, exc, tb):
        return False


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------


class TestSecrets:
    def test_keychain_value_preferred(self, monkeypatch):
        monkeypatch.setenv("CATALOG_SYNC_B2_ACCESS_KEY_ID", "from-env")
        completed = subprocess.CompletedProcess([], 0, stdout="from-keychain\n", stderr="")
        with patch("shared.secrets.subprocess.run", return_value=completed) as run:
            assert get_secret("b2-access-key-id") == "from-keychain"
        assert run.call_args.args[0] == [
            "secret-tool", "lookup", "service", "catalog-sync", "key", "b2-access-key-id",
        ]

    def test_env_fallback_without_secret_tool(self, monkeypatch):
        monkeypatch.setenv("CATALOG_SYNC_B2_ACCESS_KEY_ID", "from-env")
        with patch("shared.secrets.subprocess.run", side_effect=FileNotFoundError):
            assert get_secret("b2-access-key-id") == "from-env"

    def test_missing_secret_raises(self, monkeypatch):
        monkeypatch.delenv("CATALOG_SYNC_DB_PASSWORD", raising=False)
        with patch("shared.secrets.subprocess.run", side_effect=FileNotFoundError):
            with pytest.raises(RuntimeError, match="db-password"):
                get_secret("db-password")

    def test_optional_secret_returns_none(self, monkeypatch):
        """Peer-auth deployments have no database password."""
        monkeypatch.delenv("CATALOG_SYNC_DB_PASSWORD", raising=False)
        empty = subprocess.CompletedProcess([], 1, stdout="", stderr="")
        with patch("shared.secrets.subprocess.run", return_value=empty):
            assert get_optional_secret("db-password") is None


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class TestAuditLogger:
    @pytest.mark.asyncio
    async def test_writes_json_line_and_row(self, tmp_path):
        pool = MagicMock()
        pool.execute = AsyncMock()
        log_path = tmp_path / "audit" / "audit.log"
        audit = AuditLogger(pool, log_path=log_path)

        await audit.log("batch_failed", {"batchNumber": 2}, success=False)

        event = json.loads(log_path.read_text(encoding="utf-8").strip())
        assert event["service"] == "catalog-sync"
        assert event["action"] == "batch_failed"
        assert event["details"] == {"batchNumber": 2}
        assert event["success"] is False
        args = pool.execute.await_args.args
        assert args[1:] == ("catalog-sync", "batch_failed", '{"batchNumber": 2}', False)

    @pytest.mark.asyncio
    async def test_file_only_mode(self, tmp_path):
        log_path = tmp_path / "audit.log"
        audit = AuditLogger(None, log_path=log_path)
        await audit.log("sync_run_start")
        await audit.log("sync_run_complete")
        assert len(log_path.read_text(encoding="utf-8").splitlines()) == 2

    @pytest.mark.asyncio
    async def test_database_failure_is_swallowed(self, tmp_path):
        """Audit trouble must not abort a run."""
        pool = MagicMock()
        pool.execute = AsyncMock(side_effect=asyncpg.exceptions.UndefinedTableError("missing"))
        audit = AuditLogger(pool, log_path=tmp_path / "audit.log")
        await audit.log("sync_run_start")
        assert (tmp_path / "audit.log").exists()


# ---------------------------------------------------------------------------
# Database helpers
# ---------------------------------------------------------------------------


class TestDatabaseHelpers:
    @pytest.mark.asyncio
    async def test_health_check_ok(self):
        conn = MagicMock()
        conn.fetchval = AsyncMock(return_value=1)
        pool = MagicMock()
        pool.acquire = MagicMock(return_value=_AsyncContext(conn))
        assert await health_check(pool) is True

    @pytest.mark.asyncio
    async def test_health_check_connection_refused(self):
        pool = MagicMock()
        pool.acquire = MagicMock(side_effect=ConnectionRefusedError())
        assert await health_check(pool) is False

    @pytest.mark.asyncio
    async def test_init_database_creates_tables(self):
        conn = MagicMock()
        conn.execute = AsyncMock()
        conn.transaction = MagicMock(return_value=_AsyncContext())
        pool = MagicMock()
        pool.acquire = MagicMock(return_value=_AsyncContext(conn))

        await init_database(pool)

        statements = " ".join(c.args[0] for c in conn.execute.await_args_list)
        assert "CREATE TABLE IF NOT EXISTS catalog_entry" in statements
        assert "storage_key        TEXT NOT NULL UNIQUE" in statements
        assert "CREATE TABLE IF NOT EXISTS sync_audit_log" in statements
