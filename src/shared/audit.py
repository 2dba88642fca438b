"""
Structured audit logging: writes run-level events to both a JSON Lines
file and the PostgreSQL ``sync_audit_log`` table.

Every significant action (run start, failed batch, run completion or
failure) is recorded with a timestamp, service name, action, details dict,
and success flag.  Audit failures are logged and swallowed: the audit
trail must never break a synchronization run.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import asyncpg

logger = logging.getLogger("shared.audit")

_DEFAULT_LOG_PATH = Path("/var/log/catalog-sync/audit.log")
_INSERT_AUDIT_SQL = (
    "INSERT INTO sync_audit_log (service, action, details, success) "
    "VALUES ($1, $2, $3::jsonb, $4)"
)


class AuditLogger:
    """Audit logger that writes to a file and, when a pool is given, the DB.

    Args:
        pool: ``asyncpg`` connection pool, or ``None`` for file-only mode.
        log_path: Path to the JSON Lines audit log file.
        service: Service label stored with every event.
    """

    def __init__(
        self,
        pool: Optional[asyncpg.Pool],
        log_path: Path = _DEFAULT_LOG_PATH,
        service: str = "catalog-sync",
    ) -> None:
        self._pool = pool
        self._log_path = Path(log_path)
        self._service = service

    def _append_line(self, line: str) -> None:
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as handle:
                handle.write(line)
        except OSError:
            logger.exception("Failed to write audit log file")

    async def log(
        self,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Record an audit event.

        Args:
            action: Action identifier (e.g. ``"sync_run_start"``,
                    ``"batch_failed"``, ``"sync_run_complete"``).
            details: JSON-serialisable metadata.
            success: Whether the action succeeded.
        """
        details_payload = details or {}
        details_json = json.dumps(details_payload, default=str)
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": self._service,
            "action": action,
            "details": details_payload,
            "success": success,
        }
        self._append_line(json.dumps(event, default=str) + "\n")

        if self._pool is None:
            return
        try:
            await self._pool.execute(
                _INSERT_AUDIT_SQL, self._service, action, details_json, success
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError):
            logger.exception("Failed to write audit log to database")
