"""
Checkpoint store: durable JSON record of synchronization progress.

The file lives outside the catalog database so progress survives a lost
database connection.  Writes go to a temporary file in the same directory
and are moved into place with ``os.replace``; a crash mid-write leaves the
previous checkpoint intact.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from catalog_sync.models import SyncCheckpoint

logger = logging.getLogger("catalog_sync.checkpoint")


class CheckpointStore:
    """Load/save/clear a :class:`SyncCheckpoint` at ``path``."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[SyncCheckpoint]:
        """Return the stored checkpoint, or ``None`` if absent or unreadable."""
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return SyncCheckpoint.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning(
                "Unreadable checkpoint at %s, ignoring", self.path, exc_info=True
            )
            return None

    def save(self, checkpoint: SyncCheckpoint) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(checkpoint.to_dict(), indent=2, ensure_ascii=False) + "\n"
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def clear(self) -> None:
        try:
            self.path.unlink()
            logger.info("Checkpoint cleared: %s", self.path)
        except FileNotFoundError:
            pass
