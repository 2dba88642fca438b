"""
Value types shared across the synchronizer pipeline.

``SyncCheckpoint`` is serialised with camelCase keys so the progress file
stays readable by operators and by older tooling that inspected it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

BATCH_COMMITTED = "committed"
BATCH_FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; leave aware ones untouched."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_timestamp(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(str(raw)))
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class ObjectDescriptor:
    """One object as reported by the remote listing."""

    key: str
    size_bytes: int
    last_modified: Optional[datetime] = None


@dataclass(slots=True)
class CatalogEntry:
    """Candidate row for the ``catalog_entry`` table."""

    storage_key: str
    title: str
    contributor: str
    collection: str
    category: str
    size_bytes: int
    modified_at: Optional[datetime]
    external_reference: Optional[str] = None
    popularity: int = 0


@dataclass(slots=True)
class BatchOutcome:
    """Diagnostic record for one batch, appended to the checkpoint log."""

    batch_number: int
    status: str
    size: int
    attempts: int = 1
    first_key: Optional[str] = None
    last_key: Optional[str] = None
    inserted: int = 0
    updated: int = 0
    error_message: Optional[str] = None
    finished_at: datetime = field(default_factory=utcnow)

    @property
    def committed(self) -> bool:
        return self.status == BATCH_COMMITTED

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "batchNumber": self.batch_number,
            "status": self.status,
            "size": self.size,
            "attempts": self.attempts,
            "firstKey": self.first_key,
            "lastKey": self.last_key,
            "inserted": self.inserted,
            "updated": self.updated,
            "finishedAt": self.finished_at.isoformat(),
        }
        if self.error_message:
            data["errorMessage"] = self.error_message
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchOutcome":
        return cls(
            batch_number=int(data["batchNumber"]),
            status=str(data.get("status", BATCH_FAILED)),
            size=int(data.get("size", 0)),
            attempts=int(data.get("attempts", 1)),
            first_key=data.get("firstKey"),
            last_key=data.get("lastKey"),
            inserted=int(data.get("inserted", 0)),
            updated=int(data.get("updated", 0)),
            error_message=data.get("errorMessage"),
            finished_at=_parse_timestamp(data.get("finishedAt")) or utcnow(),
        )


@dataclass(slots=True)
class SyncCheckpoint:
    """Durable progress of one synchronization run.

    A run may span several passes when the process is interrupted; each
    pass re-derives the listing from scratch, so per-pass counters are
    reset by :meth:`begin_pass` while ``started_at`` is preserved.
    """

    started_at: datetime = field(default_factory=utcnow)
    last_processed_key: Optional[str] = None
    total_processed: int = 0
    total_discovered: int = 0
    passes: int = 1
    batch_log: List[BatchOutcome] = field(default_factory=list)

    def begin_pass(self) -> None:
        self.passes += 1
        self.last_processed_key = None
        self.total_processed = 0
        self.batch_log = []

    def record(self, outcome: BatchOutcome) -> None:
        self.batch_log.append(outcome)
        if outcome.committed:
            self.total_processed += outcome.size
            self.last_processed_key = outcome.last_key

    @property
    def failed_batches(self) -> List[BatchOutcome]:
        return [b for b in self.batch_log if not b.committed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastProcessedKey": self.last_processed_key,
            "totalProcessed": self.total_processed,
            "totalDiscovered": self.total_discovered,
            "startedAt": self.started_at.isoformat(),
            "passes": self.passes,
            "batchLog": [b.to_dict() for b in self.batch_log],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncCheckpoint":
        return cls(
            started_at=_parse_timestamp(data.get("startedAt")) or utcnow(),
            last_processed_key=data.get("lastProcessedKey"),
            total_processed=int(data.get("totalProcessed", 0)),
            total_discovered=int(data.get("totalDiscovered", 0)),
            passes=max(1, int(data.get("passes", 1))),
            batch_log=[BatchOutcome.from_dict(b) for b in data.get("batchLog", [])],
        )


@dataclass(slots=True)
class SyncReport:
    """Terminal summary of one pass."""

    batches_committed: int = 0
    batches_failed: int = 0
    failed_batch_numbers: List[int] = field(default_factory=list)
    objects_committed: int = 0
    objects_inserted: int = 0
    objects_updated: int = 0
    objects_failed: int = 0
    pages_fetched: int = 0
    objects_seen: int = 0
    objects_matched: int = 0
    bytes_matched: int = 0
    elapsed_seconds: float = 0.0
    completed: bool = False
    cancelled: bool = False
    checkpoint_cleared: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "batches_committed": self.batches_committed,
            "batches_failed": self.batches_failed,
            "failed_batch_numbers": list(self.failed_batch_numbers),
            "objects_committed": self.objects_committed,
            "objects_inserted": self.objects_inserted,
            "objects_updated": self.objects_updated,
            "objects_failed": self.objects_failed,
            "pages_fetched": self.pages_fetched,
            "objects_seen": self.objects_seen,
            "objects_matched": self.objects_matched,
            "bytes_matched": self.bytes_matched,
            "elapsed_seconds": round(self.elapsed_seconds, 1),
            "completed": self.completed,
            "cancelled": self.cancelled,
            "checkpoint_cleared": self.checkpoint_cleared,
        }
