"""
Sync progress tracking with throughput and ETA for journalctl output.

``SyncProgress`` is updated by the pipeline after every batch.  The
optional heartbeat task (:func:`run_heartbeat`) only reads it, so long
batches or slow pages still leave a trace in the logs.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Optional

from catalog_sync.models import SyncReport

logger = logging.getLogger("catalog_sync.progress")


def _format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples: ``"45s"``, ``"2m 30s"``, ``"1h 15m"``.
    """
    if seconds < 0:
        return "0s"
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if mins else f"{hours}h"


def _format_bytes(size: int) -> str:
    gib = size / (1024 ** 3)
    if gib >= 1:
        return f"{gib:.2f} GB"
    return f"{size / (1024 ** 2):.1f} MB"


class SyncProgress:
    """Cumulative counters for one pass.

    Args:
        estimated_total: Best known size of the filtered listing (may be 0).
        log_interval_batches: Emit a progress line every N batches.
    """

    def __init__(self, estimated_total: int = 0, log_interval_batches: int = 10) -> None:
        self.estimated_total = max(0, estimated_total)
        self.log_interval_batches = max(0, log_interval_batches)
        self.processed = 0
        self.committed = 0
        self.failed = 0
        self.batches_committed = 0
        self.batches_failed = 0
        self._start = time.monotonic()

    @property
    def batches(self) -> int:
        return self.batches_committed + self.batches_failed

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    @property
    def rate(self) -> float:
        """Objects processed per second."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.processed / elapsed

    @property
    def percent(self) -> Optional[int]:
        if self.estimated_total <= 0:
            return None
        return min(100, int(self.processed / self.estimated_total * 100))

    @property
    def eta_seconds(self) -> float | None:
        """Estimated seconds remaining, or None if no estimate possible."""
        if self.estimated_total <= 0 or self.rate <= 0:
            return None
        remaining = max(0, self.estimated_total - self.processed)
        return remaining / self.rate

    def observe_total(self, discovered: int) -> None:
        """Raise the estimate when the listing outgrows it."""
        if discovered > self.estimated_total:
            self.estimated_total = discovered

    def record_batch(self, size: int, committed: bool) -> None:
        self.processed += size
        if committed:
            self.committed += size
            self.batches_committed += 1
        else:
            self.failed += size
            self.batches_failed += 1

    def should_log(self) -> bool:
        return bool(self.log_interval_batches) and self.batches % self.log_interval_batches == 0

    def log_progress(self) -> None:
        rate_str = f"{self.rate:.1f} obj/s"
        elapsed = _format_duration(self.elapsed_seconds)
        pct = self.percent
        if pct is not None:
            eta = self.eta_seconds
            eta_str = f"ETA: ~{_format_duration(eta)}" if eta is not None else ""
            logger.info(
                "  Progress: %d/~%d objects (%d%%) in %d batches | %s | elapsed %s | %s",
                self.processed,
                self.estimated_total,
                pct,
                self.batches,
                rate_str,
                elapsed,
                eta_str,
            )
        else:
            logger.info(
                "  Progress: %d objects in %d batches | %s | elapsed %s",
                self.processed,
                self.batches,
                rate_str,
                elapsed,
            )

    def log_summary(self, report: SyncReport) -> None:
        """Log the terminal summary for a pass."""
        if report.cancelled:
            headline = "Sync pass cancelled"
        elif not report.completed:
            headline = "Sync pass stopped before the listing was exhausted"
        elif report.batches_failed:
            headline = "Sync pass completed with failed batches"
        else:
            headline = "Sync pass completed"
        logger.info("=" * 60)
        logger.info(headline)
        logger.info(
            "  Batches: %d committed, %d failed",
            report.batches_committed,
            report.batches_failed,
        )
        logger.info(
            "  Objects: %d committed (%d new, %d updated), %d failed",
            report.objects_committed,
            report.objects_inserted,
            report.objects_updated,
            report.objects_failed,
        )
        logger.info(
            "  Listing: %d pages, %d objects seen, %d matched (%s)",
            report.pages_fetched,
            report.objects_seen,
            report.objects_matched,
            _format_bytes(report.bytes_matched),
        )
        avg_rate = (
            report.objects_committed / report.elapsed_seconds
            if report.elapsed_seconds > 0
            else 0.0
        )
        logger.info(
            "  Time: %s (%.1f obj/s)", _format_duration(report.elapsed_seconds), avg_rate
        )
        if report.failed_batch_numbers:
            logger.warning(
                "  Failed batches: %s (objects will be retried on the next run)",
                ", ".join(str(n) for n in report.failed_batch_numbers),
            )
        logger.info("=" * 60)


async def run_heartbeat(
    progress: SyncProgress,
    interval_seconds: float,
    stop: threading.Event | asyncio.Event,
) -> None:
    """Log a progress line every ``interval_seconds`` until ``stop`` is set."""
    if interval_seconds <= 0:
        return
    waited = 0.0
    while not stop.is_set():
        tick = min(0.5, interval_seconds)
        await asyncio.sleep(tick)
        waited += tick
        if waited >= interval_seconds:
            waited = 0.0
            if not stop.is_set():
                progress.log_progress()
