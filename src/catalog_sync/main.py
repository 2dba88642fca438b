"""
Catalog synchronizer entry point: lists every media object in the remote
bucket and reconciles it into the ``catalog_entry`` table in PostgreSQL.

Runs as a one-shot batch job (systemd timer or cron) under the
``catalog-sync`` user.

Key behaviours:
    - Loads configuration from ``/etc/catalog-sync/settings.toml``.
    - Streams the listing page by page; memory is bounded by one batch.
    - Commits each batch in its own transaction, retried with backoff.
    - Saves the checkpoint after every batch and clears it on full success.
    - Handles SIGTERM / SIGINT between batches for graceful shutdown.
    - Logs run start, failed batches and the outcome to the audit log.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import signal
import sys
import threading
import time
from contextlib import aclosing
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import asyncpg
import toml
from botocore.exceptions import BotoCoreError, ClientError

from catalog_sync.catalog_store import CatalogStore
from catalog_sync.checkpoint import CheckpointStore
from catalog_sync.errors import ListingError, StartupError
from catalog_sync.listing import (
    ListingClient,
    ListingSource,
    ObjectFilter,
    S3ListingClient,
    create_s3_client,
)
from catalog_sync.models import (
    BATCH_COMMITTED,
    BATCH_FAILED,
    BatchOutcome,
    SyncCheckpoint,
    SyncReport,
)
from catalog_sync.planner import BatchPlanner, EntryBuilder, PlannedBatch
from catalog_sync.progress import SyncProgress, run_heartbeat
from catalog_sync.retry import RetryController, RetryPolicy, is_transient_error
from catalog_sync.settings import DEFAULT_CONFIG_PATH, SyncSettings, load_config
from catalog_sync.throttle import Throttle
from shared.audit import AuditLogger
from shared.db import get_connection_pool, health_check, init_database
from shared.secrets import get_optional_secret, get_secret

logger = logging.getLogger("catalog_sync.main")

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_STARTUP_FAILED = 2
EXIT_CANCELLED = 130


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

_shutdown_event: threading.Event = threading.Event()


def _handle_signal(sig: int, frame: Any) -> None:
    """Signal handler: sets the shutdown event so the pipeline stops between batches."""
    logger.info("Received signal %s, finishing current batch before shutdown...", sig)
    _shutdown_event.set()


# ---------------------------------------------------------------------------
# Pipeline construction
# ---------------------------------------------------------------------------


def build_retry_controller(settings: SyncSettings) -> RetryController:
    return RetryController(
        RetryPolicy(
            max_attempts=settings.max_retry_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )
    )


def build_throttle(settings: SyncSettings, shutdown: threading.Event) -> Throttle:
    return Throttle(
        interval_batches=settings.throttle_interval_batches,
        batch_delay_seconds=settings.throttle_delay_ms / 1000.0,
        page_delay_seconds=settings.page_delay_ms / 1000.0,
        shutdown=shutdown,
    )


def build_listing_source(
    client: ListingClient,
    settings: SyncSettings,
    retry: RetryController,
    throttle: Optional[Throttle] = None,
) -> ListingSource:
    return ListingSource(
        client,
        retry,
        page_size=settings.page_size,
        max_pages=settings.max_pages_per_run,
        throttle=throttle,
    )


# ---------------------------------------------------------------------------
# Sync logic
# ---------------------------------------------------------------------------


async def _audit(
    audit: Optional[AuditLogger],
    action: str,
    details: Dict[str, Any],
    success: bool = True,
) -> None:
    if audit is not None:
        await audit.log(action, details, success=success)


async def commit_batch(
    batch: PlannedBatch,
    store: CatalogStore,
    retry: RetryController,
) -> BatchOutcome:
    """Apply one batch under the retry policy and describe the outcome.

    Failures are recorded, not raised: the batch's objects are picked up
    again by the next run because the upsert is idempotent.
    """
    try:
        result, attempts = await retry.execute_with_attempts(
            store.apply_batch,
            batch.entries,
            description=f"Batch {batch.number} commit",
        )
    except Exception as exc:
        attempts = retry.policy.max_attempts if is_transient_error(exc) else 1
        logger.error(
            "Batch %d (%d objects) failed after %d attempt(s): %s: %s",
            batch.number,
            batch.size,
            attempts,
            type(exc).__name__,
            exc,
        )
        return BatchOutcome(
            batch_number=batch.number,
            status=BATCH_FAILED,
            size=batch.size,
            attempts=attempts,
            first_key=batch.first_key,
            last_key=batch.last_key,
            error_message=f"{type(exc).__name__}: {exc}",
        )

    logger.debug(
        "Batch %d committed: %d new, %d updated", batch.number, result.inserted, result.updated
    )
    return BatchOutcome(
        batch_number=batch.number,
        status=BATCH_COMMITTED,
        size=batch.size,
        attempts=attempts,
        first_key=batch.first_key,
        last_key=batch.last_key,
        inserted=result.inserted,
        updated=result.updated,
    )


def _load_or_start_checkpoint(checkpoints: CheckpointStore) -> SyncCheckpoint:
    checkpoint = checkpoints.load()
    if checkpoint is None:
        logger.info("Starting new sync run")
        return SyncCheckpoint()

    logger.info(
        "Resuming incomplete run started %s (pass %d): previous pass committed "
        "%d objects up to %r with %d failed batches; listing restarts from the "
        "beginning and already-committed objects are upserted again",
        checkpoint.started_at.isoformat(),
        checkpoint.passes + 1,
        checkpoint.total_processed,
        checkpoint.last_processed_key,
        len(checkpoint.failed_batches),
    )
    checkpoint.begin_pass()
    return checkpoint


def _record_outcome(report: SyncReport, outcome: BatchOutcome) -> None:
    if outcome.committed:
        report.batches_committed += 1
        report.objects_committed += outcome.size
        report.objects_inserted += outcome.inserted
        report.objects_updated += outcome.updated
    else:
        report.batches_failed += 1
        report.objects_failed += outcome.size
        report.failed_batch_numbers.append(outcome.batch_number)


async def sync_catalog(
    source: ListingSource,
    store: CatalogStore,
    checkpoints: CheckpointStore,
    settings: SyncSettings,
    retry: RetryController,
    throttle: Throttle,
    audit: Optional[AuditLogger] = None,
    shutdown: Optional[threading.Event] = None,
) -> SyncReport:
    """Run one synchronization pass over the full listing.

    Args:
        source: Listing source (already bound to its client and retry policy).
        store: Catalog writer applying each batch atomically.
        checkpoints: Durable progress store.
        settings: Run tunables.
        retry: Retry controller for batch commits.
        throttle: Inter-batch pacing.
        audit: Optional audit logger.
        shutdown: Event checked between batches.

    Returns:
        Summary of the pass.

    Raises:
        ListingError: If the listing cannot be completed; the checkpoint
            still reflects the last batch that was processed.
    """
    shutdown = shutdown if shutdown is not None else _shutdown_event
    started = time.monotonic()
    object_filter = ObjectFilter(settings.extensions, settings.min_size_bytes)
    planner = BatchPlanner(
        settings.batch_size,
        EntryBuilder(
            separator=settings.title_separator,
            unknown=settings.unknown_value,
            default_collection=settings.default_collection,
            default_category=settings.default_category,
        ),
    )

    checkpoint = _load_or_start_checkpoint(checkpoints)
    checkpoints.save(checkpoint)
    report = SyncReport()

    await _audit(
        audit,
        "sync_run_start",
        {
            "pass": checkpoint.passes,
            "started_at": checkpoint.started_at.isoformat(),
            "prefix": settings.prefix,
            "batch_size": planner.batch_size,
            "max_pages_per_run": settings.max_pages_per_run,
        },
    )

    if settings.enable_prescan and not shutdown.is_set():
        checkpoint.total_discovered = await source.count_matching(
            settings.prefix, object_filter
        )
        checkpoints.save(checkpoint)

    progress = SyncProgress(
        estimated_total=checkpoint.total_discovered,
        log_interval_batches=settings.progress_log_interval_batches,
    )
    heartbeat_stop = threading.Event()
    heartbeat = asyncio.create_task(
        run_heartbeat(progress, settings.progress_heartbeat_seconds, heartbeat_stop),
        name="catalog-sync-heartbeat",
    )

    def _finish_report() -> None:
        report.pages_fetched = source.stats.pages_fetched
        report.objects_seen = source.stats.objects_seen
        report.objects_matched = source.stats.objects_matched
        report.bytes_matched = source.stats.bytes_matched
        report.elapsed_seconds = time.monotonic() - started

    try:
        listing = source.list_all(settings.prefix, object_filter)
        async with aclosing(listing), aclosing(planner.plan(listing)) as batches:
            async for batch in batches:
                if shutdown.is_set():
                    report.cancelled = True
                    logger.info(
                        "Shutdown requested; batch %d was not started", batch.number
                    )
                    break

                outcome = await commit_batch(batch, store, retry)

                checkpoint.record(outcome)
                checkpoint.total_discovered = max(
                    checkpoint.total_discovered, source.stats.objects_matched
                )
                checkpoints.save(checkpoint)

                _record_outcome(report, outcome)
                # The matched count trails the planner until the listing is exhausted.
                if source.stats.exhausted:
                    progress.observe_total(source.stats.objects_matched)
                progress.record_batch(outcome.size, outcome.committed)
                if not outcome.committed:
                    await _audit(audit, "batch_failed", outcome.to_dict(), success=False)
                if progress.should_log():
                    progress.log_progress()

                if shutdown.is_set():
                    report.cancelled = True
                    logger.info(
                        "Shutdown requested; stopping after batch %d", batch.number
                    )
                    break
                await throttle.after_batch(batch.number)
    except ListingError as exc:
        _finish_report()
        checkpoints.save(checkpoint)
        progress.log_summary(report)
        await _audit(
            audit,
            "sync_run_failed",
            {"error": str(exc), **report.as_dict()},
            success=False,
        )
        raise
    finally:
        heartbeat_stop.set()
        await heartbeat

    if shutdown.is_set():
        report.cancelled = True
    _finish_report()
    report.completed = source.stats.exhausted and not report.cancelled

    if report.completed and report.batches_failed == 0:
        checkpoints.clear()
        report.checkpoint_cleared = True
    else:
        checkpoints.save(checkpoint)
        logger.info("Checkpoint kept at %s", checkpoints.path)

    progress.log_summary(report)
    await _audit(
        audit,
        "sync_run_complete",
        report.as_dict(),
        success=report.completed and report.batches_failed == 0,
    )
    return report


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


async def _connect_database(config: Dict[str, Any]) -> asyncpg.Pool:
    """Create the pool, verify connectivity and ensure the schema exists."""
    password = get_optional_secret("db-password")
    try:
        pool = await get_connection_pool(config["database"], password)
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
        raise StartupError(f"Database is not reachable: {exc}") from exc

    try:
        if not await health_check(pool):
            raise StartupError("Database health check failed")
        await init_database(pool)
    except asyncpg.PostgresError as exc:
        await pool.close()
        raise StartupError(f"Database schema initialisation failed: {exc}") from exc
    except StartupError:
        await pool.close()
        raise
    return pool


async def _connect_storage(config: Dict[str, Any]) -> S3ListingClient:
    """Build the S3 client and verify the bucket is reachable."""
    storage = config["storage"]
    try:
        access_key_id = get_secret("b2-access-key-id")
        secret_access_key = get_secret("b2-secret-access-key")
    except RuntimeError as exc:
        raise StartupError(str(exc)) from exc

    client = create_s3_client(storage, access_key_id, secret_access_key)
    listing_client = S3ListingClient(client, storage["bucket"])
    try:
        await listing_client.check_access()
    except (BotoCoreError, ClientError) as exc:
        raise StartupError(
            f"Bucket {storage['bucket']!r} is not reachable: {exc}"
        ) from exc
    logger.info("Bucket %s reachable", storage["bucket"])
    return listing_client


async def _print_status(checkpoints: CheckpointStore, store: CatalogStore) -> None:
    stats = await store.get_catalog_stats()
    print(
        f"Catalog: {stats['total_entries']} entries, {stats['total_bytes']} bytes, "
        f"last modified {stats['last_modified'] or 'n/a'}"
    )
    checkpoint = checkpoints.load()
    if checkpoint is None:
        print(f"No incomplete run (no checkpoint at {checkpoints.path})")
        return
    failed = checkpoint.failed_batches
    print(f"Incomplete run started {checkpoint.started_at.isoformat()} (pass {checkpoint.passes})")
    print(
        f"  {checkpoint.total_processed}/~{checkpoint.total_discovered} objects committed, "
        f"last key {checkpoint.last_processed_key!r}"
    )
    print(f"  {len(checkpoint.batch_log)} batches logged, {len(failed)} failed")
    for outcome in failed:
        print(f"    batch {outcome.batch_number}: {outcome.error_message}")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="catalog-sync",
        description="Synchronize the remote media listing into the catalog table.",
    )
    parser.add_argument(
        "--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Path to settings.toml"
    )
    parser.add_argument(
        "--max-pages",
        type=int,
        default=None,
        help="Override sync.max_pages_per_run (0 = unlimited)",
    )
    parser.add_argument(
        "--reset-checkpoint",
        action="store_true",
        help="Discard the checkpoint of a previous incomplete run first",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print catalog and checkpoint status, then exit",
    )
    return parser.parse_args(argv)


async def main(argv: Optional[Sequence[str]] = None) -> int:
    """Top-level async entry point; returns the process exit code."""
    args = _parse_args(argv)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, KeyError, toml.TomlDecodeError) as exc:
        logger.error("Configuration error (%s): %s", args.config, exc)
        return EXIT_STARTUP_FAILED

    settings = SyncSettings.from_config(config)
    if args.max_pages is not None:
        settings = dataclasses.replace(settings, max_pages_per_run=max(0, args.max_pages))
    checkpoints = CheckpointStore(settings.checkpoint_path)

    pool: Optional[asyncpg.Pool] = None
    try:
        try:
            pool = await _connect_database(config)
            store = CatalogStore(pool, statement_timeout=settings.statement_timeout_seconds)
            if args.status:
                await _print_status(checkpoints, store)
                return EXIT_OK
            listing_client = await _connect_storage(config)
        except StartupError as exc:
            logger.error("Startup failed, nothing was listed or written: %s", exc)
            return EXIT_STARTUP_FAILED

        if args.reset_checkpoint:
            checkpoints.clear()

        audit_config = config.get("audit", {})
        audit = None
        if audit_config.get("enabled", True):
            audit = AuditLogger(
                pool,
                log_path=Path(audit_config.get("log_path", "/var/log/catalog-sync/audit.log")),
            )

        retry = build_retry_controller(settings)
        throttle = build_throttle(settings, _shutdown_event)
        source = build_listing_source(listing_client, settings, retry, throttle)

        try:
            report = await sync_catalog(
                source,
                store,
                checkpoints,
                settings,
                retry,
                throttle,
                audit=audit,
                shutdown=_shutdown_event,
            )
        except ListingError as exc:
            logger.error("Sync run failed: %s", exc)
            logger.error("Progress saved in %s; re-run to resume", checkpoints.path)
            return EXIT_RUN_FAILED

        if report.cancelled:
            return EXIT_CANCELLED
        return EXIT_OK
    finally:
        if pool is not None:
            try:
                await pool.close()
            except Exception:
                logger.exception("Failed to close database pool")


def run() -> None:
    """Synchronous entry point (console script or systemd)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    for noisy in ("botocore", "boto3", "urllib3", "s3transfer"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
