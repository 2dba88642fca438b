"""
Shared fakes for the synchronizer tests: a paginated listing client and an
in-memory catalog with the same all-or-nothing batch semantics as
``CatalogStore``.
"""

import dataclasses
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from catalog_sync.catalog_store import BatchResult
from catalog_sync.checkpoint import CheckpointStore
from catalog_sync.listing import ListingPage
from catalog_sync.main import (
    build_listing_source,
    build_retry_controller,
    build_throttle,
    sync_catalog,
)
from catalog_sync.models import CatalogEntry, ObjectDescriptor
from catalog_sync.settings import SyncSettings

LAST_MODIFIED = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_descriptors(count: int, start: int = 0) -> List[ObjectDescriptor]:
    return [
        ObjectDescriptor(
            key=f"music/Artist {i % 50} - Song {i:06d}.mp3",
            size_bytes=1000 + i,
            last_modified=LAST_MODIFIED,
        )
        for i in range(start, start + count)
    ]


def paginate(descriptors: List[ObjectDescriptor], page_size: int) -> List[List[ObjectDescriptor]]:
    return [
        descriptors[i:i + page_size] for i in range(0, len(descriptors), page_size)
    ] or [[]]


class FakeListingClient:
    """Serves pre-built pages; the continuation token is the next page index."""

    def __init__(
        self,
        pages: List[List[ObjectDescriptor]],
        failures: Optional[Dict[int, List[BaseException]]] = None,
    ) -> None:
        self.pages = pages
        self.failures = failures or {}
        self.calls: List[int] = []

    async def list_page(self, prefix, max_keys, continuation_token=None) -> ListingPage:
        index = 0 if continuation_token is None else int(continuation_token)
        self.calls.append(index)
        pending = self.failures.get(index)
        if pending:
            raise pending.pop(0)
        next_token = str(index + 1) if index + 1 < len(self.pages) else None
        return ListingPage(entries=list(self.pages[index]), next_token=next_token)


class InMemoryCatalog:
    """Catalog writer mirroring the upsert rules of ``CatalogStore``.

    ``fail_calls`` maps a 1-based ``apply_batch`` call number to
    ``(exception, entry_index)``: the exception is raised after that many
    entries have been staged, and nothing from the batch is kept.
    """

    def __init__(self) -> None:
        self.rows: Dict[str, CatalogEntry] = {}
        self.calls = 0
        self.batch_sizes: List[int] = []
        self.fail_calls: Dict[int, Tuple[BaseException, int]] = {}
        self.on_commit = None

    async def apply_batch(self, entries) -> BatchResult:
        self.calls += 1
        failure = self.fail_calls.get(self.calls)
        staged: Dict[str, CatalogEntry] = {}
        result = BatchResult()
        for index, entry in enumerate(entries):
            if failure is not None and index == failure[1]:
                raise failure[0]
            existing = staged.get(entry.storage_key) or self.rows.get(entry.storage_key)
            if existing is None:
                staged[entry.storage_key] = dataclasses.replace(entry, popularity=0)
                result.inserted += 1
            else:
                staged[entry.storage_key] = dataclasses.replace(
                    existing,
                    size_bytes=entry.size_bytes,
                    modified_at=entry.modified_at,
                    popularity=existing.popularity + 1,
                )
                result.updated += 1
        self.rows.update(staged)
        self.batch_sizes.append(len(entries))
        if self.on_commit is not None:
            self.on_commit(len(self.batch_sizes))
        return result

    def snapshot(self, include_popularity: bool = False) -> Dict[str, tuple]:
        return {
            key: (
                row.title,
                row.contributor,
                row.collection,
                row.category,
                row.size_bytes,
                row.modified_at,
            )
            + ((row.popularity,) if include_popularity else ())
            for key, row in self.rows.items()
        }


@pytest.fixture
def settings(tmp_path):
    return SyncSettings(
        batch_size=1000,
        retry_base_delay_seconds=0,
        retry_max_delay_seconds=0,
        throttle_delay_ms=0,
        progress_heartbeat_seconds=0,
        checkpoint_path=tmp_path / "sync_progress.json",
    )


@pytest.fixture
def run_sync():
    """Return a coroutine function running one full pass with fakes."""

    async def _run(client, catalog, settings, shutdown=None, audit=None):
        shutdown = shutdown if shutdown is not None else threading.Event()
        retry = build_retry_controller(settings)
        throttle = build_throttle(settings, shutdown)
        source = build_listing_source(client, settings, retry, throttle)
        return await sync_catalog(
            source,
            catalog,
            CheckpointStore(settings.checkpoint_path),
            settings,
            retry,
            throttle,
            audit=audit,
            shutdown=shutdown,
        )

    return _run
