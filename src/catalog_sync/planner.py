"""
Batch planner: groups the descriptor stream into fixed-size batches and
derives catalog fields from each object key.

Field derivation is a best-effort naming heuristic: the base name is split
on the *first* occurrence of the separator, ``"Contributor - Title"``.
Titles that themselves contain the separator (medleys, remixes) keep the
remainder intact in ``title``; there is no escaping rule in the source
data, so this is a known data-quality limitation rather than a parse bug.
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, List, Optional, Tuple

from catalog_sync.models import CatalogEntry, ObjectDescriptor, ensure_utc

logger = logging.getLogger("catalog_sync.planner")

DEFAULT_SEPARATOR = " - "
UNKNOWN = "unknown"


def derive_fields(
    key: str,
    separator: str = DEFAULT_SEPARATOR,
    unknown: str = UNKNOWN,
) -> Tuple[str, str]:
    """Return ``(contributor, title)`` derived from a storage key.

    Examples:
        ``"Artist Name - Song Title.mp3"`` -> ``("Artist Name", "Song Title")``
        ``"NoSeparator.mp3"`` -> ``("unknown", "NoSeparator")``
    """
    base = posixpath.basename(key or "")
    stem, _ext = posixpath.splitext(base)
    if not stem.strip():
        return unknown, unknown

    if separator and separator in stem:
        contributor, title = stem.split(separator, 1)
        return contributor.strip() or unknown, title.strip() or unknown
    return unknown, stem.strip()


class EntryBuilder:
    """Turns descriptors into :class:`CatalogEntry` candidates."""

    def __init__(
        self,
        separator: str = DEFAULT_SEPARATOR,
        unknown: str = UNKNOWN,
        default_collection: str = UNKNOWN,
        default_category: str = UNKNOWN,
    ) -> None:
        self.separator = separator
        self.unknown = unknown
        self.default_collection = default_collection
        self.default_category = default_category

    def build(self, descriptor: ObjectDescriptor) -> CatalogEntry:
        contributor, title = derive_fields(descriptor.key, self.separator, self.unknown)
        return CatalogEntry(
            storage_key=descriptor.key,
            title=title,
            contributor=contributor,
            collection=self.default_collection,
            category=self.default_category,
            size_bytes=max(0, int(descriptor.size_bytes)),
            modified_at=ensure_utc(descriptor.last_modified),
        )


@dataclass(slots=True)
class PlannedBatch:
    number: int
    entries: List[CatalogEntry]

    @property
    def size(self) -> int:
        return len(self.entries)

    @property
    def first_key(self) -> Optional[str]:
        return self.entries[0].storage_key if self.entries else None

    @property
    def last_key(self) -> Optional[str]:
        return self.entries[-1].storage_key if self.entries else None


class BatchPlanner:
    """Buffers descriptors into batches of ``batch_size`` entries."""

    def __init__(self, batch_size: int = 1000, builder: Optional[EntryBuilder] = None) -> None:
        self.batch_size = max(1, int(batch_size))
        self.builder = builder or EntryBuilder()

    async def plan(
        self, descriptors: AsyncIterable[ObjectDescriptor]
    ) -> AsyncIterator[PlannedBatch]:
        number = 0
        pending: List[CatalogEntry] = []
        async for descriptor in descriptors:
            pending.append(self.builder.build(descriptor))
            if len(pending) >= self.batch_size:
                number += 1
                yield PlannedBatch(number=number, entries=pending)
                pending = []

        if pending:
            number += 1
            yield PlannedBatch(number=number, entries=pending)
        logger.debug("Planner emitted %d batches", number)
