"""
Listing source: streams object descriptors from an S3-compatible store
(Backblaze B2 in production) one page at a time.

Key behaviours:
    - Descriptors are yielded as each page arrives; the full listing is
      never accumulated in memory.
    - Filtering (extension, minimum size, directory markers) happens here
      so irrelevant objects never occupy batch capacity.
    - Every page request goes through the :class:`RetryController`.
    - ``max_pages`` bounds a single run; a capped listing is reported as
      not exhausted so the checkpoint is kept.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple

import boto3
from botocore.config import Config as BotoConfig

from catalog_sync.errors import ListingError
from catalog_sync.models import ObjectDescriptor, ensure_utc
from catalog_sync.retry import RetryController
from catalog_sync.throttle import Throttle

logger = logging.getLogger("catalog_sync.listing")

DEFAULT_PAGE_SIZE = 1000


@dataclass(slots=True)
class ListingPage:
    entries: List[ObjectDescriptor]
    next_token: Optional[str] = None


class ListingClient(Protocol):
    """Paginated listing contract of the remote store."""

    async def list_page(
        self,
        prefix: str,
        max_keys: int,
        continuation_token: Optional[str] = None,
    ) -> ListingPage: ...


@dataclass(frozen=True)
class ObjectFilter:
    """Selects the objects worth cataloguing.

    Args:
        extensions: Accepted key suffixes, compared case-insensitively.
            Empty means every extension is accepted.
        min_size_bytes: Objects smaller than this are skipped.
    """

    extensions: Tuple[str, ...] = (".mp3",)
    min_size_bytes: int = 1

    def matches(self, descriptor: ObjectDescriptor) -> bool:
        key = descriptor.key
        if not key or key.endswith("/"):
            return False
        if descriptor.size_bytes < self.min_size_bytes:
            return False
        if self.extensions:
            lowered = key.lower()
            return any(lowered.endswith(ext.lower()) for ext in self.extensions)
        return True


@dataclass(slots=True)
class ListingStats:
    pages_fetched: int = 0
    objects_seen: int = 0
    objects_matched: int = 0
    bytes_matched: int = 0
    exhausted: bool = False


class ListingSource:
    """Lazy, filtered, retrying view over a :class:`ListingClient`.

    Args:
        client: Page-level listing adapter.
        retry: Controller guarding each page request.
        page_size: Requested entries per page (providers cap at 1000).
        max_pages: Stop after this many pages (``0`` = unlimited).
        throttle: Optional pacing between page requests.
    """

    def __init__(
        self,
        client: ListingClient,
        retry: RetryController,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = 0,
        throttle: Optional[Throttle] = None,
    ) -> None:
        self._client = client
        self._retry = retry
        self._page_size = max(1, min(int(page_size), DEFAULT_PAGE_SIZE))
        self._max_pages = max(0, int(max_pages))
        self._throttle = throttle
        self.stats = ListingStats()

    async def _pages(self, prefix: str) -> AsyncIterator[ListingPage]:
        token: Optional[str] = None
        pages = 0
        while True:
            try:
                page = await self._retry.execute(
                    self._client.list_page,
                    prefix,
                    self._page_size,
                    token,
                    description=f"List page {pages + 1}",
                )
            except Exception as exc:
                raise ListingError(
                    f"Listing failed on page {pages + 1}: {exc}"
                ) from exc

            pages += 1
            yield page

            next_token = page.next_token
            if not next_token:
                self.stats.exhausted = True
                logger.info("Listing exhausted after %d pages", pages)
                return
            if next_token == token:
                raise ListingError(
                    f"Continuation token repeated on page {pages}; aborting listing"
                )
            if self._max_pages and pages >= self._max_pages:
                logger.info(
                    "Reached max_pages_per_run=%d; listing not exhausted",
                    self._max_pages,
                )
                return
            token = next_token
            if self._throttle is not None:
                await self._throttle.after_page()
                if self._throttle.cancelled:
                    logger.info("Shutdown requested; stopping listing after %d pages", pages)
                    return

    async def list_all(
        self,
        prefix: str = "",
        object_filter: Optional[ObjectFilter] = None,
    ) -> AsyncIterator[ObjectDescriptor]:
        """Yield every matching descriptor under *prefix*, page by page.

        Raises:
            ListingError: If a page cannot be fetched after retries, or the
                provider repeats a continuation token.
        """
        object_filter = object_filter or ObjectFilter()
        self.stats = ListingStats()
        async for page in self._pages(prefix):
            self.stats.pages_fetched += 1
            self.stats.objects_seen += len(page.entries)
            for descriptor in page.entries:
                if not object_filter.matches(descriptor):
                    continue
                self.stats.objects_matched += 1
                self.stats.bytes_matched += descriptor.size_bytes
                yield descriptor

    async def count_matching(
        self,
        prefix: str = "",
        object_filter: Optional[ObjectFilter] = None,
    ) -> int:
        """Pre-scan the listing and return the number of matching objects."""
        count = 0
        async for _ in self.list_all(prefix, object_filter):
            count += 1
        logger.info(
            "Pre-scan complete: %d matching objects across %d pages",
            count,
            self.stats.pages_fetched,
        )
        return count


# ---------------------------------------------------------------------------
# S3 / Backblaze B2 adapter
# ---------------------------------------------------------------------------


def create_s3_client(
    storage_config: Dict[str, Any],
    access_key_id: str,
    secret_access_key: str,
) -> Any:
    """Build a boto3 S3 client for the configured endpoint.

    botocore's own retries are limited to a single attempt because paging
    retries are owned by :class:`RetryController`.
    """
    boto_config = BotoConfig(
        connect_timeout=float(storage_config.get("connect_timeout_seconds", 10)),
        read_timeout=float(storage_config.get("read_timeout_seconds", 30)),
        retries={"max_attempts": 1, "mode": "standard"},
        s3={"addressing_style": "path"},
    )
    kwargs: Dict[str, Any] = {
        "aws_access_key_id": access_key_id,
        "aws_secret_access_key": secret_access_key,
        "config": boto_config,
    }
    if storage_config.get("endpoint_url"):
        kwargs["endpoint_url"] = storage_config["endpoint_url"]
    if storage_config.get("region"):
        kwargs["region_name"] = storage_config["region"]
    return boto3.client("s3", **kwargs)


class S3ListingClient:
    """:class:`ListingClient` over ``ListObjectsV2``.

    boto3 is blocking, so each request runs in a worker thread.
    """

    def __init__(self, client: Any, bucket: str) -> None:
        self._client = client
        self.bucket = bucket

    async def check_access(self) -> None:
        """Verify the bucket is reachable with the configured credentials."""
        await asyncio.to_thread(self._client.head_bucket, Bucket=self.bucket)

    async def list_page(
        self,
        prefix: str,
        max_keys: int,
        continuation_token: Optional[str] = None,
    ) -> ListingPage:
        params: Dict[str, Any] = {"Bucket": self.bucket, "MaxKeys": max_keys}
        if prefix:
            params["Prefix"] = prefix
        if continuation_token:
            params["ContinuationToken"] = continuation_token

        response = await asyncio.to_thread(self._client.list_objects_v2, **params)

        entries = [
            ObjectDescriptor(
                key=str(item["Key"]),
                size_bytes=int(item.get("Size", 0) or 0),
                last_modified=ensure_utc(item.get("LastModified")),
            )
            for item in response.get("Contents", []) or []
        ]
        next_token = None
        if response.get("IsTruncated"):
            next_token = response.get("NextContinuationToken")
        logger.debug(
            "Listed %d objects (truncated=%s)", len(entries), bool(next_token)
        )
        return ListingPage(entries=entries, next_token=next_token)
