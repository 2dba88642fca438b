"""
Load shaping between batches and listing pages.

All pauses are shutdown-aware: a pending SIGTERM/SIGINT cuts the wait
short instead of holding the process for the full delay.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Optional

logger = logging.getLogger("catalog_sync.throttle")


async def sleep_with_shutdown(
    seconds: float,
    shutdown: Optional[threading.Event] = None,
) -> bool:
    """Sleep for up to ``seconds`` while remaining responsive to shutdown.

    Returns:
        ``True`` if shutdown was requested before or during the sleep.
    """
    if shutdown is None:
        if seconds > 0:
            await asyncio.sleep(seconds)
        return False
    if shutdown.is_set():
        return True

    remaining = max(0.0, seconds)
    while remaining > 0:
        if shutdown.is_set():
            return True
        tick = min(0.5, remaining)
        await asyncio.sleep(tick)
        remaining -= tick
    return shutdown.is_set()


class Throttle:
    """Pauses after every N batches and between listing pages.

    Args:
        interval_batches: Pause after every this many batches (``0`` disables).
        batch_delay_seconds: Length of the inter-batch pause.
        page_delay_seconds: Pause between consecutive page requests.
        shutdown: Event set by the signal handler.
    """

    def __init__(
        self,
        interval_batches: int = 100,
        batch_delay_seconds: float = 1.0,
        page_delay_seconds: float = 0.0,
        shutdown: Optional[threading.Event] = None,
    ) -> None:
        self.interval_batches = max(0, int(interval_batches))
        self.batch_delay_seconds = max(0.0, float(batch_delay_seconds))
        self.page_delay_seconds = max(0.0, float(page_delay_seconds))
        self._shutdown = shutdown

    @property
    def cancelled(self) -> bool:
        return self._shutdown is not None and self._shutdown.is_set()

    async def after_batch(self, batch_number: int) -> None:
        if (
            self.interval_batches
            and self.batch_delay_seconds > 0
            and batch_number % self.interval_batches == 0
        ):
            logger.debug(
                "Throttling %.1fs after batch %d", self.batch_delay_seconds, batch_number
            )
            await sleep_with_shutdown(self.batch_delay_seconds, self._shutdown)

    async def after_page(self) -> None:
        if self.page_delay_seconds > 0:
            await sleep_with_shutdown(self.page_delay_seconds, self._shutdown)
