"""Inter-page delay between consecutive ERP requests."""
import asyncio
import logging
import time

logger = logging.getLogger(__name__)


class PageThrottle:
    """Keeps at least `delay_seconds` between the end of one page and the next request."""

    def __init__(self, delay_seconds: float):
        self.delay_seconds = max(delay_seconds, 0.0)
        self._last_done: float | None = None
        self._lock = asyncio.Lock()

    def mark(self) -> None:
        """Record that a page request just finished."""
        self._last_done = time.monotonic()

    async def acquire(self) -> None:
        """Wait if necessary before the next page request."""
        async with self._lock:
            if self._last_done is None or self.delay_seconds <= 0:
                return
            elapsed = time.monotonic() - self._last_done
            if elapsed < self.delay_seconds:
                wait_time = self.delay_seconds - elapsed
                logger.debug(f"Waiting {wait_time:.2f}s before next page")
                await asyncio.sleep(wait_time)
