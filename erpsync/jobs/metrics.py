"""Metrics tracking for sync progress."""
import time
import logging
from collections import defaultdict, deque
from typing import Deque, Dict, Optional

logger = logging.getLogger(__name__)


class Metrics:
    """Track page timings and estimate the remaining time."""

    def __init__(self, window: int = 5):
        self.start_time = time.time()
        self.counters: Dict[str, int] = defaultdict(int)
        self.page_durations: Deque[float] = deque(maxlen=max(window, 1))

    def increment(self, key: str, amount: int = 1) -> None:
        """Increment a counter."""
        self.counters[key] = self.counters.get(key, 0) + amount

    def record_page(self, seconds: float) -> None:
        """Record how long one page took, fetch and processing included."""
        self.page_durations.append(max(seconds, 0.0))
        self.increment("pages")

    def average_page_seconds(self) -> Optional[float]:
        """Moving average over the last pages, None before the first page."""
        if not self.page_durations:
            return None
        return sum(self.page_durations) / len(self.page_durations)

    def get_eta(self, remaining_pages: Optional[int]) -> Optional[float]:
        """Estimated seconds left, None while unknown."""
        average = self.average_page_seconds()
        if average is None or remaining_pages is None:
            return None
        return max(remaining_pages, 0) * average

    @staticmethod
    def percentage(current_page: int, total_pages: Optional[int]) -> float:
        if not total_pages:
            return 0.0
        return round(min(current_page / total_pages, 1.0) * 100, 1)

    @staticmethod
    def format_eta(eta_seconds: Optional[float]) -> str:
        """Format ETA as human-readable string."""
        if eta_seconds is None:
            return "?"
        if eta_seconds < 60:
            return f"{eta_seconds:.0f}s"
        elif eta_seconds < 3600:
            return f"{eta_seconds / 60:.1f}m"
        else:
            return f"{eta_seconds / 3600:.1f}h"

    def report(self, current_page: int, total_pages: Optional[int], eta_seconds: Optional[float]) -> None:
        """Log current metrics."""
        total = total_pages if total_pages is not None else "?"
        average = self.average_page_seconds() or 0.0
        logger.info(
            f"Progress: page {current_page}/{total} ({self.percentage(current_page, total_pages)}%) | "
            f"Avg page: {average:.2f}s | "
            f"ETA: {self.format_eta(eta_seconds)} | "
            f"New: {self.counters.get('new', 0)} | "
            f"Updated: {self.counters.get('updated', 0)} | "
            f"Unchanged: {self.counters.get('unchanged', 0)} | "
            f"Errors: {self.counters.get('errors', 0)}"
        )

    def get_summary(self) -> Dict:
        """Get summary statistics."""
        return {
            "pages": self.counters.get("pages", 0),
            "avg_page_seconds": self.average_page_seconds(),
            "elapsed_seconds": time.time() - self.start_time,
        }
