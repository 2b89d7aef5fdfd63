"""Run control: pagination stop conditions."""
import time
import logging
from enum import Enum
from typing import Optional
from dataclasses import dataclass, field

from erpsync.parse.models import SyncKind

logger = logging.getLogger(__name__)


class StopReason(str, Enum):
    END_OF_FEED = "end_of_feed"
    EMPTY_PAGE = "empty_page"
    MAX_PAGES = "max_pages"
    UNCHANGED_STREAK = "unchanged_streak"
    SKIPPED_STREAK = "skipped_streak"
    CANCELLED = "cancelled"


@dataclass
class RunControl:
    """Decides when the page loop stops.

    Full syncs walk every page: up to the known page count, or until an empty
    page when the total is unknown, always bounded by ``max_pages``.
    Incremental syncs may also stop after ``early_stop_threshold`` consecutive
    pages in which every invoice was unchanged. When the total is unknown, a
    run of ``max_consecutive_skipped`` unreadable pages also ends the loop.
    """

    kind: SyncKind = SyncKind.FULL
    max_pages: Optional[int] = None
    early_stop_threshold: int = 50
    max_consecutive_skipped: int = 5

    # Internal state
    start_time: float = field(default_factory=time.time)
    total_records: Optional[int] = None
    total_pages: Optional[int] = None
    last_page: int = 0
    pages_fetched: int = 0
    consecutive_unchanged: int = 0
    consecutive_skipped: int = 0
    reached_empty_page: bool = False
    skipped_pages: list[int] = field(default_factory=list)
    stop_reason: Optional[StopReason] = None

    def set_total(self, total_pages: int, total_records: Optional[int] = None) -> None:
        """Adopt the page count announced by the upstream."""
        self.total_pages = total_pages
        self.total_records = total_records

    def should_stop(self, next_page: int) -> tuple[bool, Optional[str]]:
        """Check if the loop should stop before `next_page`. Returns (should_stop, reason)."""
        if self.stop_reason is not None:
            return True, self.stop_reason.value

        if self.reached_empty_page:
            return self._stop(StopReason.EMPTY_PAGE, f"Page {self.last_page} returned no items")

        if self.total_pages is not None and next_page > self.total_pages:
            return self._stop(StopReason.END_OF_FEED, f"Reached last page {self.total_pages}")

        if self.max_pages and next_page > self.max_pages:
            return self._stop(StopReason.MAX_PAGES, f"Reached max_pages={self.max_pages}")

        if (
            self.total_pages is None
            and self.max_consecutive_skipped
            and self.consecutive_skipped >= self.max_consecutive_skipped
        ):
            return self._stop(
                StopReason.SKIPPED_STREAK,
                f"{self.consecutive_skipped} consecutive unreadable pages with no known total",
            )

        if (
            self.kind == SyncKind.INCREMENTAL
            and self.early_stop_threshold
            and self.consecutive_unchanged >= self.early_stop_threshold
        ):
            return self._stop(
                StopReason.UNCHANGED_STREAK,
                f"{self.consecutive_unchanged} consecutive unchanged pages",
            )

        return False, None

    def _stop(self, reason: StopReason, message: str) -> tuple[bool, str]:
        self.stop_reason = reason
        return True, message

    def record_page(self, page: int, item_count: int, all_unchanged: bool) -> None:
        """Record a fetched and processed page."""
        self.last_page = page
        self.pages_fetched += 1
        self.consecutive_skipped = 0
        if item_count == 0 and self.total_pages is None:
            self.reached_empty_page = True
        if all_unchanged:
            self.consecutive_unchanged += 1
        else:
            self.consecutive_unchanged = 0

    def record_skipped(self, page: int, malformed: bool = False) -> None:
        """Record a page that failed or could not be read.

        A malformed page carries zero items, so with no known total it also
        marks the end of the feed.
        """
        self.last_page = page
        self.pages_fetched += 1
        self.skipped_pages.append(page)
        self.consecutive_unchanged = 0
        self.consecutive_skipped += 1
        if malformed and self.total_pages is None:
            self.reached_empty_page = True

    def record_cancelled(self) -> None:
        self.stop_reason = StopReason.CANCELLED

    @property
    def cancelled(self) -> bool:
        return self.stop_reason == StopReason.CANCELLED

    @property
    def stopped_early(self) -> bool:
        """True when pages we know (or suspect) exist were never fetched."""
        if self.stop_reason not in (
            StopReason.UNCHANGED_STREAK,
            StopReason.SKIPPED_STREAK,
            StopReason.MAX_PAGES,
            StopReason.CANCELLED,
        ):
            return False
        return self.total_pages is None or self.last_page < self.total_pages

    @property
    def covered_all_pages(self) -> bool:
        """Every page was read, so absences from the feed are meaningful."""
        return (
            self.stop_reason in (StopReason.END_OF_FEED, StopReason.EMPTY_PAGE)
            and not self.skipped_pages
        )

    def get_summary(self) -> dict:
        """Get summary statistics."""
        elapsed_minutes = (time.time() - self.start_time) / 60
        return {
            "elapsed_minutes": round(elapsed_minutes, 2),
            "pages_fetched": self.pages_fetched,
            "total_pages": self.total_pages,
            "skipped_pages": list(self.skipped_pages),
            "consecutive_unchanged": self.consecutive_unchanged,
            "consecutive_skipped": self.consecutive_skipped,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "stopped_early": self.stopped_early,
        }
