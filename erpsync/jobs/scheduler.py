"""Background auto-sync on a timer."""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from erpsync.config import config
from erpsync.errors import SyncAlreadyRunning, SyncRunFailed
from erpsync.jobs.runner import run_sync
from erpsync.parse.models import SyncKind, SyncSummary
from erpsync.store.state import SyncStateDB

logger = logging.getLogger(__name__)


class AutoSyncScheduler:
    """Re-runs syncs every `interval_minutes`.

    A full sync is chosen when none completed within `full_interval_hours`,
    an incremental one otherwise. Ticks that find another sync running are
    skipped, not queued.
    """

    def __init__(
        self,
        base_url: str,
        interval_minutes: Optional[float] = None,
        full_interval_hours: Optional[float] = None,
        state_db: Optional[SyncStateDB] = None,
        sync: Callable[..., Awaitable[SyncSummary]] = run_sync,
        **sync_options: Any,
    ):
        self.base_url = base_url
        self.interval_seconds = (interval_minutes or config.SYNC_INTERVAL_MINUTES) * 60
        self.full_interval_hours = full_interval_hours or config.FULL_SYNC_INTERVAL_HOURS
        self.state_db = state_db or SyncStateDB()
        self.sync = sync
        self.sync_options = sync_options
        self.last_summary: Optional[SyncSummary] = None
        self._stopped = asyncio.Event()

    async def choose_kind(self) -> SyncKind:
        await self.state_db.initialize()
        if await self.state_db.should_do_full_sync(self.full_interval_hours):
            return SyncKind.FULL
        return SyncKind.INCREMENTAL

    async def run_once(self) -> Optional[SyncSummary]:
        """One tick; None when skipped or failed."""
        kind = await self.choose_kind()
        logger.info(f"Auto-sync tick: starting {kind.value} sync")
        try:
            summary = await self.sync(self.base_url, kind=kind, state_db=self.state_db, **self.sync_options)
        except SyncAlreadyRunning as e:
            logger.info(f"Auto-sync skipped: {e}")
            return None
        except SyncRunFailed as e:
            logger.error(f"Auto-sync failed: {e}")
            return None
        self.last_summary = summary
        return summary

    async def run_forever(self) -> None:
        logger.info(f"Auto-sync every {self.interval_seconds / 60:.1f} minutes")
        while not self._stopped.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Auto-sync stopped")

    def stop(self) -> None:
        self._stopped.set()
