"""SQLite state database: active-run guard and last sync timestamps."""
import aiosqlite
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from erpsync.config import STATE_DB

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync_at"
LAST_FULL_SYNC_KEY = "last_full_sync_at"


class SyncStateDB:
    """Local state shared by manual, API and scheduled syncs.

    The ``sync_lock`` table holds at most one row. Whoever inserts it owns the
    sync until it deletes the row. A running sync refreshes the timestamp after
    every page; a row not refreshed within the stale timeout belongs to a
    crashed process and may be taken over.
    """

    def __init__(self, db_path: Path = STATE_DB):
        self.db_path = db_path

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_lock (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    owner TEXT NOT NULL,
                    acquired_at REAL NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_state (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
                """
            )
            await db.commit()
            logger.debug(f"State database initialized at {self.db_path}")

    async def acquire_lock(self, owner: str, stale_after_seconds: float) -> bool:
        """Take the active-run guard; False when someone else holds it."""
        now = time.time()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                "DELETE FROM sync_lock WHERE acquired_at < ?",
                (now - stale_after_seconds,),
            )
            if cursor.rowcount:
                logger.warning("Took over a stale sync lock left by an interrupted run")
            cursor = await db.execute(
                "INSERT OR IGNORE INTO sync_lock (id, owner, acquired_at) VALUES (1, ?, ?)",
                (owner, now),
            )
            acquired = cursor.rowcount == 1
            await db.commit()
            return acquired

    async def refresh_lock(self, owner: str) -> bool:
        """Push the guard's timestamp forward; False when we no longer own it."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE sync_lock SET acquired_at = ? WHERE owner = ?",
                (time.time(), owner),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def release_lock(self, owner: str) -> None:
        """Release the guard if we still own it."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM sync_lock WHERE owner = ?", (owner,))
            await db.commit()

    async def get_lock(self) -> Optional[dict]:
        """Current holder of the guard, if any."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT owner, acquired_at FROM sync_lock WHERE id = 1")
            row = await cursor.fetchone()
            if row is None:
                return None
            return {"owner": row[0], "acquired_at": row[1]}

    async def force_unlock(self) -> bool:
        """Drop the guard whoever owns it (operator action)."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM sync_lock")
            await db.commit()
            return cursor.rowcount > 0

    async def _get(self, key: str) -> Optional[str]:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT value FROM sync_state WHERE key = ?", (key,))
            row = await cursor.fetchone()
            return row[0] if row else None

    async def _set(self, key: str, value: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)",
                (key, value),
            )
            await db.commit()

    async def get_last_sync_at(self) -> Optional[datetime]:
        value = await self._get(LAST_SYNC_KEY)
        return datetime.fromisoformat(value) if value else None

    async def get_last_full_sync_at(self) -> Optional[datetime]:
        value = await self._get(LAST_FULL_SYNC_KEY)
        return datetime.fromisoformat(value) if value else None

    async def record_sync(self, at: datetime, full: bool) -> None:
        """Remember a completed sync."""
        await self._set(LAST_SYNC_KEY, at.isoformat())
        if full:
            await self._set(LAST_FULL_SYNC_KEY, at.isoformat())

    async def should_do_full_sync(self, interval_hours: float) -> bool:
        """True when no full sync completed within the interval."""
        last_full = await self.get_last_full_sync_at()
        if last_full is None:
            return True
        elapsed = datetime.now(timezone.utc) - last_full
        return elapsed.total_seconds() / 3600 >= interval_hours
