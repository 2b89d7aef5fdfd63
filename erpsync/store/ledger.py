"""Sync run ledger: audit trail of every sync attempt."""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from erpsync.config import config
from erpsync.errors import PersistenceFailure
from erpsync.parse.models import SyncKind, SyncRun, SyncStatus
from erpsync.parse.redact import redact_string
from erpsync.store.records import RecordStore

logger = logging.getLogger(__name__)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class SyncLedger:
    """Records running/completed/failed/cancelled state of sync runs.

    Rows are never deleted. A run gets exactly one terminal update; later
    terminal calls for the same run are logged and ignored. A row left in
    ``running`` long past its expected duration means the process died.
    """

    def __init__(self, store: RecordStore, table: Optional[str] = None):
        self.store = store
        self.table = table or config.SYNC_HISTORY_TABLE
        self._finalized: set[str] = set()

    async def begin(self, kind: SyncKind, run_id: Optional[str] = None) -> str:
        """Create a run in ``running`` state and return its id."""
        run_id = run_id or str(uuid.uuid4())
        await self.store.insert(
            self.table,
            [
                {
                    "id": run_id,
                    "sync_type": SyncKind(kind).value,
                    "started_at": _utcnow(),
                    "completed_at": None,
                    "status": SyncStatus.RUNNING.value,
                    "total_pages": 0,
                    "total_invoices": 0,
                    "error_message": None,
                }
            ],
        )
        logger.info(f"Sync run {run_id} started ({SyncKind(kind).value})")
        return run_id

    async def update_progress(self, run_id: str, pages: int, invoices: int) -> None:
        """Running counters; a failed update never interrupts the sync."""
        try:
            await self.store.update(
                self.table,
                {"total_pages": pages, "total_invoices": invoices},
                {"id": run_id},
            )
        except PersistenceFailure as e:
            logger.warning(f"Could not update progress of sync run {run_id}: {e}")

    async def _finish(self, run_id: str, values: dict) -> bool:
        if run_id in self._finalized:
            logger.warning(f"Sync run {run_id} already finalized, ignoring {values.get('status')}")
            return False
        self._finalized.add(run_id)
        values["completed_at"] = _utcnow()
        await self.store.update(self.table, values, {"id": run_id})
        return True

    async def complete(self, run_id: str, total_pages: int, total_invoices: int) -> bool:
        return await self._finish(
            run_id,
            {
                "status": SyncStatus.COMPLETED.value,
                "total_pages": total_pages,
                "total_invoices": total_invoices,
            },
        )

    async def fail(self, run_id: str, message: str) -> bool:
        return await self._finish(
            run_id,
            {
                "status": SyncStatus.FAILED.value,
                "error_message": redact_string(message)[:1000],
            },
        )

    async def cancel(self, run_id: str, total_pages: int, total_invoices: int) -> bool:
        return await self._finish(
            run_id,
            {
                "status": SyncStatus.CANCELLED.value,
                "total_pages": total_pages,
                "total_invoices": total_invoices,
            },
        )

    async def get(self, run_id: str) -> Optional[SyncRun]:
        rows = await self.store.select(self.table, eq={"id": run_id}, limit=1)
        return SyncRun.model_validate(rows[0]) if rows else None

    async def recent(self, limit: int = 10) -> list[SyncRun]:
        """Latest runs, newest first."""
        rows = await self.store.select(self.table, order_by="started_at", descending=True, limit=limit)
        return [SyncRun.model_validate(row) for row in rows]
