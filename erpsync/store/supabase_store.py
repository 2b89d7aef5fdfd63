"""Supabase-backed record store with retries."""
import asyncio
import logging
from typing import Any, Callable, Optional, Sequence
from supabase import create_client, Client
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from erpsync.config import config
from erpsync.errors import PersistenceFailure
from erpsync.store.records import Row

logger = logging.getLogger(__name__)


class SupabaseRecordStore:
    """Implements the RecordStore CRUD interface on top of supabase-py."""

    def __init__(self, client: Optional[Client] = None):
        if client is None:
            if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE:
                raise ValueError("Supabase configuration missing")
            client = create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE)
        self.client: Client = client

    async def _run(self, operation: str, table: str, fn: Callable[[], Any]) -> list[Row]:
        """Run a sync Supabase call in the thread pool."""
        loop = asyncio.get_event_loop()
        try:
            response = await loop.run_in_executor(None, self._execute_sync, fn)
        except Exception as e:
            logger.error(f"Supabase {operation} on {table} failed: {e}")
            raise PersistenceFailure(f"{operation} on {table} failed: {e}") from e
        return list(response.data or [])

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((Exception,)),
        reraise=True,
    )
    def _execute_sync(self, fn: Callable[[], Any]) -> Any:
        """Synchronous execute (called from thread pool)."""
        return fn()

    async def select(
        self,
        table: str,
        columns: str = "*",
        eq: Optional[Row] = None,
        in_: Optional[tuple[str, Sequence[Any]]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[Row]:
        def query():
            q = self.client.table(table).select(columns)
            for key, value in (eq or {}).items():
                q = q.eq(key, value)
            if in_ is not None:
                q = q.in_(in_[0], list(in_[1]))
            if order_by:
                q = q.order(order_by, desc=descending)
            if limit is not None:
                q = q.range(offset, offset + limit - 1)
            return q.execute()

        return await self._run("select", table, query)

    async def insert(self, table: str, rows: list[Row]) -> list[Row]:
        return await self._run("insert", table, lambda: self.client.table(table).insert(rows).execute())

    async def upsert(self, table: str, rows: list[Row], on_conflict: str) -> list[Row]:
        return await self._run(
            "upsert",
            table,
            lambda: self.client.table(table).upsert(rows, on_conflict=on_conflict).execute(),
        )

    async def update(self, table: str, values: Row, eq: Row) -> list[Row]:
        def query():
            q = self.client.table(table).update(values)
            for key, value in eq.items():
                q = q.eq(key, value)
            return q.execute()

        return await self._run("update", table, query)

    async def delete(self, table: str, eq: Row) -> list[Row]:
        def query():
            q = self.client.table(table).delete()
            for key, value in eq.items():
                q = q.eq(key, value)
            return q.execute()

        return await self._run("delete", table, query)

    async def test_connection(self) -> bool:
        """Test Supabase connection."""
        try:
            await self.select(config.INVOICES_TABLE, columns="id", limit=1)
            logger.info("Supabase connection successful")
            return True
        except PersistenceFailure as e:
            logger.error(f"Supabase connection test failed: {e}")
            return False
