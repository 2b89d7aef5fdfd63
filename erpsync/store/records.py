"""Generic record CRUD interface and an in-memory implementation.

The sync engine only needs five table operations. Supabase implements them in
production; the in-memory store backs dry runs and tests.
"""
import copy
import logging
import uuid
from typing import Any, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

Row = dict[str, Any]


class RecordStore(Protocol):
    """Async table CRUD used by the repository and the ledger."""

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
    ) -> list[Row]: ...

    async def insert(self, table: str, rows: list[Row]) -> list[Row]: ...

    async def upsert(self, table: str, rows: list[Row], on_conflict: str) -> list[Row]: ...

    async def update(self, table: str, values: Row, eq: Row) -> list[Row]: ...

    async def delete(self, table: str, eq: Row) -> list[Row]: ...


def _matches(row: Row, eq: Optional[Row], in_: Optional[tuple[str, Sequence[Any]]] = None) -> bool:
    if eq:
        for key, value in eq.items():
            if row.get(key) != value:
                return False
    if in_ is not None:
        column, values = in_
        if row.get(column) not in set(values):
            return False
    return True


def _project(row: Row, columns: str) -> Row:
    if columns.strip() == "*":
        return copy.deepcopy(row)
    wanted = [c.strip() for c in columns.split(",") if c.strip()]
    return {c: copy.deepcopy(row.get(c)) for c in wanted}


class InMemoryRecordStore:
    """Dict-of-lists store with PostgREST-like semantics."""

    def __init__(self):
        self.tables: dict[str, list[Row]] = {}

    def _table(self, table: str) -> list[Row]:
        return self.tables.setdefault(table, [])

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
        rows = [row for row in self._table(table) if _matches(row, eq, in_)]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by)), reverse=descending)
        end = offset + limit if limit is not None else None
        return [_project(row, columns) for row in rows[offset:end]]

    async def insert(self, table: str, rows: list[Row]) -> list[Row]:
        stored = []
        for row in rows:
            new_row = copy.deepcopy(row)
            new_row.setdefault("id", str(uuid.uuid4()))
            self._table(table).append(new_row)
            stored.append(copy.deepcopy(new_row))
        return stored

    async def upsert(self, table: str, rows: list[Row], on_conflict: str) -> list[Row]:
        keys = [k.strip() for k in on_conflict.split(",")]
        stored = []
        for row in rows:
            match = {k: row.get(k) for k in keys}
            existing = next((r for r in self._table(table) if _matches(r, match)), None)
            if existing is None:
                stored.extend(await self.insert(table, [row]))
            else:
                # Columns absent from the payload keep their stored value
                existing.update(copy.deepcopy(row))
                stored.append(copy.deepcopy(existing))
        return stored

    async def update(self, table: str, values: Row, eq: Row) -> list[Row]:
        updated = []
        for row in self._table(table):
            if _matches(row, eq):
                row.update(copy.deepcopy(values))
                updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, table: str, eq: Row) -> list[Row]:
        kept, deleted = [], []
        for row in self._table(table):
            (deleted if _matches(row, eq) else kept).append(row)
        self.tables[table] = kept
        return deleted
