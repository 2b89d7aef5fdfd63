"""Invoice persistence: prior-state reads and the write sink."""
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from erpsync.config import config
from erpsync.errors import PersistenceFailure
from erpsync.parse.models import InvoiceAggregate, PriorRecord
from erpsync.store.records import RecordStore, Row

logger = logging.getLogger(__name__)

PRIOR_COLUMNS = "number,api_hash,is_assigned,is_cancelled"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _prior_from_row(row: Row) -> PriorRecord:
    return PriorRecord(
        number=str(row.get("number")),
        fingerprint=row.get("api_hash"),
        is_assigned=bool(row.get("is_assigned")),
        is_cancelled=bool(row.get("is_cancelled")),
    )


class InvoiceRepository:
    """Reads and writes invoices and their items through a RecordStore."""

    def __init__(
        self,
        store: RecordStore,
        invoices_table: Optional[str] = None,
        items_table: Optional[str] = None,
        chunk_size: int = 200,
        page_size: int = 1000,
    ):
        self.store = store
        self.invoices_table = invoices_table or config.INVOICES_TABLE
        self.items_table = items_table or config.INVOICE_ITEMS_TABLE
        self.chunk_size = chunk_size
        self.page_size = page_size

    async def fetch_prior_state(self, numbers: Iterable[str]) -> dict[str, PriorRecord]:
        """Stored fingerprint and flags for a batch of document numbers."""
        wanted = list(dict.fromkeys(str(n) for n in numbers))
        prior: dict[str, PriorRecord] = {}
        for i in range(0, len(wanted), self.chunk_size):
            chunk = wanted[i : i + self.chunk_size]
            rows = await self.store.select(self.invoices_table, columns=PRIOR_COLUMNS, in_=("number", chunk))
            for row in rows:
                record = _prior_from_row(row)
                prior[record.number] = record
        return prior

    async def fetch_active_unassigned(self) -> list[PriorRecord]:
        """Every stored invoice that is neither assigned nor cancelled."""
        records: list[PriorRecord] = []
        offset = 0
        while True:
            rows = await self.store.select(
                self.invoices_table,
                columns=PRIOR_COLUMNS,
                eq={"is_assigned": False, "is_cancelled": False},
                order_by="number",
                offset=offset,
                limit=self.page_size,
            )
            records.extend(_prior_from_row(row) for row in rows)
            if len(rows) < self.page_size:
                return records
            offset += self.page_size

    async def save_invoice(self, aggregate: InvoiceAggregate, is_new: bool) -> str:
        """Upsert the header and replace the items; returns the stored row id.

        ``is_assigned`` is only written for new invoices, so an update never
        unbinds an invoice from its load map. Picked quantities survive the
        item replacement, matched by SKU and capped at the new quantity.

        The header is written with a cleared ``api_hash`` and the fingerprint
        is set last. A failure in between leaves no stored hash, so the next
        sync sees the invoice as changed and rewrites it.
        """
        now = _utcnow()
        header: Row = {
            "external_id": aggregate.id,
            "number": aggregate.number,
            "company_code": aggregate.company_code,
            "customer_name": aggregate.customer_name,
            "customer_city": aggregate.customer_city,
            "document_date": aggregate.document_date or None,
            "total_value": aggregate.total_value,
            "total_weight": aggregate.total_weight,
            "api_hash": None,
            "is_cancelled": False,
            "updated_at": now,
        }
        if is_new:
            header["is_assigned"] = False
            header["is_modified"] = False
        else:
            header["is_modified"] = True
            header["last_modified_at"] = now

        saved = await self.store.upsert(self.invoices_table, [header], on_conflict="number")
        if not saved:
            rows = await self.store.select(self.invoices_table, columns="id", eq={"number": aggregate.number})
            saved = rows
        invoice_row_id = saved[0]["id"]

        picked: dict[str, float] = {}
        if not is_new:
            old_items = await self.store.select(
                self.items_table, columns="sku,quantity_picked", eq={"invoice_id": invoice_row_id}
            )
            for item in old_items:
                if item.get("quantity_picked"):
                    picked[item["sku"]] = picked.get(item["sku"], 0) + float(item["quantity_picked"])

        await self.store.delete(self.items_table, {"invoice_id": invoice_row_id})
        rows = []
        for item in aggregate.items:
            carried = min(picked.pop(item.sku, 0.0), item.quantity)
            rows.append(
                {
                    "invoice_id": invoice_row_id,
                    "sku": item.sku,
                    "description": item.description,
                    "quantity": item.quantity,
                    "unit": item.unit,
                    "weight_kg": item.weight_kg,
                    "quantity_picked": carried or item.quantity_picked,
                }
            )
        if rows:
            await self.store.insert(self.items_table, rows)
        await self.store.update(
            self.invoices_table, {"api_hash": aggregate.fingerprint}, {"id": invoice_row_id}
        )
        return invoice_row_id

    async def flag_cancelled(self, numbers: Iterable[str]) -> tuple[int, list[str]]:
        """Mark invoices cancelled; rows are kept for their operational history.

        Returns how many rows were flagged and the numbers whose update failed.
        """
        count = 0
        failed: list[str] = []
        now = _utcnow()
        for number in numbers:
            try:
                updated = await self.store.update(
                    self.invoices_table,
                    {"is_cancelled": True, "updated_at": now},
                    {"number": str(number), "is_assigned": False},
                )
            except PersistenceFailure as e:
                logger.error(f"Failed to flag invoice {number} as cancelled: {e}")
                failed.append(str(number))
                continue
            count += len(updated)
        return count, failed
