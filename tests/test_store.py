"""Tests for the record store, invoice repository, ledger and spool."""
import asyncio

import pytest

from erpsync.errors import PersistenceFailure
from erpsync.parse.aggregate import build_aggregates
from erpsync.parse.fingerprint import compute_fingerprint
from erpsync.parse.models import ChangeKind, SyncKind, SyncStatus
from erpsync.store.invoices import InvoiceRepository
from erpsync.store.ledger import SyncLedger
from erpsync.store.records import InMemoryRecordStore

from conftest import make_line


def _invoice(doc, *lines):
    aggregate = build_aggregates(list(lines) or [make_line(doc)])[doc]
    aggregate.fingerprint = compute_fingerprint(aggregate)
    return aggregate


def test_in_memory_upsert_preserves_unwritten_columns(store):
    """Test upsert merges into the existing row."""

    async def run():
        await store.upsert("t", [{"number": "1", "a": 1, "flag": True}], on_conflict="number")
        await store.upsert("t", [{"number": "1", "a": 2}], on_conflict="number")
        return await store.select("t")

    rows = asyncio.run(run())
    assert len(rows) == 1
    assert rows[0]["a"] == 2
    assert rows[0]["flag"] is True
    assert rows[0]["id"]


def test_in_memory_select_filters_and_pages(store):
    """Test eq, in_, ordering and offset/limit."""

    async def run():
        await store.insert("t", [{"n": i, "even": i % 2 == 0} for i in range(10)])
        evens = await store.select("t", columns="n", eq={"even": True}, order_by="n", descending=True)
        some = await store.select("t", columns="n", in_=("n", [1, 3, 99]), order_by="n")
        page = await store.select("t", columns="n", order_by="n", offset=4, limit=3)
        return evens, some, page

    evens, some, page = asyncio.run(run())
    assert [r["n"] for r in evens] == [8, 6, 4, 2, 0]
    assert [r["n"] for r in some] == [1, 3]
    assert [r["n"] for r in page] == [4, 5, 6]


def test_save_new_invoice_and_read_prior_state(store):
    """Test a new invoice is stored unassigned with its items and fingerprint."""
    repository = InvoiceRepository(store)
    invoice = _invoice(100, make_line(100, "A", 3, 90.0, 1.5), make_line(100, "B", 1, 60.0, 2.0))

    async def run():
        row_id = await repository.save_invoice(invoice, is_new=True)
        prior = await repository.fetch_prior_state(["100", "999"])
        return row_id, prior

    row_id, prior = asyncio.run(run())
    header = store.tables["invoices"][0]
    assert header["id"] == row_id
    assert header["external_id"] == "nf-1-100"
    assert header["is_assigned"] is False
    assert header["total_weight"] == 3.5
    assert len(store.tables["invoice_items"]) == 2
    assert list(prior) == ["100"]
    assert prior["100"].fingerprint == invoice.fingerprint


def test_update_keeps_assignment_and_picked_quantities(store):
    """Test an update never unassigns and carries picked quantities by SKU."""
    repository = InvoiceRepository(store)

    async def run():
        row_id = await repository.save_invoice(_invoice(5, make_line(5, "A", 4)), is_new=True)
        await store.update("invoices", {"is_assigned": True}, {"id": row_id})
        await store.update("invoice_items", {"quantity_picked": 3}, {"invoice_id": row_id})
        await repository.save_invoice(_invoice(5, make_line(5, "A", 2), make_line(5, "B", 1)), is_new=False)

    asyncio.run(run())
    header = store.tables["invoices"][0]
    assert header["is_assigned"] is True
    assert header["is_modified"] is True
    assert header["last_modified_at"]
    items = {item["sku"]: item for item in store.tables["invoice_items"]}
    assert items["A"]["quantity_picked"] == 2
    assert items["B"]["quantity_picked"] == 0


def test_fingerprint_is_stored_only_after_items():
    """Test a failed item insert leaves no fingerprint behind."""

    class ItemsDownStore(InMemoryRecordStore):
        async def insert(self, table, rows):
            if table == "invoice_items":
                raise PersistenceFailure("invoice_items insert failed")
            return await super().insert(table, rows)

    store = ItemsDownStore()
    repository = InvoiceRepository(store)

    with pytest.raises(PersistenceFailure):
        asyncio.run(repository.save_invoice(_invoice(7), is_new=True))
    prior = asyncio.run(repository.fetch_prior_state(["7"]))
    assert prior["7"].fingerprint is None


def test_fetch_active_unassigned_pages_through_results(store):
    """Test paging over stored active invoices."""
    repository = InvoiceRepository(store, page_size=2)

    async def run():
        for doc in range(1, 6):
            await repository.save_invoice(_invoice(doc), is_new=True)
        await store.update("invoices", {"is_assigned": True}, {"number": "2"})
        await store.update("invoices", {"is_cancelled": True}, {"number": "4"})
        return await repository.fetch_active_unassigned()

    records = asyncio.run(run())
    assert sorted(r.number for r in records) == ["1", "3", "5"]


def test_flag_cancelled_skips_assigned_rows(store):
    """Test cancellation only touches unassigned rows and never deletes."""
    repository = InvoiceRepository(store)

    async def run():
        for doc in (1, 2):
            await repository.save_invoice(_invoice(doc), is_new=True)
        await store.update("invoices", {"is_assigned": True}, {"number": "2"})
        return await repository.flag_cancelled(["1", "2"])

    count, failed = asyncio.run(run())
    assert count == 1
    assert failed == []
    rows = {row["number"]: row for row in store.tables["invoices"]}
    assert rows["1"]["is_cancelled"] is True
    assert rows["2"]["is_cancelled"] is False


def test_flag_cancelled_isolates_failures():
    """Test one failed flag update does not stop the others."""

    class FlakyStore(InMemoryRecordStore):
        async def update(self, table, values, eq):
            if eq.get("number") == "1":
                raise PersistenceFailure("update failed")
            return await super().update(table, values, eq)

    store = FlakyStore()
    repository = InvoiceRepository(store)

    async def run():
        for doc in (1, 2):
            await repository.save_invoice(_invoice(doc), is_new=True)
        return await repository.flag_cancelled(["1", "2"])

    count, failed = asyncio.run(run())
    assert count == 1
    assert failed == ["1"]


def test_ledger_lifecycle(store):
    """Test a run goes running -> completed exactly once."""
    ledger = SyncLedger(store)

    async def run():
        run_id = await ledger.begin(SyncKind.FULL)
        await ledger.update_progress(run_id, 2, 40)
        running = await ledger.get(run_id)
        first = await ledger.complete(run_id, 3, 55)
        second = await ledger.fail(run_id, "late failure")
        return running, first, second, await ledger.get(run_id)

    running, first, second, finished = asyncio.run(run())
    assert running.status == SyncStatus.RUNNING
    assert running.total_invoices == 40
    assert first is True
    assert second is False
    assert finished.status == SyncStatus.COMPLETED
    assert finished.total_pages == 3
    assert finished.completed_at is not None
    assert finished.error_message is None


def test_ledger_failure_message_is_redacted(store):
    """Test secrets never reach the ledger."""
    ledger = SyncLedger(store)

    async def run():
        run_id = await ledger.begin(SyncKind.INCREMENTAL)
        await ledger.fail(run_id, "401 with Authorization: Bearer sk-secret-value")
        return await ledger.get(run_id)

    failed = asyncio.run(run())
    assert failed.status == SyncStatus.FAILED
    assert "sk-secret-value" not in failed.error_message


def test_ledger_recent_newest_first(store):
    """Test history ordering."""
    ledger = SyncLedger(store)

    async def run():
        first = await ledger.begin(SyncKind.FULL)
        await asyncio.sleep(0.01)
        second = await ledger.begin(SyncKind.INCREMENTAL)
        return first, second, await ledger.recent(limit=10)

    first, second, runs = asyncio.run(run())
    assert [r.id for r in runs] == [second, first]


def test_spool_roundtrip_and_cleanup(spool):
    """Test spooled aggregates can be read back and deleted."""
    invoice = _invoice(7)

    async def run():
        await spool.write_aggregate(invoice, ChangeKind.UPDATED, "run-1")
        entries = await spool.read_run("run-1")
        ids = list(spool.list_run_ids())
        await spool.delete_run("run-1")
        return entries, ids, list(spool.list_run_ids())

    entries, ids, after = asyncio.run(run())
    assert ids == ["run-1"]
    assert len(entries) == 1
    aggregate, kind = entries[0]
    assert kind == ChangeKind.UPDATED
    assert aggregate.number == "7"
    assert aggregate.fingerprint == invoice.fingerprint
    assert after == []
