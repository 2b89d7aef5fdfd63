"""Tests for the auto-sync scheduler."""
import asyncio
from datetime import datetime, timezone

from erpsync.errors import SyncAlreadyRunning
from erpsync.jobs.scheduler import AutoSyncScheduler
from erpsync.parse.models import SyncKind, SyncSummary


def test_first_tick_is_full_then_incremental(state_db):
    """Test the kind follows the last full sync time."""
    kinds = []

    async def fake_sync(base_url, kind, state_db, **options):
        kinds.append(kind)
        await state_db.record_sync(datetime.now(timezone.utc), full=kind == SyncKind.FULL)
        return SyncSummary(kind=kind)

    scheduler = AutoSyncScheduler("https://erp.example.com/r", state_db=state_db, sync=fake_sync)

    async def run():
        await scheduler.run_once()
        await scheduler.run_once()

    asyncio.run(run())
    assert kinds == [SyncKind.FULL, SyncKind.INCREMENTAL]
    assert scheduler.last_summary.kind == SyncKind.INCREMENTAL


def test_tick_is_skipped_while_locked(state_db):
    """Test a busy lock skips the tick instead of failing."""

    async def busy_sync(base_url, kind, state_db, **options):
        raise SyncAlreadyRunning("A sync is already in progress (run other)")

    scheduler = AutoSyncScheduler("https://erp.example.com/r", state_db=state_db, sync=busy_sync)
    assert asyncio.run(scheduler.run_once()) is None
    assert scheduler.last_summary is None


def test_stop_ends_the_loop(state_db):
    """Test run_forever returns once stopped."""
    calls = []

    async def fake_sync(base_url, kind, state_db, **options):
        calls.append(kind)
        scheduler.stop()
        return SyncSummary(kind=kind)

    scheduler = AutoSyncScheduler(
        "https://erp.example.com/r", interval_minutes=60, state_db=state_db, sync=fake_sync
    )
    asyncio.run(asyncio.wait_for(scheduler.run_forever(), timeout=5))
    assert len(calls) == 1
