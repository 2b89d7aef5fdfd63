"""Main job runner orchestrating the sync pipeline."""
import asyncio
import inspect
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from erpsync.config import config
from erpsync.errors import (
    ErpSyncError,
    PersistenceFailure,
    SyncAlreadyRunning,
    SyncRunFailed,
)
from erpsync.fetch.client import ErpClient
from erpsync.fetch.rate_limit import PageThrottle
from erpsync.jobs.metrics import Metrics
from erpsync.jobs.metrics_exporter import MetricsExporter
from erpsync.jobs.reconcile import Reconciler
from erpsync.jobs.run_control import RunControl
from erpsync.parse.aggregate import build_aggregates, merge_aggregates
from erpsync.parse.models import (
    ChangeKind,
    InvoiceAggregate,
    SyncKind,
    SyncProgress,
    SyncStatus,
    SyncSummary,
)
from erpsync.parse.normalize import normalize_page
from erpsync.parse.redact import redact_string
from erpsync.store.invoices import InvoiceRepository
from erpsync.store.ledger import SyncLedger
from erpsync.store.records import InMemoryRecordStore, RecordStore
from erpsync.store.spool import SpoolManager
from erpsync.store.state import SyncStateDB

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[SyncProgress], Union[None, Awaitable[None]]]


class PageFetcher(Protocol):
    async def fetch_page(self, base_url: str, page: int) -> Any:
        ...


class SyncRunner:
    """Runs one sync: fetch pages, fold, reconcile, write, account.

    Pages are processed strictly in order, one at a time. The run holds the
    shared sync lock for its whole lifetime and writes exactly one terminal
    ledger entry.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        repository: InvoiceRepository,
        ledger: SyncLedger,
        state_db: SyncStateDB,
        base_url: str,
        kind: SyncKind = SyncKind.FULL,
        on_progress: Optional[ProgressCallback] = None,
        max_pages: Optional[int] = None,
        page_size: Optional[int] = None,
        page_delay: Optional[float] = None,
        early_stop_threshold: Optional[int] = None,
        max_skipped_pages: Optional[int] = None,
        spool: Optional[SpoolManager] = None,
        metrics_exporter: Optional[MetricsExporter] = None,
        lock_stale_seconds: Optional[float] = None,
        run_id: Optional[str] = None,
    ):
        self.fetcher = fetcher
        self.repository = repository
        self.ledger = ledger
        self.state_db = state_db
        self.base_url = base_url
        self.kind = SyncKind(kind)
        self.on_progress = on_progress
        self.page_size = page_size or config.PAGE_SIZE
        self.spool = spool
        self.metrics_exporter = metrics_exporter
        self.lock_stale_seconds = (
            lock_stale_seconds if lock_stale_seconds is not None else config.SYNC_LOCK_STALE_MINUTES * 60
        )

        self.run_id = run_id or str(uuid.uuid4())
        logger.info(f"Run ID: {self.run_id}")

        self.run_control = RunControl(
            kind=self.kind,
            max_pages=max_pages if max_pages and max_pages > 0 else None,
            early_stop_threshold=(
                early_stop_threshold if early_stop_threshold is not None else config.EARLY_STOP_THRESHOLD
            ),
            max_consecutive_skipped=(
                max_skipped_pages if max_skipped_pages is not None else config.MAX_CONSECUTIVE_SKIPPED_PAGES
            ),
        )
        self.throttle = PageThrottle(page_delay if page_delay is not None else config.PAGE_DELAY_SECONDS)
        self.metrics = Metrics(config.ETA_WINDOW)
        self.reconciler = Reconciler()
        self.aggregates: dict[int, InvoiceAggregate] = {}
        # Document numbers whose latest write failed, with the kind it was written as
        self.failed_writes: dict[str, ChangeKind] = {}
        self.resolved_writes: set[str] = set()
        self.flag_failures = 0
        self.cancelled_flagged = 0
        self.progress: Optional[SyncProgress] = None
        self._cancel_event = asyncio.Event()

    @property
    def errors_count(self) -> int:
        """Invoices left unwritten plus cancellation flags that failed."""
        return len(self.failed_writes) + self.flag_failures

    def _failed_count(self, kind: ChangeKind) -> int:
        return sum(1 for failed_kind in self.failed_writes.values() if failed_kind == kind)

    def cancel(self) -> None:
        """Request a cooperative stop; the page in flight is allowed to finish."""
        if not self._cancel_event.is_set():
            logger.info(f"[run={self.run_id}] Cancellation requested")
        self._cancel_event.set()

    async def run(self) -> SyncSummary:
        """Run the sync under the shared lock and return its summary."""
        await self.state_db.initialize()
        if not await self.state_db.acquire_lock(self.run_id, self.lock_stale_seconds):
            holder = await self.state_db.get_lock()
            owner = holder["owner"] if holder else "unknown"
            raise SyncAlreadyRunning(f"A sync is already in progress (run {owner})")

        try:
            try:
                await self.ledger.begin(self.kind, run_id=self.run_id)
            except PersistenceFailure as e:
                logger.error(f"[run={self.run_id}] Could not record the start of the sync: {e}")
                raise SyncRunFailed(f"Could not record the start of the sync: {e}", run_id=self.run_id) from e

            try:
                await self._fetch_pages()
                if not self.run_control.cancelled:
                    await self._detect_cancellations()
            except asyncio.CancelledError:
                await self.ledger.cancel(
                    self.run_id, self.run_control.pages_fetched, self.reconciler.invoices_seen
                )
                raise
            except SyncRunFailed as e:
                logger.error(f"[run={self.run_id}] Sync failed: {e}")
                await self._record_failure(str(e))
                raise
            except Exception as e:
                logger.error(f"[run={self.run_id}] Sync failed unexpectedly: {e}", exc_info=True)
                await self._record_failure(f"{type(e).__name__}: {e}")
                raise SyncRunFailed(f"Sync failed: {e}", run_id=self.run_id) from e

            try:
                return await self._finalize()
            except Exception as e:
                logger.error(f"[run={self.run_id}] Could not finalize the sync: {e}", exc_info=True)
                raise SyncRunFailed(f"Could not finalize the sync: {e}", run_id=self.run_id) from e
        finally:
            await self.state_db.release_lock(self.run_id)

    async def _record_failure(self, message: str) -> None:
        try:
            await self.ledger.fail(self.run_id, message)
        except PersistenceFailure as e:
            logger.error(f"[run={self.run_id}] Could not mark the sync as failed: {e}")

    async def _fetch_pages(self) -> None:
        page = 1
        while True:
            if self._cancel_event.is_set():
                self.run_control.record_cancelled()
                logger.warning(f"[run={self.run_id}] Cancelled before page {page}")
                return

            should_stop, reason = self.run_control.should_stop(page)
            if should_stop:
                logger.info(f"[run={self.run_id}] Stopping before page {page}: {reason}")
                return

            await self.throttle.acquire()
            started = time.monotonic()
            try:
                payload = await self.fetcher.fetch_page(self.base_url, page)
            except ErpSyncError as e:
                self.throttle.mark()
                if e.fatal or page == 1:
                    raise SyncRunFailed(
                        f"Page {page} could not be fetched: {e}", run_id=self.run_id, page=page
                    ) from e
                logger.error(f"[run={self.run_id}] Page {page} skipped: {e}")
                self.run_control.record_skipped(page)
            else:
                self.throttle.mark()
                await self._process_page(page, payload)

            await self._page_done(page, started)
            page += 1

    async def _process_page(self, page: int, payload: Any) -> None:
        envelope = normalize_page(payload, self.page_size)
        if self.run_control.total_pages is None and envelope.total_pages is not None:
            self.run_control.set_total(envelope.total_pages, envelope.total)
            logger.info(
                f"[run={self.run_id}] Upstream reports {envelope.total} records "
                f"in {envelope.total_pages} pages of {envelope.limit}"
            )

        if envelope.malformed:
            logger.warning(f"[run={self.run_id}] Page {page} has no record list, counted as skipped")
            self.run_control.record_skipped(page, malformed=True)
            return

        page_aggregates = build_aggregates(envelope.items)
        unseen = [agg.number for number, agg in page_aggregates.items() if not self.reconciler.has_seen(number)]
        try:
            prior = await self.repository.fetch_prior_state(unseen) if unseen else {}
        except PersistenceFailure as e:
            logger.error(f"[run={self.run_id}] Could not load stored state for page {page}: {e}")
            self.run_control.record_skipped(page)
            return

        touched = merge_aggregates(self.aggregates, page_aggregates)
        result = self.reconciler.reconcile([self.aggregates[n] for n in touched], prior)
        for aggregate, kind in result.to_write:
            await self._write(aggregate, kind, page)

        self.run_control.record_page(page, len(envelope.items), result.all_unchanged)
        logger.debug(
            f"[run={self.run_id}] Page {page}: {len(envelope.items)} lines, "
            f"{len(touched)} invoices, {len(result.to_write)} written"
        )

    async def _write(self, aggregate: InvoiceAggregate, kind: ChangeKind, page: int) -> None:
        """Persist one invoice; a failure is counted and spooled, never fatal."""
        try:
            await self.repository.save_invoice(aggregate, is_new=kind == ChangeKind.NEW)
        except PersistenceFailure as e:
            self.failed_writes[aggregate.number] = kind
            self.resolved_writes.discard(aggregate.number)
            logger.error(f"[run={self.run_id}] Failed to save invoice {aggregate.number} (page {page}): {e}")
            if self.spool:
                await self.spool.write_aggregate(aggregate, kind, self.run_id)
        else:
            # A document spanning pages may fail once and succeed on its merged write
            if self.failed_writes.pop(aggregate.number, None) is not None:
                self.resolved_writes.add(aggregate.number)

    async def _detect_cancellations(self) -> None:
        """Flag unassigned invoices missing from a complete full pull."""
        if self.kind != SyncKind.FULL:
            return
        if not self.run_control.covered_all_pages:
            logger.info(f"[run={self.run_id}] Feed not fully covered, skipping cancellation detection")
            return

        persisted = await self.repository.fetch_active_unassigned()
        missing = self.reconciler.detect_cancelled(persisted)
        if not missing:
            return
        flagged, failed = await self.repository.flag_cancelled(missing)
        self.cancelled_flagged = len(missing) - len(failed)
        self.flag_failures += len(failed)
        logger.info(f"[run={self.run_id}] Flagged {flagged} invoices as cancelled")

    def _snapshot(self, current_page: int, finished: bool = False) -> SyncProgress:
        counts = self.reconciler.counts
        total_pages = self.run_control.total_pages
        if self.run_control.max_pages and (total_pages is None or self.run_control.max_pages < total_pages):
            target_pages = self.run_control.max_pages
        else:
            target_pages = total_pages

        if finished:
            percentage = 100.0 if not self.run_control.stopped_early else Metrics.percentage(current_page, target_pages)
            eta = 0.0
        else:
            percentage = Metrics.percentage(current_page, target_pages)
            remaining = target_pages - current_page if target_pages is not None else None
            eta = self.metrics.get_eta(remaining)

        return SyncProgress(
            run_id=self.run_id,
            kind=self.kind,
            current_page=current_page,
            total_pages=total_pages,
            invoices_processed=self.reconciler.invoices_seen,
            percentage=percentage,
            eta_seconds=eta,
            new_count=counts[ChangeKind.NEW],
            updated_count=counts[ChangeKind.UPDATED],
            unchanged_count=counts[ChangeKind.UNCHANGED],
            cancelled_count=self.cancelled_flagged,
            errors_count=self.errors_count,
            skipped_pages=len(self.run_control.skipped_pages),
        )

    async def _page_done(self, page: int, started: float) -> None:
        self.metrics.record_page(time.monotonic() - started)
        if not await self.state_db.refresh_lock(self.run_id):
            logger.warning(f"[run={self.run_id}] Sync lock is no longer held by this run")
        counts = self.reconciler.counts
        self.metrics.counters["new"] = counts[ChangeKind.NEW]
        self.metrics.counters["updated"] = counts[ChangeKind.UPDATED]
        self.metrics.counters["unchanged"] = counts[ChangeKind.UNCHANGED]
        self.metrics.counters["errors"] = self.errors_count

        await self.ledger.update_progress(
            self.run_id, self.run_control.pages_fetched, self.reconciler.invoices_seen
        )
        progress = self._snapshot(page)
        self.metrics.report(page, progress.total_pages, progress.eta_seconds)
        await self._emit(progress)

    async def _emit(self, progress: SyncProgress) -> None:
        self.progress = progress
        if self.metrics_exporter:
            try:
                await self.metrics_exporter.export_progress(progress)
            except OSError as e:
                logger.warning(f"Could not export progress: {e}")
        if self.on_progress is None:
            return
        try:
            result = self.on_progress(progress)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"[run={self.run_id}] Progress callback raised: {e}")

    async def _finalize(self) -> SyncSummary:
        control = self.run_control
        pages = control.pages_fetched
        invoices = self.reconciler.invoices_seen
        if self.spool and self.resolved_writes:
            try:
                await self.spool.discard(self.run_id, self.resolved_writes)
            except OSError as e:
                logger.warning(f"[run={self.run_id}] Could not prune the spool: {e}")

        if control.cancelled:
            await self.ledger.cancel(self.run_id, pages, invoices)
            status = SyncStatus.CANCELLED
            last_sync_at = await self.state_db.get_last_sync_at()
        else:
            await self.ledger.complete(self.run_id, pages, invoices)
            status = SyncStatus.COMPLETED
            last_sync_at = datetime.now(timezone.utc)
            await self.state_db.record_sync(
                last_sync_at, full=self.kind == SyncKind.FULL and control.covered_all_pages
            )

        counts = self.reconciler.counts
        summary = SyncSummary(
            run_id=self.run_id,
            kind=self.kind,
            status=status,
            inserted_count=counts[ChangeKind.NEW] - self._failed_count(ChangeKind.NEW),
            updated_count=counts[ChangeKind.UPDATED] - self._failed_count(ChangeKind.UPDATED),
            unchanged_count=counts[ChangeKind.UNCHANGED],
            cancelled_count=self.cancelled_flagged,
            errors_count=self.errors_count,
            last_sync_at=last_sync_at,
            pages_fetched=pages,
            total_pages=control.total_pages,
            skipped_pages=list(control.skipped_pages),
            stopped_early=control.stopped_early,
            stop_reason=control.stop_reason.value if control.stop_reason else None,
        )
        await self._emit(self._snapshot(control.last_page, finished=True))
        self._final_report(summary)
        return summary

    def _final_report(self, summary: SyncSummary) -> None:
        """Log the final report."""
        run_summary = self.run_control.get_summary()
        total = summary.total_pages if summary.total_pages is not None else "?"

        logger.info("=" * 60)
        logger.info("FINAL REPORT")
        logger.info(f"Run ID: {self.run_id}")
        logger.info(f"Kind: {self.kind.value} | Status: {summary.status.value}")
        logger.info(f"Elapsed: {run_summary['elapsed_minutes']:.2f} minutes")
        logger.info(f"Pages: {summary.pages_fetched}/{total}")
        logger.info(f"Inserted: {summary.inserted_count}")
        logger.info(f"Updated: {summary.updated_count}")
        logger.info(f"Unchanged: {summary.unchanged_count}")
        logger.info(f"Cancelled: {summary.cancelled_count}")
        logger.info(f"Errors: {summary.errors_count}")
        if summary.skipped_pages:
            logger.warning(f"Skipped pages: {summary.skipped_pages}")
        if summary.stopped_early:
            logger.warning(f"Stopped early ({summary.stop_reason}): not every page was fetched")
        logger.info("=" * 60)


def build_store(dry_run: bool = False) -> RecordStore:
    """Supabase-backed store, or an in-memory one for dry runs."""
    if dry_run:
        logger.info("Dry run: writes go to an in-memory store")
        return InMemoryRecordStore()
    from erpsync.store.supabase_store import SupabaseRecordStore

    return SupabaseRecordStore()


async def run_sync(
    base_url: str,
    credentials: Optional[str] = None,
    kind: SyncKind = SyncKind.FULL,
    on_progress: Optional[ProgressCallback] = None,
    max_pages: Optional[int] = None,
    *,
    store: Optional[RecordStore] = None,
    state_db: Optional[SyncStateDB] = None,
    fetcher: Optional[PageFetcher] = None,
    dry_run: bool = False,
    **runner_options: Any,
) -> SyncSummary:
    """Run one sync end to end with the configured collaborators."""
    store = store if store is not None else build_store(dry_run)
    owned_client = None
    if fetcher is None:
        owned_client = ErpClient(api_key=credentials or config.ERP_API_KEY, proxy_url=config.ERP_PROXY_URL)
        fetcher = owned_client

    if "spool" not in runner_options:
        runner_options["spool"] = SpoolManager()
    runner = SyncRunner(
        fetcher=fetcher,
        repository=InvoiceRepository(store),
        ledger=SyncLedger(store),
        state_db=state_db or SyncStateDB(),
        base_url=base_url,
        kind=kind,
        on_progress=on_progress,
        max_pages=max_pages,
        **runner_options,
    )
    if "metrics_exporter" not in runner_options:
        runner.metrics_exporter = MetricsExporter(runner.run_id)
    try:
        return await runner.run()
    finally:
        if owned_client is not None:
            await owned_client.aclose()


async def replay_spool(store: RecordStore, spool: Optional[SpoolManager] = None) -> dict[str, int]:
    """Retry writes that failed in earlier runs; returns per-run failure counts."""
    spool = spool or SpoolManager()
    repository = InvoiceRepository(store)
    remaining: dict[str, int] = {}

    for run_id in list(spool.list_run_ids()):
        # A document spooled twice in one run is replayed from its latest entry
        latest = {aggregate.number: (aggregate, kind) for aggregate, kind in await spool.read_run(run_id)}
        entries = list(latest.values())
        failed = 0
        for aggregate, kind in entries:
            # The stored row may have been written since; re-check before writing
            prior = await repository.fetch_prior_state([aggregate.number])
            try:
                await repository.save_invoice(aggregate, is_new=aggregate.number not in prior)
            except PersistenceFailure as e:
                failed += 1
                logger.error(
                    f"Replay of invoice {aggregate.number} ({kind.value}) from run {run_id} failed: "
                    f"{redact_string(str(e))}"
                )
        logger.info(f"Replayed {len(entries) - failed}/{len(entries)} spooled invoices of run {run_id}")
        if failed:
            remaining[run_id] = failed
        else:
            await spool.delete_run(run_id)
    return remaining
