"""FastAPI main application."""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from erpsync.config import config, Config
from erpsync.errors import SyncAlreadyRunning, SyncRunFailed
from erpsync.fetch.client import ErpClient
from erpsync.fetch.proxy import ProxyRequest, relay
from erpsync.jobs.runner import SyncRunner, build_store
from erpsync.jobs.scheduler import AutoSyncScheduler
from erpsync.parse.models import SyncKind, SyncProgress, SyncRun, SyncSummary
from erpsync.store.invoices import InvoiceRepository
from erpsync.store.ledger import SyncLedger
from erpsync.store.records import RecordStore
from erpsync.store.spool import SpoolManager
from erpsync.store.state import SyncStateDB

logger = logging.getLogger(__name__)

app = FastAPI(title="ERP Sync API", version="0.1.0")

# API Key security (if configured)
API_KEY_HEADER = APIKeyHeader(name="X-API-KEY", auto_error=False)


def verify_api_key(api_key: str = Depends(API_KEY_HEADER)) -> bool:
    """Verify API key if configured."""
    expected_key = config.API_KEY
    if expected_key:
        if not api_key or api_key != expected_key:
            raise HTTPException(status_code=403, detail="Invalid API key")
    return True


class SyncService:
    """Holds the sync started through the API and its last outcome."""

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        state_db: Optional[SyncStateDB] = None,
        fetcher_factory: Optional[Callable[[], Any]] = None,
        **runner_options: Any,
    ):
        self._store = store
        self.state_db = state_db or SyncStateDB()
        self.fetcher_factory = fetcher_factory or (
            lambda: ErpClient(api_key=config.ERP_API_KEY, proxy_url=config.ERP_PROXY_URL)
        )
        self.runner_options = runner_options
        self.runner: Optional[SyncRunner] = None
        self.task: Optional[asyncio.Task] = None
        self.last_summary: Optional[SyncSummary] = None
        self.last_error: Optional[str] = None

    @property
    def store(self) -> RecordStore:
        if self._store is None:
            self._store = build_store()
        return self._store

    @property
    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()

    async def _check_lock(self) -> None:
        if self.is_running:
            raise SyncAlreadyRunning(f"A sync is already in progress (run {self.runner.run_id})")
        await self.state_db.initialize()
        holder = await self.state_db.get_lock()
        if holder and time.time() - holder["acquired_at"] < config.SYNC_LOCK_STALE_MINUTES * 60:
            raise SyncAlreadyRunning(f"A sync is already in progress (run {holder['owner']})")

    async def start(self, base_url: str, kind: Optional[SyncKind], max_pages: Optional[int]) -> SyncRunner:
        """Start a sync in the background; `kind=None` picks full or incremental."""
        await self._check_lock()
        if kind is None:
            full_due = await self.state_db.should_do_full_sync(config.FULL_SYNC_INTERVAL_HOURS)
            kind = SyncKind.FULL if full_due else SyncKind.INCREMENTAL

        fetcher = self.fetcher_factory()
        options = dict(self.runner_options)
        if "spool" not in options:
            options["spool"] = SpoolManager()
        runner = SyncRunner(
            fetcher=fetcher,
            repository=InvoiceRepository(self.store),
            ledger=SyncLedger(self.store),
            state_db=self.state_db,
            base_url=base_url,
            kind=kind,
            max_pages=max_pages,
            **options,
        )
        self.runner = runner
        self.last_error = None
        self.task = asyncio.create_task(self._run(runner, fetcher))
        return runner

    async def _run(self, runner: SyncRunner, fetcher: Any) -> None:
        try:
            self.last_summary = await runner.run()
        except (SyncAlreadyRunning, SyncRunFailed) as e:
            self.last_error = str(e)
            logger.error(f"Background sync {runner.run_id} did not complete: {e}")
        except Exception as e:
            self.last_error = f"{type(e).__name__}: {e}"
            logger.error(f"Background sync {runner.run_id} crashed: {e}", exc_info=True)
        finally:
            if hasattr(fetcher, "aclose"):
                await fetcher.aclose()


service = SyncService()
scheduler: Optional[AutoSyncScheduler] = None


def get_service() -> SyncService:
    return service


@app.on_event("startup")
async def startup():
    """Initialize on startup."""
    global scheduler
    await service.state_db.initialize()
    if config.AUTO_SYNC_ENABLED and config.ERP_BASE_URL:
        scheduler = AutoSyncScheduler(config.ERP_BASE_URL, state_db=service.state_db)
        asyncio.create_task(scheduler.run_forever())


@app.on_event("shutdown")
async def shutdown():
    if scheduler is not None:
        scheduler.stop()
    if service.runner is not None and service.is_running:
        service.runner.cancel()


class SyncRequest(BaseModel):
    """Request model for starting a sync."""
    kind: Optional[SyncKind] = None
    base_url: Optional[str] = None
    max_pages: Optional[int] = None


class SyncStarted(BaseModel):
    run_id: str
    kind: SyncKind


class SyncStatusResponse(BaseModel):
    running: bool
    run_id: Optional[str] = None
    progress: Optional[SyncProgress] = None
    summary: Optional[SyncSummary] = None
    error: Optional[str] = None


class ConnectionTestRequest(BaseModel):
    base_url: Optional[str] = None


@app.get("/health")
async def health(sync_service: SyncService = Depends(get_service)):
    """Health check endpoint (no auth required)."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "sync_running": sync_service.is_running,
    }


@app.post("/sync", status_code=202, response_model=SyncStarted)
async def start_sync(
    request: SyncRequest,
    sync_service: SyncService = Depends(get_service),
    _: bool = Depends(verify_api_key),
):
    """Start a sync in the background. Omit `kind` to choose automatically."""
    base_url = request.base_url or config.ERP_BASE_URL
    if not base_url:
        raise HTTPException(status_code=400, detail="base_url is required (or set ERP_BASE_URL)")
    try:
        runner = await sync_service.start(base_url, request.kind, request.max_pages)
    except SyncAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    return SyncStarted(run_id=runner.run_id, kind=runner.kind)


@app.get("/sync/progress", response_model=SyncStatusResponse)
async def sync_progress(
    sync_service: SyncService = Depends(get_service),
    _: bool = Depends(verify_api_key),
):
    runner = sync_service.runner
    return SyncStatusResponse(
        running=sync_service.is_running,
        run_id=runner.run_id if runner else None,
        progress=runner.progress if runner else None,
        summary=sync_service.last_summary,
        error=sync_service.last_error,
    )


@app.post("/sync/cancel")
async def cancel_sync(
    sync_service: SyncService = Depends(get_service),
    _: bool = Depends(verify_api_key),
):
    """Ask the running sync to stop after its current page."""
    if not sync_service.is_running:
        raise HTTPException(status_code=409, detail="No sync is running")
    sync_service.runner.cancel()
    return {"cancelled": True, "run_id": sync_service.runner.run_id}


@app.get("/sync/history", response_model=list[SyncRun])
async def sync_history(
    limit: int = 10,
    sync_service: SyncService = Depends(get_service),
    _: bool = Depends(verify_api_key),
):
    return await SyncLedger(sync_service.store).recent(limit=max(1, min(limit, 100)))


@app.post("/proxy")
async def proxy(request: ProxyRequest, _: bool = Depends(verify_api_key)):
    """Relay a request to an ERP URL and return its body."""
    result = await relay(request)
    return JSONResponse(status_code=result.status_code, content=result.content)


@app.post("/connection/test")
async def connection_test(
    request: ConnectionTestRequest,
    sync_service: SyncService = Depends(get_service),
    _: bool = Depends(verify_api_key),
):
    base_url = request.base_url or config.ERP_BASE_URL
    if not base_url:
        raise HTTPException(status_code=400, detail="base_url is required (or set ERP_BASE_URL)")
    fetcher = sync_service.fetcher_factory()
    try:
        ok, message = await fetcher.test_connection(base_url)
    finally:
        await fetcher.aclose()
    return {"ok": ok, "message": message}


if __name__ == "__main__":
    import uvicorn
    Config.validate()
    uvicorn.run(app, host="0.0.0.0", port=8000)
