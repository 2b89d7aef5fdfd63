"""Tests for the HTTP API."""
import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from erpsync.api import main as api_main
from erpsync.config import config
from erpsync.errors import PersistenceFailure
from erpsync.fetch.proxy import ProxyResult

from conftest import make_line


class FakeFetcher:
    def __init__(self):
        self.closed = False

    async def fetch_page(self, base_url, page):
        if page == 1:
            return {"data": [make_line(1), make_line(2)], "total": 2, "limit": 2}
        return {"data": []}

    async def test_connection(self, base_url):
        return True, "Connection OK: 2 records found"

    async def aclose(self):
        self.closed = True


@pytest.fixture
def service(store, state_db, monkeypatch):
    monkeypatch.setattr(config, "API_KEY", None)
    monkeypatch.setattr(config, "AUTO_SYNC_ENABLED", False)
    sync_service = api_main.SyncService(
        store=store,
        state_db=state_db,
        fetcher_factory=FakeFetcher,
        page_delay=0,
        spool=None,
    )
    monkeypatch.setattr(api_main, "service", sync_service)
    return sync_service


def _wait_until_idle(client, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        status = client.get("/sync/progress").json()
        if not status["running"]:
            return status
        time.sleep(0.02)
    raise AssertionError("sync did not finish")


def test_health(service):
    """Test health check needs no key."""
    with TestClient(api_main.app) as client:
        response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_start_sync_and_read_progress(service):
    """Test a sync started over HTTP runs in the background."""
    with TestClient(api_main.app) as client:
        response = client.post("/sync", json={"kind": "full", "base_url": "https://erp.example.com/r"})
        assert response.status_code == 202
        run_id = response.json()["run_id"]

        status = _wait_until_idle(client)
        assert status["run_id"] == run_id
        assert status["error"] is None
        assert status["summary"]["inserted_count"] == 2
        assert status["progress"]["percentage"] == 100.0

        history = client.get("/sync/history").json()
        assert history[0]["id"] == run_id
        assert history[0]["status"] == "completed"


def test_background_crash_is_reported(service, state_db, monkeypatch):
    """Test an unexpected error in the background run shows up in progress."""

    async def broken_lock(owner, stale_after_seconds):
        raise RuntimeError("disk I/O error")

    monkeypatch.setattr(state_db, "acquire_lock", broken_lock)
    with TestClient(api_main.app) as client:
        response = client.post("/sync", json={"kind": "full", "base_url": "https://erp.example.com/r"})
        assert response.status_code == 202
        status = _wait_until_idle(client)
    assert status["error"] == "RuntimeError: disk I/O error"
    assert status["summary"] is None


def test_ledger_outage_is_reported(service, store, monkeypatch):
    """Test a failure to open the run in the ledger is reported, not lost."""
    insert = store.insert

    async def failing_insert(table, rows):
        if table == "sync_history":
            raise PersistenceFailure("sync_history insert failed")
        return await insert(table, rows)

    monkeypatch.setattr(store, "insert", failing_insert)
    with TestClient(api_main.app) as client:
        client.post("/sync", json={"kind": "full", "base_url": "https://erp.example.com/r"})
        status = _wait_until_idle(client)
    assert "Could not record the start of the sync" in status["error"]
    assert not service.is_running


def test_sync_requires_base_url(service, monkeypatch):
    """Test 400 without a base URL."""
    monkeypatch.setattr(config, "ERP_BASE_URL", None)
    with TestClient(api_main.app) as client:
        response = client.post("/sync", json={})
    assert response.status_code == 400


def test_sync_refused_while_locked(service, state_db):
    """Test 409 when another sync holds the lock."""

    async def lock():
        await state_db.initialize()
        await state_db.acquire_lock("cli-run", stale_after_seconds=3600)

    asyncio.run(lock())
    with TestClient(api_main.app) as client:
        response = client.post("/sync", json={"base_url": "https://erp.example.com/r"})
    assert response.status_code == 409
    assert "cli-run" in response.json()["detail"]


def test_cancel_without_running_sync(service):
    """Test cancel is a conflict when nothing runs."""
    with TestClient(api_main.app) as client:
        response = client.post("/sync/cancel")
    assert response.status_code == 409


def test_api_key_required_when_configured(service, monkeypatch):
    """Test the X-API-KEY guard."""
    monkeypatch.setattr(config, "API_KEY", "s3cret")
    with TestClient(api_main.app) as client:
        assert client.get("/sync/history").status_code == 403
        assert client.get("/sync/history", headers={"X-API-KEY": "wrong"}).status_code == 403
        assert client.get("/sync/history", headers={"X-API-KEY": "s3cret"}).status_code == 200


def test_proxy_returns_upstream_status(service, monkeypatch):
    """Test the relay result status and body are passed through."""

    async def fake_relay(request):
        assert request.url == "https://erp.example.com/r"
        return ProxyResult(status_code=503, content={"error": "Upstream returned 503", "details": "down"})

    monkeypatch.setattr(api_main, "relay", fake_relay)
    with TestClient(api_main.app) as client:
        response = client.post("/proxy", json={"url": "https://erp.example.com/r"})
    assert response.status_code == 503
    assert response.json()["details"] == "down"


def test_connection_test(service):
    """Test the connection check endpoint."""
    with TestClient(api_main.app) as client:
        response = client.post("/connection/test", json={"base_url": "https://erp.example.com/r"})
    assert response.status_code == 200
    assert response.json() == {"ok": True, "message": "Connection OK: 2 records found"}
