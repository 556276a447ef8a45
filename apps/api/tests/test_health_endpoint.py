import pytest
from httpx import ASGITransport, AsyncClient

from clubledger_api.core.settings import settings


class StubWorker:
    def __init__(self, *, is_running: bool, last_error: str | None = None) -> None:
        self.is_running = is_running
        self.last_error = last_error
        self.last_run_at = None


@pytest.mark.asyncio
async def test_healthz_endpoints(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        versioned = await client.get("/api/v1/healthz")
        root = await client.get("/healthz")

    assert versioned.json() == {"status": "ok"}
    assert root.status_code == 200
    assert root.json()["status"] == "ok"
    assert "version" in root.json()


@pytest.mark.asyncio
async def test_readyz_reports_component_statuses(app_with_db, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "xero_sync_worker_enabled", False)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/readyz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ready"
    assert payload["components"]["database"]["status"] == "ready"
    assert payload["components"]["xero_sync"]["status"] == "disabled"


@pytest.mark.asyncio
async def test_readyz_degrades_when_last_sweep_failed(app_with_db, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "xero_sync_worker_enabled", True)
    app.state.xero_sync_worker = StubWorker(is_running=True, last_error="Xero API error 401")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/readyz")

    payload = response.json()
    assert payload["status"] == "degraded"
    component = payload["components"]["xero_sync"]
    assert component["status"] == "error"
    assert component["last_error"] == "Xero API error 401"
    assert component["last_success_at"] is None
