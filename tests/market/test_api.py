"""Tests for the HTTP API (snapshot, stream validation, sync, health)."""

import os
from unittest.mock import patch

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

import tickstream.main
from tickstream.main import app_from_env, create_app
from tickstream.market.api import create_snapshot_router
from tickstream.market.config import MarketConfig
from tickstream.market.factory import create_market_services

from .fakes import ScriptedAdapter, make_registry


@pytest.fixture
def services():
    return create_market_services(
        MarketConfig(),
        registry=make_registry(),
        adapters={"primary": ScriptedAdapter("primary", 100.0)},
    )


@pytest_asyncio.fixture
async def client(services):
    """HTTP client bound to an app built on scripted providers."""
    app = create_app(services=services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await services.aclose()


@pytest.mark.asyncio
class TestSnapshotEndpoint:
    """GET and POST /api/market/snapshot."""

    async def test_get_snapshot(self, client):
        """Known ids resolve; unknown ids are omitted without failing the request."""
        response = await client.get("/api/market/snapshot", params={"ids": "btc, AAPL,UNKNOWN"})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert [t["id"] for t in body["data"]] == ["BTC", "AAPL"]
        assert body["data"][0]["source"] == "primary"

    async def test_post_snapshot(self, client):
        response = await client.post("/api/market/snapshot", json={"ids": ["eth", "EURUSD"]})
        assert response.status_code == 200
        assert [t["id"] for t in response.json()["data"]] == ["ETH", "EURUSD"]

    @pytest.mark.parametrize("params", [{}, {"ids": ""}, {"ids": " , "}])
    async def test_get_missing_ids(self, client, params):
        response = await client.get("/api/market/snapshot", params=params)
        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Missing ids parameter"}

    async def test_post_missing_ids(self, client):
        response = await client.post("/api/market/snapshot", json={})
        assert response.status_code == 400
        assert response.json()["success"] is False

    async def test_post_invalid_body(self, client):
        response = await client.post(
            "/api/market/snapshot", content=b"not json", headers={"content-type": "application/json"}
        )
        assert response.status_code == 400

    async def test_post_wrong_type(self, client):
        response = await client.post("/api/market/snapshot", json={"ids": 42})
        assert response.status_code == 400

    async def test_unexpected_error_is_500(self):
        """An unexpected failure in the service returns a 500 envelope."""

        class BrokenService:
            async def snapshot(self, ids):
                raise RuntimeError("cache exploded")

        app = FastAPI()
        app.include_router(create_snapshot_router(BrokenService(), make_registry()))
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get("/api/market/snapshot", params={"ids": "BTC"})

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "cache exploded"}

    async def test_instruments(self, client):
        response = await client.get("/api/market/instruments")
        assert response.status_code == 200
        ids = [i["id"] for i in response.json()["data"]]
        assert ids == ["BTC", "ETH", "AAPL", "EURUSD"]


@pytest.mark.asyncio
class TestStreamEndpoint:
    """Validation happens before any stream is opened."""

    async def test_missing_ids(self, client):
        response = await client.get("/api/stream/ticks")
        assert response.status_code == 400
        assert response.json()["error"] == "Missing ids parameter"

    async def test_unknown_ids(self, client, services):
        response = await client.get("/api/stream/ticks", params={"ids": "BTC,NOPE"})
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["unknown"] == ["NOPE"]
        assert services.engine.active == 0


@pytest.mark.asyncio
class TestSyncEndpoint:
    async def test_trigger_sync(self, client, services):
        response = await client.post("/api/sync/crypto")
        assert response.status_code == 202
        assert response.json() == {"success": True, "family": "crypto", "scheduled": True}

    async def test_unknown_family(self, client):
        response = await client.post("/api/sync/bonds")
        assert response.status_code == 400
        assert response.json()["success"] is False


@pytest.mark.asyncio
class TestHealthEndpoint:
    async def test_health(self, client):
        response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "streams": 0}


@pytest.mark.asyncio
class TestAppFactory:
    """The app is built on demand, never at import time."""

    async def test_import_builds_nothing(self):
        assert not hasattr(tickstream.main, "app")

    async def test_app_from_env(self):
        env = {"MARKET_CACHE_TTL": "2.5", "LOG_LEVEL": "warning"}
        with patch.dict(os.environ, env, clear=True), patch.object(tickstream.main, "setup_logging") as setup:
            app = app_from_env()

        setup.assert_called_once_with("WARNING")
        services = app.state.services
        assert services.config.cache_ttl == 2.5

        async with app.router.lifespan_context(app):
            assert not services.client.is_closed
        assert services.client.is_closed
