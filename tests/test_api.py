"""Tests for health and status endpoints."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from flat_catalog_sync.api import health_router, status_router
from flat_catalog_sync.config import Config, ServerConfig, SyncConfig
from flat_catalog_sync.sync import SyncEngine


@pytest.fixture
def test_config():
    """Create test configuration."""
    return Config(
        servers=[
            ServerConfig(id="server1", base_url="http://files1", priority=1),
            ServerConfig(id="server2", base_url="http://files2", priority=2, enabled=False),
        ],
        sync=SyncConfig(interval_seconds=3600),
    )


@pytest.fixture
def mock_db():
    """Connected database double with fixed counts."""
    db = MagicMock()
    db.connected = True
    db.count = AsyncMock(side_effect=lambda table: {"movies": 3, "tv_shows": 1, "seasons": 2, "episodes": 10}[table])
    return db


@pytest.fixture
def engine(test_config):
    """Engine double reporting a running worker."""
    engine = MagicMock(spec=SyncEngine)
    engine.config = test_config
    engine.get_status.return_value = {
        "worker_running": True,
        "sync_running": False,
        "servers": [
            {"id": "server1", "base_url": "http://files1", "priority": 1, "enabled": True},
            {"id": "server2", "base_url": "http://files2", "priority": 2, "enabled": False},
        ],
        "last_run": None,
    }
    engine.trigger_run.return_value = True
    return engine


@pytest.fixture
def client(engine, mock_db):
    """Test client with both routers and patched database access."""
    app = FastAPI()
    app.include_router(health_router)
    app.include_router(status_router)
    app.state.engine = engine

    get_db = AsyncMock(return_value=mock_db)
    with (
        patch("flat_catalog_sync.api.health.get_db", get_db),
        patch("flat_catalog_sync.api.status.get_db", get_db),
    ):
        yield TestClient(app)


class TestHealth:
    """Liveness and readiness probes."""

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.text == "ok"

    def test_readyz_ok(self, client):
        response = client.get("/readyz")
        assert response.status_code == 200
        assert response.text == "ok"

    def test_readyz_database_not_connected(self, client, mock_db):
        mock_db.connected = False
        response = client.get("/readyz")
        assert response.status_code == 503
        assert "database" in response.text

    def test_readyz_worker_stopped(self, client, engine):
        engine.get_status.return_value = {**engine.get_status.return_value, "worker_running": False}
        response = client.get("/readyz")
        assert response.status_code == 503
        assert response.text == "worker not running"

    def test_readyz_worker_disabled_is_ready(self, client, engine, test_config):
        test_config.sync.interval_seconds = 0
        engine.get_status.return_value = {**engine.get_status.return_value, "worker_running": False}
        assert client.get("/readyz").status_code == 200

    def test_readyz_without_engine(self, client):
        del client.app.state.engine
        response = client.get("/readyz")
        assert response.status_code == 503
        assert response.text == "engine not initialized"

    def test_readyz_error(self, client, engine):
        engine.get_status.side_effect = RuntimeError("boom")
        response = client.get("/readyz")
        assert response.status_code == 503
        assert "boom" in response.text


class TestStatus:
    """Status and manual trigger."""

    def test_status(self, client):
        response = client.get("/api/status")

        assert response.status_code == 200
        data = response.json()
        assert data["worker_running"] is True
        assert data["sync_running"] is False
        assert [s["id"] for s in data["servers"]] == ["server1", "server2"]
        assert data["catalog"] == {"connected": True, "movies": 3, "tv_shows": 1, "seasons": 2, "episodes": 10}
        assert data["last_run"] is None
        assert data["uptime_seconds"] >= 0

    def test_trigger_sync(self, client, engine):
        response = client.post("/api/sync")

        assert response.status_code == 202
        assert response.json() == {"status": "started"}
        engine.trigger_run.assert_called_once()

    def test_trigger_sync_while_running(self, client, engine):
        engine.trigger_run.return_value = False

        response = client.post("/api/sync")

        assert response.status_code == 409
        assert "already in progress" in response.json()["detail"]
