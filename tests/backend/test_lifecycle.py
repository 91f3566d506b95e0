"""Tests for FastAPI lifecycle management and dependency injection."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from backend.app.lifecycle import (
    check_db_health,
    get_broadcaster,
    get_orchestrator,
    get_repository,
    is_ready,
    lifespan,
    shutdown_resources,
    startup_resources,
)
from harvester.pipeline.progress import ProgressBroadcaster


def _fake_orchestrator(running=False):
    orchestrator = MagicMock()
    orchestrator.get_status.return_value = {"running": running}
    return orchestrator


class TestStartup:
    @pytest.mark.asyncio
    async def test_startup_builds_resources(self, monkeypatch):
        monkeypatch.setattr("harvester.config.DATABASE_URL", "sqlite:///:memory:")
        app = FastAPI()

        await startup_resources(app)

        assert app.state.repository is not None
        assert isinstance(app.state.broadcaster, ProgressBroadcaster)
        assert app.state.orchestrator.broadcaster is app.state.broadcaster
        assert app.state.orchestrator.persistence is app.state.repository
        assert app.state.ready is True

        await shutdown_resources(app)

    @pytest.mark.asyncio
    async def test_startup_skips_resources_already_on_state(self, repository):
        app = FastAPI()
        broadcaster = ProgressBroadcaster()
        orchestrator = _fake_orchestrator()
        app.state.repository = repository
        app.state.broadcaster = broadcaster
        app.state.orchestrator = orchestrator

        await startup_resources(app)

        assert app.state.repository is repository
        assert app.state.broadcaster is broadcaster
        assert app.state.orchestrator is orchestrator
        assert app.state.ready is True

    @pytest.mark.asyncio
    async def test_repository_failure_leaves_orchestrator_unset(self, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("cannot connect")

        monkeypatch.setattr("backend.app.lifecycle.SQLAlchemyRepository", boom)
        app = FastAPI()

        await startup_resources(app)

        assert app.state.repository is None
        assert app.state.orchestrator is None
        assert app.state.ready is True


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_stops_running_job_and_closes_sessions(self):
        app = FastAPI()
        orchestrator = _fake_orchestrator(running=True)
        repository = MagicMock()
        app.state.orchestrator = orchestrator
        app.state.repository = repository
        app.state.ready = True

        await shutdown_resources(app)

        orchestrator.stop_run.assert_called_once()
        orchestrator.ladder.http_fetcher.close.assert_called_once()
        repository.engine.dispose.assert_called_once()
        assert app.state.ready is False

    @pytest.mark.asyncio
    async def test_shutdown_idle_orchestrator_not_stopped(self):
        app = FastAPI()
        orchestrator = _fake_orchestrator(running=False)
        app.state.orchestrator = orchestrator

        await shutdown_resources(app)

        orchestrator.stop_run.assert_not_called()

    @pytest.mark.asyncio
    async def test_shutdown_tolerates_dispose_error(self):
        app = FastAPI()
        repository = MagicMock()
        repository.engine.dispose.side_effect = RuntimeError("already closed")
        app.state.repository = repository
        app.state.ready = True

        await shutdown_resources(app)

        assert app.state.ready is False

    @pytest.mark.asyncio
    async def test_shutdown_with_empty_state(self):
        app = FastAPI()

        await shutdown_resources(app)

        assert not hasattr(app.state, "ready")


def test_lifespan_runs_startup_and_shutdown():
    app = FastAPI(lifespan=lifespan)
    orchestrator = _fake_orchestrator()
    app.state.repository = MagicMock()
    app.state.orchestrator = orchestrator

    with TestClient(app):
        assert app.state.ready is True
        assert isinstance(app.state.broadcaster, ProgressBroadcaster)

    assert app.state.ready is False
    orchestrator.ladder.http_fetcher.close.assert_called_once()
    app.state.repository.engine.dispose.assert_called_once()


def test_dependency_getters_read_app_state():
    app = FastAPI()
    orchestrator = _fake_orchestrator()
    broadcaster = ProgressBroadcaster()
    app.state.orchestrator = orchestrator
    app.state.broadcaster = broadcaster
    app.state.repository = "repo"
    app.state.ready = True

    @app.get("/deps")
    def deps(
        orch=Depends(get_orchestrator),
        bc=Depends(get_broadcaster),
        repo=Depends(get_repository),
        ready=Depends(is_ready),
    ):
        return {
            "orchestrator": orch is orchestrator,
            "broadcaster": bc is broadcaster,
            "repository": repo,
            "ready": ready,
        }

    response = TestClient(app).get("/deps")

    assert response.json() == {
        "orchestrator": True,
        "broadcaster": True,
        "repository": "repo",
        "ready": True,
    }


def test_dependency_getters_default_to_none():
    app = FastAPI()

    @app.get("/deps")
    def deps(orch=Depends(get_orchestrator), ready=Depends(is_ready)):
        return {"orchestrator": orch, "ready": ready}

    assert TestClient(app).get("/deps").json() == {"orchestrator": None, "ready": False}


class TestCheckDbHealth:
    def test_missing_repository(self):
        assert check_db_health(None) == (False, "Repository not initialized")

    def test_live_repository(self, repository):
        assert check_db_health(repository) == (True, "Database connection OK")

    def test_operational_error(self):
        repository = MagicMock()
        repository.session.return_value.__enter__.return_value.execute.side_effect = (
            OperationalError("SELECT 1", {}, Exception("connection refused"))
        )

        healthy, message = check_db_health(repository)

        assert healthy is False
        assert message.startswith("Database connection failed")

    def test_unexpected_error(self):
        repository = MagicMock()
        repository.session.side_effect = RuntimeError("pool exhausted")

        assert check_db_health(repository) == (
            False,
            "Database health check error: pool exhausted",
        )
