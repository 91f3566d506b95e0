"""FastAPI lifecycle management for shared resources.

This module centralizes startup and shutdown handling for:
- SQLAlchemyRepository (engine/connection pool)
- ProgressBroadcaster (in-process progress pub/sub)
- SourceOrchestrator (scraping run control)

Each resource is only created when tests have not already placed one on
``app.state``, which keeps dependency injection straightforward.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from harvester.models.repository import SQLAlchemyRepository
from harvester.pipeline.orchestrator import SourceOrchestrator
from harvester.pipeline.progress import ProgressBroadcaster

logger = logging.getLogger(__name__)


def _missing(app: FastAPI, name: str) -> bool:
    return getattr(app.state, name, None) is None


async def startup_resources(app: FastAPI) -> None:
    """Initialize shared resources for the FastAPI app."""
    logger.info("Starting resource initialization...")

    # 1. Repository
    try:
        if _missing(app, "repository"):
            from harvester import config as app_config

            repository = SQLAlchemyRepository(app_config.DATABASE_URL)
            repository.create_schema()
            app.state.repository = repository
            logger.info(f"Repository initialized: {app_config.DATABASE_URL[:50]}...")
        else:
            logger.info("Repository already provided on app.state; skipping init")
    except Exception as exc:
        logger.exception("Failed to initialize repository", exc_info=exc)
        app.state.repository = None

    # 2. Progress broadcaster
    if _missing(app, "broadcaster"):
        app.state.broadcaster = ProgressBroadcaster()
        logger.info("Progress broadcaster initialized")

    # 3. Orchestrator
    try:
        if _missing(app, "orchestrator"):
            if app.state.repository is None:
                raise RuntimeError("repository unavailable")
            from harvester.runtime import build_orchestrator

            app.state.orchestrator = build_orchestrator(
                repository=app.state.repository, broadcaster=app.state.broadcaster
            )
            logger.info("Source orchestrator initialized")
        else:
            logger.info("Orchestrator already provided on app.state; skipping init")
    except Exception as exc:
        logger.exception("Failed to initialize orchestrator", exc_info=exc)
        app.state.orchestrator = None

    app.state.ready = True
    logger.info("All resources initialized, app is ready")


async def shutdown_resources(app: FastAPI) -> None:
    """Clean up shared resources gracefully."""
    logger.info("Starting resource cleanup...")

    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        try:
            if orchestrator.get_status()["running"]:
                logger.info("Stopping in-flight scraping run...")
                orchestrator.stop_run()
            http_fetcher = getattr(orchestrator.ladder, "http_fetcher", None)
            if http_fetcher is not None:
                http_fetcher.close()
        except Exception as exc:
            logger.exception("Error stopping orchestrator", exc_info=exc)

    repository = getattr(app.state, "repository", None)
    if repository is not None:
        try:
            logger.info("Disposing repository engine...")
            repository.engine.dispose()
            logger.info("Repository engine disposed")
        except Exception as exc:
            logger.exception("Error disposing repository engine", exc_info=exc)

    if hasattr(app.state, "ready"):
        app.state.ready = False

    logger.info("Resource cleanup complete")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Initialize resources before the app serves requests and release them after."""
    await startup_resources(app)
    yield
    await shutdown_resources(app)


# Dependency injection functions for route handlers


def get_repository(request: Request) -> Optional[SQLAlchemyRepository]:
    return getattr(request.app.state, "repository", None)


def get_broadcaster(request: Request) -> Optional[ProgressBroadcaster]:
    return getattr(request.app.state, "broadcaster", None)


def get_orchestrator(request: Request) -> Optional[SourceOrchestrator]:
    """Dependency providing the shared orchestrator.

    Returns None if startup could not build one. Tests can override this
    dependency or place a fake on ``app.state.orchestrator``.
    """
    return getattr(request.app.state, "orchestrator", None)


def is_ready(request: Request) -> bool:
    return getattr(request.app.state, "ready", False)


def check_db_health(repository: Any) -> tuple[bool, str]:
    """Perform a lightweight database health check."""
    if repository is None:
        return False, "Repository not initialized"

    try:
        with repository.session() as session:
            session.execute(text("SELECT 1"))
        return True, "Database connection OK"
    except OperationalError as exc:
        return False, f"Database connection failed: {exc}"
    except Exception as exc:
        return False, f"Database health check error: {exc}"
