"""Pytest-wide fixtures for harvester tests."""

from __future__ import annotations

import os

# Set BEFORE any import of harvester.config so no real database or API key leaks in
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["OPENAI_API_KEY"] = ""
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("PROGRESS_GRACE_SECONDS", "5")

import pytest  # noqa: E402

from harvester.crawler.structure import StructureCache  # noqa: E402
from harvester.models.repository import SQLAlchemyRepository  # noqa: E402
from harvester.pipeline.progress import ProgressBroadcaster  # noqa: E402
from tests.helpers.fakes import FakeClock, FakeDetector, FakePersistence  # noqa: E402


@pytest.fixture
def fake_persistence():
    return FakePersistence()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def broadcaster(fake_clock):
    return ProgressBroadcaster(grace_seconds=5.0, clock=fake_clock)


@pytest.fixture
def structure_cache():
    return StructureCache(FakeDetector())


@pytest.fixture
def repository():
    repo = SQLAlchemyRepository("sqlite:///:memory:")
    repo.create_schema()
    yield repo
    repo.engine.dispose()
