"""Centralized configuration read from the environment.

Every tunable is a module-level constant so callers can ``from harvester
import config`` and tests can monkeypatch individual values.
"""

from __future__ import annotations

import os


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///data/harvester.db")

# Classification service
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_TIMEOUT = _env_float("OPENAI_TIMEOUT", 60.0)
RELEVANCE_TOPIC = os.getenv(
    "RELEVANCE_TOPIC", "cybersecurity, information security or cyber threats"
)

# Validation thresholds
MIN_LINK_COUNT = _env_int("MIN_LINK_COUNT", 10)
MIN_CONTENT_LENGTH = _env_int("MIN_CONTENT_LENGTH", 500)

# Fetch / render timeouts (seconds)
HTTP_TIMEOUT = _env_float("HTTP_TIMEOUT", 30.0)
RENDER_TIMEOUT = _env_float("RENDER_TIMEOUT", 120.0)

# Politeness between article fetches
INTER_REQUEST_MIN = _env_float("INTER_REQUEST_MIN", 1.0)
INTER_REQUEST_MAX = _env_float("INTER_REQUEST_MAX", 2.5)

# Orchestrator
MAX_ARTICLES_PER_SOURCE = _env_int("MAX_ARTICLES_PER_SOURCE", 50)
SCRAPE_INTERVAL_SECONDS = _env_int("SCRAPE_INTERVAL_SECONDS", 3 * 60 * 60)
ENABLE_ENRICHMENT = _env_bool("ENABLE_ENRICHMENT", True)

# Progress broadcaster
PROGRESS_GRACE_SECONDS = _env_float("PROGRESS_GRACE_SECONDS", 5.0)
PROGRESS_QUEUE_SIZE = _env_int("PROGRESS_QUEUE_SIZE", 100)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "console")

# Browser rendering
CHROME_BIN = os.getenv("CHROME_BIN") or os.getenv("GOOGLE_CHROME_BIN")
CHROMEDRIVER_PATH = os.getenv("CHROMEDRIVER_PATH")
SELENIUM_PROXY = os.getenv("SELENIUM_PROXY")
