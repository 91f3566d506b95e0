#!/usr/bin/env python3
"""Continuous processor that triggers a scraping run on a fixed cadence.

Each cycle checks whether any active source is due (never scraped, or last
scraped more than ``SCRAPE_INTERVAL_SECONDS`` ago) and, if so, runs the CLI
``run`` command in a child process so a crashed browser or leaked memory
never outlives the run.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from harvester import config
from harvester.models.repository import SQLAlchemyRepository

# In containerized environments the platform adds timestamps.
logging.basicConfig(
    level=logging.INFO,
    format="[%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)

SCRAPE_INTERVAL = config.SCRAPE_INTERVAL_SECONDS
IDLE_POLL_INTERVAL = int(os.getenv("IDLE_POLL_INTERVAL", "300"))
RUN_ENRICHMENT = config.ENABLE_ENRICHMENT

PROJECT_ROOT = Path(__file__).resolve().parents[1]
CLI_MODULE = "harvester.cli.cli_modular"


class WorkQueue:
    """Check the database for sources that are due."""

    def __init__(self, repository: Optional[SQLAlchemyRepository] = None):
        self._repository = repository

    @property
    def repository(self) -> SQLAlchemyRepository:
        if self._repository is None:
            self._repository = SQLAlchemyRepository()
            self._repository.create_schema()
        return self._repository

    def due_sources(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        cutoff = now - timedelta(seconds=SCRAPE_INTERVAL)
        due = 0
        for source in self.repository.list_active_sources():
            if source.protected_until is not None and source.protected_until > now:
                continue
            if source.last_scraped is None or source.last_scraped <= cutoff:
                due += 1
        return due


def run_cli_command(command: list[str], description: str) -> bool:
    """Execute a CLI command, streaming its output to our logs.

    Returns True if the command exited with status 0.
    """
    logger.info("▶️  %s", description)
    cmd = [sys.executable, "-m", CLI_MODULE, *command]
    logger.info("🧰 Running: %s", " ".join(cmd))

    env = os.environ.copy()
    env.setdefault("PYTHONUNBUFFERED", "1")

    start = time.time()
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=PROJECT_ROOT,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )

        if proc.stdout:
            for line in iter(proc.stdout.readline, ""):
                if line:
                    print(line.rstrip(), flush=True)

        returncode = proc.wait()
        elapsed = time.time() - start
        if returncode == 0:
            logger.info("✅ %s completed successfully (%.1fs)", description, elapsed)
            return True
        logger.error(
            "❌ %s failed with exit code %d (%.1fs)", description, returncode, elapsed
        )
        return False
    except Exception as exc:
        elapsed = time.time() - start
        logger.exception("💥 %s raised exception after %.1fs: %s", description, elapsed, exc)
        return False


def process_cycle(queue: Optional[WorkQueue] = None) -> bool:
    """Run one scraping pass if any source is due; returns True if one ran."""
    queue = queue or WorkQueue()
    try:
        due = queue.due_sources()
    except Exception as exc:
        logger.exception("💥 Could not read sources: %s", exc)
        return False

    if due == 0:
        logger.info("💤 No sources due this cycle")
        return False

    logger.info("📋 %d sources due for scraping", due)
    command = ["run"]
    if not RUN_ENRICHMENT:
        command.append("--no-enrichment")
    run_cli_command(command, "Scraping run")
    return True


def main(
    max_cycles: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
    queue: Optional[WorkQueue] = None,
) -> None:
    """Main loop: check for due sources and scrape them."""
    logger.info("🚀 Starting continuous processor")
    logger.info("  - Scrape interval: %d seconds", SCRAPE_INTERVAL)
    logger.info("  - Idle poll interval: %d seconds", IDLE_POLL_INTERVAL)
    logger.info("  - Enrichment: %s", "✅" if RUN_ENRICHMENT else "❌")

    queue = queue or WorkQueue()
    cycle_count = 0
    while max_cycles is None or cycle_count < max_cycles:
        cycle_count += 1
        logger.info("=" * 60)
        logger.info("Processing cycle #%d", cycle_count)

        try:
            ran = process_cycle(queue)
        except KeyboardInterrupt:
            logger.info("⏹️  Received interrupt signal, shutting down")
            break

        if max_cycles is not None and cycle_count >= max_cycles:
            break
        sleep_seconds = SCRAPE_INTERVAL if ran else IDLE_POLL_INTERVAL
        logger.info("⏸️  Sleeping for %d seconds", sleep_seconds)
        sleep(sleep_seconds)


if __name__ == "__main__":
    main()
