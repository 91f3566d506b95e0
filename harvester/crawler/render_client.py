"""Caller side of the render worker subprocess boundary."""

from __future__ import annotations

import base64
import json
import logging
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from harvester import config

from .errors import RenderWorkerError

logger = logging.getLogger(__name__)

WORKER_MODULE = "harvester.crawler.render_worker"
PROJECT_ROOT = Path(__file__).resolve().parents[2]

RESULT_TYPES = ("links", "article")


@dataclass
class RenderResult:
    type: str
    html: str


def encode_payload(payload: dict[str, Any]) -> str:
    """Encode the worker input as base64 JSON for the command line."""
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def parse_worker_output(stdout: str) -> dict[str, Any]:
    """Return the JSON object from the worker's last non-empty stdout line.

    Raises:
        RenderWorkerError: when no line parses, the worker reported an error,
            or the result is missing its type/html
    """
    lines = [line.strip() for line in (stdout or "").splitlines() if line.strip()]
    if not lines:
        raise RenderWorkerError("Render worker produced no output")

    try:
        data = json.loads(lines[-1])
    except ValueError as exc:
        raise RenderWorkerError(f"Malformed render worker output: {exc}") from exc

    if not isinstance(data, dict):
        raise RenderWorkerError("Malformed render worker output: not an object")
    if data.get("error"):
        raise RenderWorkerError(data.get("message") or "Render worker reported an error")
    if data.get("type") not in RESULT_TYPES or not isinstance(data.get("html"), str):
        raise RenderWorkerError("Malformed render worker output: missing type or html")
    return data


class RenderWorkerClient:
    """Run one render worker process per call with a hard timeout."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        python: str = sys.executable,
        popen: Callable[..., Any] = subprocess.Popen,
    ):
        self.timeout = timeout if timeout is not None else config.RENDER_TIMEOUT
        self.python = python
        self._popen = popen

    def build_command(
        self,
        url: str,
        is_article: bool = False,
        scraping_config: Optional[dict[str, Any]] = None,
        stealth: str = "enhanced",
    ) -> list[str]:
        payload = encode_payload(
            {
                "url": url,
                "isArticlePage": is_article,
                "scrapingConfig": scraping_config or {},
                "stealth": stealth,
            }
        )
        return [self.python, "-m", WORKER_MODULE, f"--input-data={payload}"]

    def render(
        self,
        url: str,
        is_article: bool = False,
        scraping_config: Optional[dict[str, Any]] = None,
        stealth: str = "enhanced",
        timeout: Optional[float] = None,
    ) -> RenderResult:
        """Render ``url`` in a fresh worker process.

        Raises:
            RenderWorkerError: on timeout, crash, or unusable output
        """
        cmd = self.build_command(url, is_article, scraping_config, stealth)
        limit = timeout if timeout is not None else self.timeout

        env = os.environ.copy()
        env.setdefault("PYTHONUNBUFFERED", "1")

        start = time.time()
        proc = self._popen(
            cmd,
            cwd=PROJECT_ROOT,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
        try:
            stdout, stderr = proc.communicate(timeout=limit)
        except subprocess.TimeoutExpired as exc:
            self._kill(proc)
            raise RenderWorkerError(
                f"Render worker timed out after {limit:.0f}s for {url}"
            ) from exc

        for line in (stderr or "").splitlines():
            if line.strip():
                logger.debug(line.rstrip())

        elapsed = time.time() - start
        try:
            data = parse_worker_output(stdout)
        except RenderWorkerError:
            logger.warning(
                f"Render worker failed for {url} (exit {proc.returncode}, {elapsed:.1f}s)"
            )
            raise

        if proc.returncode:
            logger.warning(
                f"Render worker exited with code {proc.returncode} for {url} ({elapsed:.1f}s)"
            )
            raise RenderWorkerError(
                f"Render worker exited with code {proc.returncode} for {url}"
            )

        logger.info(
            f"🖥️  Rendered {url} as {data['type']} "
            f"({len(data['html'])} chars, {elapsed:.1f}s)"
        )
        return RenderResult(type=data["type"], html=data["html"])

    @staticmethod
    def _kill(proc) -> None:
        """Terminate the worker and any browser it spawned."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError, OSError):
            proc.kill()
        try:
            proc.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning(f"Render worker {proc.pid} did not exit after kill")
