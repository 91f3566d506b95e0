"""Protection-bypass escalation ladder.

Each page fetch walks the tier table upward: fingerprinted HTTP first, then
the isolated render worker with increasing stealth, until a tier produces a
page that passes content validation. The walk never moves down a tier.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .errors import FetchError
from .fetchers import HttpFetcher
from .render_client import RenderWorkerClient
from .tiers import (
    METHOD_HTTP,
    METHOD_RENDER,
    PROTECTED_TIER,
    ScrapeTier,
    get_tier,
    next_tier,
)
from .validation import ValidationResult, needs_escalation, validate_content

logger = logging.getLogger(__name__)

FIRST_RENDER_TIER = 3


@dataclass
class LadderResult:
    """Outcome of one ladder walk for a single URL."""

    url: str
    html: Optional[str]
    tier: int
    method: str
    validation: Optional[ValidationResult] = None
    attempts: list[tuple[int, str]] = field(default_factory=list)
    protected: bool = False

    @property
    def success(self) -> bool:
        return not self.protected and self.html is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "tier": self.tier,
            "method": self.method,
            "protected": self.protected,
            "attempts": [{"tier": t, "reason": r} for t, r in self.attempts],
            "validation": self.validation.to_dict() if self.validation else None,
        }


class ProtectionBypassLadder:
    """Walk the tier table for a URL until a valid page is obtained.

    The only state kept across calls is the per-source tier memory and the
    set of sources found protected during the current run.
    """

    def __init__(
        self,
        http_fetcher: Optional[HttpFetcher] = None,
        render_client: Optional[RenderWorkerClient] = None,
        min_links: Optional[int] = None,
        on_escalate: Optional[Callable[[int, str], None]] = None,
    ):
        self.http_fetcher = http_fetcher or HttpFetcher()
        self.render_client = render_client or RenderWorkerClient()
        self.min_links = min_links
        self.on_escalate = on_escalate
        self._tier_memory: dict[str, int] = {}
        self._protected: set[str] = set()
        self._lock = threading.Lock()

    def last_attempted_tier(self, source_id: Optional[str]) -> Optional[int]:
        if source_id is None:
            return None
        with self._lock:
            return self._tier_memory.get(source_id)

    def starting_tier(self, source_id: Optional[str]) -> int:
        """Tier to start at for ``source_id``: one below its last good tier."""
        last = self.last_attempted_tier(source_id)
        if last is None:
            return 0
        return min(max(0, last - 1), FIRST_RENDER_TIER)

    def is_protected(self, source_id: Optional[str]) -> bool:
        if source_id is None:
            return False
        with self._lock:
            return source_id in self._protected

    def reset(self, source_id: Optional[str] = None) -> None:
        """Forget tier memory for one source, or for all sources."""
        with self._lock:
            if source_id is None:
                self._tier_memory.clear()
                self._protected.clear()
            else:
                self._tier_memory.pop(source_id, None)
                self._protected.discard(source_id)

    def reset_run(self) -> None:
        """Clear the per-run protected set; tier memory is kept."""
        with self._lock:
            self._protected.clear()

    def _remember(self, source_id: Optional[str], tier: int) -> None:
        if source_id is None:
            return
        with self._lock:
            self._tier_memory[source_id] = tier
            if tier >= PROTECTED_TIER:
                self._protected.add(source_id)

    def _attempt(
        self,
        tier: ScrapeTier,
        url: str,
        is_article: bool,
        scraping_config: Optional[dict[str, Any]],
        referer: Optional[str],
    ) -> tuple[str, str]:
        if tier.method == METHOD_HTTP:
            response = self.http_fetcher.fetch(url, tier, referer=referer)
            return response.html, response.method
        if tier.method == METHOD_RENDER:
            rendered = self.render_client.render(
                url,
                is_article=is_article,
                scraping_config=scraping_config,
                stealth=tier.profile,
                timeout=tier.timeout,
            )
            return rendered.html, f"render:{tier.profile}"
        raise FetchError(f"Tier {tier.tier} has no fetch method")

    def fetch(
        self,
        url: str,
        source_id: Optional[str] = None,
        is_article: bool = False,
        scraping_config: Optional[dict[str, Any]] = None,
        start_tier: Optional[int] = None,
        referer: Optional[str] = None,
    ) -> LadderResult:
        """Fetch ``url`` escalating through the tiers until validation passes.

        Returns a LadderResult; ``protected`` is set when every tier failed.
        Listing-page exhaustion marks ``source_id`` protected for the rest of
        the run, so later calls return immediately.
        """
        if self.is_protected(source_id):
            logger.info(f"Source {source_id} already marked protected this run, skipping {url}")
            return LadderResult(
                url=url,
                html=None,
                tier=PROTECTED_TIER,
                method="protected",
                attempts=[(PROTECTED_TIER, "source protected this run")],
                protected=True,
            )

        current = self.starting_tier(source_id) if start_tier is None else max(0, start_tier)
        attempts: list[tuple[int, str]] = []
        last_validation: Optional[ValidationResult] = None

        while current < PROTECTED_TIER:
            tier = get_tier(current)
            if tier.method == METHOD_RENDER and self.on_escalate is not None:
                self.on_escalate(tier.tier, url)

            logger.info(f"Tier {tier.tier} ({tier.method}:{tier.profile}) fetching {url}")
            try:
                html, method = self._attempt(tier, url, is_article, scraping_config, referer)
            except FetchError as exc:
                logger.warning(f"Tier {tier.tier} failed for {url}: {exc}")
                attempts.append((tier.tier, str(exc)))
                current = next_tier(current)
                continue

            validation = validate_content(
                html, url, is_article=is_article, min_links=self.min_links
            )
            last_validation = validation
            if not needs_escalation(validation, is_article=is_article, min_links=self.min_links):
                logger.info(
                    f"✅ Tier {tier.tier} succeeded for {url} "
                    f"({validation.link_count} links, confidence {validation.confidence})"
                )
                if not is_article:
                    self._remember(source_id, tier.tier)
                attempts.append((tier.tier, "ok"))
                return LadderResult(
                    url=url,
                    html=html,
                    tier=tier.tier,
                    method=method,
                    validation=validation,
                    attempts=attempts,
                )

            reason = (
                ", ".join(validation.error_indicators)
                or f"invalid ({validation.link_count} links, confidence {validation.confidence})"
            )
            logger.info(f"Tier {tier.tier} failed validation for {url}: {reason}")
            attempts.append((tier.tier, reason))
            current = next_tier(current)

        logger.warning(f"🛡️  All tiers exhausted for {url}, marking protected")
        if not is_article:
            self._remember(source_id, PROTECTED_TIER)
        return LadderResult(
            url=url,
            html=None,
            tier=PROTECTED_TIER,
            method="protected",
            validation=last_validation,
            attempts=attempts,
            protected=True,
        )
