"""Full-fleet scraping run with single-flight and partial-failure semantics.

A run walks every active source in order. For each source the listing page
goes through the protection-bypass ladder, candidate links are extracted and
filtered, and every new link is fetched, extracted, validated, enriched and
stored. A failure inside one source is recorded in that source's result and
the run moves on; only an unexpected error outside those boundaries aborts
the run, and the running flag is always released.
"""

from __future__ import annotations

import logging
import random
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from harvester import config
from harvester.crawler.articles import extract_article
from harvester.crawler.errors import (
    InvalidExtractionConfig,
    NoArticleLinksError,
    SourceExhaustedError,
)
from harvester.crawler.ladder import ProtectionBypassLadder
from harvester.crawler.links import LinkPolicy, extract_candidate_links
from harvester.crawler.structure import ExtractionConfig, StructureCache
from harvester.crawler.utils import normalize_domain

from .article_validation import ArticleDeduplicator, validate_article
from .enrichment import Enrichment, EnrichmentStage
from .interfaces import Persistence
from .progress import DEFAULT_AUDIENCE, ProgressBroadcaster

logger = logging.getLogger(__name__)

# Detected configs below this confidence are used for the run but not stored
PERSIST_CONFIDENCE = 0.5


@dataclass
class SourceResult:
    source_id: str
    source_name: str
    processed: int = 0
    saved: int = 0
    skipped: int = 0
    new_article_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    tier: Optional[int] = None
    success: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "sourceName": self.source_name,
            "processedCount": self.processed,
            "savedCount": self.saved,
            "skippedCount": self.skipped,
            "newArticleIds": list(self.new_article_ids),
            "errors": list(self.errors),
            "tier": self.tier,
            "success": self.success,
        }


@dataclass
class OrchestratorState:
    """Mutable run state; every access goes through ``lock``."""

    running: bool = False
    stop_requested: bool = False
    active_sources: set[str] = field(default_factory=set)
    job_id: Optional[str] = None
    last_results: list[SourceResult] = field(default_factory=list)
    last_summary: Optional[dict[str, Any]] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


def _error_summary(message: str, results: Optional[list[SourceResult]] = None) -> dict[str, Any]:
    results = results or []
    return {
        "success": False,
        "message": message,
        "totalProcessed": sum(r.processed for r in results),
        "totalSaved": sum(r.saved for r in results),
        "totalSkipped": sum(r.skipped for r in results),
        "sourceResults": [r.to_dict() for r in results],
    }


class SourceOrchestrator:
    """Drive scraping runs over all active sources."""

    def __init__(
        self,
        persistence: Persistence,
        ladder: ProtectionBypassLadder,
        structure_cache: StructureCache,
        enrichment: Optional[EnrichmentStage],
        broadcaster: ProgressBroadcaster,
        job_type: str = "global",
        audience: str = DEFAULT_AUDIENCE,
        link_policy: Optional[LinkPolicy] = None,
        max_articles_per_source: Optional[int] = None,
        state: Optional[OrchestratorState] = None,
        sleep: Callable[[float], None] = time.sleep,
        request_delay: Optional[tuple[float, float]] = None,
    ):
        self.persistence = persistence
        self.ladder = ladder
        self.structure_cache = structure_cache
        self.enrichment = enrichment or EnrichmentStage(None)
        self.broadcaster = broadcaster
        self.job_type = job_type
        self.audience = audience
        self.link_policy = link_policy
        self.max_articles_per_source = (
            config.MAX_ARTICLES_PER_SOURCE
            if max_articles_per_source is None
            else max_articles_per_source
        )
        self.state = state or OrchestratorState()
        self.deduplicator = ArticleDeduplicator(persistence)
        self._sleep = sleep
        self._request_delay = request_delay or (config.INTER_REQUEST_MIN, config.INTER_REQUEST_MAX)
        self._thread: Optional[threading.Thread] = None
        self._run_context = threading.local()
        self.ladder.on_escalate = self._on_escalate

    # ------------------------------------------------------------------
    # Job control
    # ------------------------------------------------------------------
    def _begin(self) -> Optional[str]:
        with self.state.lock:
            if self.state.running:
                return None
            job_id = str(uuid.uuid4())
            self.state.running = True
            self.state.stop_requested = False
            self.state.job_id = job_id
            self.state.last_results = []
            self.state.started_at = datetime.utcnow()
            self.state.finished_at = None
            return job_id

    def start_run(self, background: bool = True) -> dict[str, Any]:
        job_id = self._begin()
        if job_id is None:
            with self.state.lock:
                current = self.state.job_id
            logger.info(f"Run {current} already in progress, start request ignored")
            return {"status": "alreadyRunning", "jobId": current}

        if background:
            self._thread = threading.Thread(
                target=self._execute, args=(job_id,), name=f"scrape-run-{job_id[:8]}", daemon=True
            )
            self._thread.start()
        else:
            self._execute(job_id)
        return {"status": "accepted", "jobId": job_id}

    def run(self) -> dict[str, Any]:
        """Execute a full run synchronously and return its summary."""
        job_id = self._begin()
        if job_id is None:
            return _error_summary("A scraping job is already running")
        return self._execute(job_id)

    def stop_run(self) -> dict[str, Any]:
        with self.state.lock:
            if not self.state.running:
                return {"status": "notRunning"}
            self.state.stop_requested = True
            self.state.running = False
            self.state.active_sources.clear()
            job_id = self.state.job_id
        logger.info(f"🛑 Stop requested for run {job_id}")
        return {"status": "accepted", "jobId": job_id}

    def wait(self, timeout: Optional[float] = None) -> None:
        """Join the background run thread, if one was started."""
        if self._thread is not None:
            self._thread.join(timeout)

    def get_status(self) -> dict[str, Any]:
        with self.state.lock:
            return {
                "running": self.state.running,
                "jobId": self.state.job_id,
                "activeSources": sorted(self.state.active_sources),
                "sourceResults": [r.to_dict() for r in self.state.last_results],
                "startedAt": self.state.started_at.isoformat() if self.state.started_at else None,
                "finishedAt": self.state.finished_at.isoformat() if self.state.finished_at else None,
                "lastSummary": self.state.last_summary,
            }

    def _should_stop(self, job_id: Optional[str]) -> bool:
        with self.state.lock:
            return self.state.stop_requested or (
                job_id is not None and self.state.job_id != job_id
            )

    def _source_active(self, source_id: str) -> bool:
        with self.state.lock:
            return source_id in self.state.active_sources

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    def _execute(self, job_id: str) -> dict[str, Any]:
        results: list[SourceResult] = []
        summary: dict[str, Any]
        self._run_context.job_id = job_id
        try:
            if self._is_current(job_id):
                self.ladder.reset_run()
                self.deduplicator.reset()

            sources = self.persistence.list_active_sources()
            logger.info(f"🚀 Run {job_id} starting with {len(sources)} active sources")
            self.broadcaster.start_job(job_id, self.job_type, len(sources), self.audience)

            for source in sources:
                if self._should_stop(job_id):
                    logger.info(f"Run {job_id} stopped, skipping remaining sources")
                    break
                result = self.scrape_source(source, job_id=job_id)
                results.append(result)
                with self.state.lock:
                    if self.state.job_id == job_id:
                        self.state.last_results = list(results)

            total_processed = sum(r.processed for r in results)
            total_saved = sum(r.saved for r in results)
            total_skipped = sum(r.skipped for r in results)
            if sources:
                message = (
                    f"Processed {len(results)} of {len(sources)} sources. Total: "
                    f"{total_processed} articles processed, {total_saved} saved."
                )
            else:
                message = "No active sources found for scraping"
            summary = {
                "success": True,
                "message": message,
                "totalProcessed": total_processed,
                "totalSaved": total_saved,
                "totalSkipped": total_skipped,
                "sourceResults": [r.to_dict() for r in results],
            }
            logger.info(f"✅ Run {job_id} completed: {message}")
            if self._is_current(job_id):
                self.broadcaster.job_completed(job_id, self.job_type, self.audience)
            else:
                logger.info(f"Run {job_id} was superseded, completion not broadcast")
        except Exception as exc:
            logger.exception(f"Run {job_id} failed: {exc}")
            summary = _error_summary(f"Scraping run failed: {exc}", results)
            if self._is_current(job_id):
                self.broadcaster.job_error(job_id, self.job_type, str(exc), self.audience)
        finally:
            with self.state.lock:
                if self.state.job_id == job_id:
                    self.state.running = False
                    self.state.active_sources.clear()
                    self.state.finished_at = datetime.utcnow()
                    self.state.last_results = list(results)
            if self._event_job_id == job_id:
                self._run_context.job_id = None

        with self.state.lock:
            if self.state.job_id == job_id:
                self.state.last_summary = summary
        return summary

    @property
    def _event_job_id(self) -> Optional[str]:
        """Job id of the run executing on the calling thread."""
        return getattr(self._run_context, "job_id", None)

    def _is_current(self, job_id: str) -> bool:
        with self.state.lock:
            return self.state.job_id == job_id

    def _on_escalate(self, tier: int, url: str) -> None:
        job_id = self._event_job_id
        if job_id is None or not self._is_current(job_id):
            return
        logger.info(f"🛡️  Escalating to render tier {tier} for {url}")
        self.broadcaster.bypassing_bot_protection(job_id, self.job_type, self.audience)

    # ------------------------------------------------------------------
    # Per source
    # ------------------------------------------------------------------
    def scrape_source(self, source: Any, job_id: Optional[str] = None) -> SourceResult:
        """Scrape one source; failures are recorded on the result, not raised."""
        result = SourceResult(source_id=str(source.id), source_name=str(source.name))

        with self.state.lock:
            if result.source_id in self.state.active_sources:
                result.errors.append(f"Source {result.source_name} is already being scraped")
                logger.warning(result.errors[-1])
                return result
            self.state.active_sources.add(result.source_id)

        event_job = job_id or self._event_job_id
        if event_job:
            self.broadcaster.start_source(
                event_job, self.job_type, result.source_name, result.source_id, self.audience
            )

        total_links = 0
        protected_until = getattr(source, "protected_until", None)
        if protected_until is not None and protected_until > datetime.utcnow():
            result.errors.append(f"Source protected until {protected_until.isoformat()}")
            logger.info(f"Skipping {result.source_name}: {result.errors[-1]}")
            self._release_source(result.source_id, event_job)
            if event_job:
                self.broadcaster.source_completed(event_job, self.job_type, 0, self.audience)
            return result

        try:
            total_links = self._scrape_listing(source, result, event_job)
            result.success = True
        except SourceExhaustedError as exc:
            result.errors.append(str(exc))
            logger.warning(f"🛡️  {result.source_name}: {exc}")
            self._mark_protected(result.source_id)
        except NoArticleLinksError as exc:
            result.errors.append(str(exc))
            logger.warning(f"{result.source_name}: {exc}")
        except Exception as exc:
            result.errors.append(str(exc))
            logger.exception(f"Error scraping source {result.source_name}: {exc}")
        finally:
            self._release_source(result.source_id, event_job)

        try:
            self.persistence.update_source_last_scraped(
                result.source_id, datetime.utcnow(), success=result.success
            )
        except Exception as exc:
            logger.error(f"Failed to update last_scraped for {result.source_name}: {exc}")

        if event_job and self._is_current(event_job):
            self.broadcaster.source_completed(event_job, self.job_type, total_links, self.audience)

        logger.info(
            f"Completed source {result.source_name}: {result.processed} processed, "
            f"{result.saved} saved, {result.skipped} skipped, {len(result.errors)} errors"
        )
        return result

    def _release_source(self, source_id: str, job_id: Optional[str]) -> None:
        # A superseded run must not release a source the newer run now owns
        with self.state.lock:
            if job_id is None or self.state.job_id == job_id:
                self.state.active_sources.discard(source_id)

    def _mark_protected(self, source_id: str) -> None:
        mark = getattr(self.persistence, "mark_source_protected", None)
        if mark is None:
            return
        until = datetime.utcnow() + timedelta(seconds=config.SCRAPE_INTERVAL_SECONDS)
        try:
            mark(source_id, until)
        except Exception as exc:
            logger.error(f"Failed to mark source {source_id} protected: {exc}")

    def _policy_for(self, source: Any) -> LinkPolicy:
        if self.link_policy is not None:
            return self.link_policy
        return LinkPolicy.from_site_rules(getattr(source, "link_rules", None))

    def _scrape_listing(self, source: Any, result: SourceResult, job_id: Optional[str]) -> int:
        listing = self.ladder.fetch(source.url, source_id=result.source_id, is_article=False)
        result.tier = listing.tier
        if listing.protected or listing.html is None:
            raise SourceExhaustedError(source.url, listing.attempts)

        links = extract_candidate_links(listing.html, source.url, self._policy_for(source))
        if not links:
            raise NoArticleLinksError(source.url)
        logger.info(f"Found {len(links)} candidate links on {source.url} (tier {listing.tier})")

        if self.max_articles_per_source and len(links) > self.max_articles_per_source:
            links = links[: self.max_articles_per_source]

        stored_config = self._usable_stored_config(source, result.source_name)
        resolved: dict[str, ExtractionConfig] = {}
        pending: Optional[ExtractionConfig] = None
        fetched_any = False

        for link in links:
            if not self._source_active(result.source_id) or self._should_stop(job_id):
                logger.info(f"Stopping {result.source_name} at link boundary")
                break

            result.processed += 1
            if job_id:
                self.broadcaster.processing_article(
                    job_id, self.job_type, link.url, link.text, self.audience
                )

            if self.deduplicator.is_duplicate(link.url):
                logger.debug(f"Article already exists: {link.url}")
                self._skip(result, job_id)
                continue

            try:
                if fetched_any:
                    self._sleep(random.uniform(*self._request_delay))
                fetched_any = True

                page = self.ladder.fetch(
                    link.url,
                    source_id=result.source_id,
                    is_article=True,
                    scraping_config=stored_config,
                    referer=source.url,
                )
                if not page.success:
                    result.errors.append(f"Failed to extract content from: {link.url}")
                    self._skip(result, job_id)
                    continue

                domain = normalize_domain(link.url)
                extraction_config = resolved.get(domain)
                if extraction_config is None:
                    extraction_config = self._resolve_config(link.url, page.html, stored_config, job_id)
                    resolved[domain] = extraction_config
                    if (
                        not stored_config
                        and extraction_config.source == "ai"
                        and extraction_config.confidence >= PERSIST_CONFIDENCE
                    ):
                        pending = extraction_config

                article = extract_article(page.html, link.url, extraction_config)
                validation = validate_article(article)
                if not validation.accepted:
                    result.errors.append(f"Article {link.url}: {validation.reason}")
                    self._skip(result, job_id)
                    continue

                article = validation.article
                enrichment = self.enrichment.enrich(article)
                article_id = self.persistence.insert_article(
                    self._build_record(result.source_id, article, enrichment, page.tier)
                )
                if article_id is None:
                    self._skip(result, job_id)
                    continue

                if enrichment.entities:
                    self.persistence.link_entities(article_id, enrichment.entities)

                self.deduplicator.mark_seen(link.url)
                result.saved += 1
                result.new_article_ids.append(article_id)
                if job_id:
                    self.broadcaster.article_added(job_id, self.job_type, self.audience)
                logger.info(f"Saved article: {article.title[:80]} ({len(article.content)} chars)")
            except Exception as exc:
                logger.error(f"Error processing article {link.url}: {exc}")
                result.errors.append(f"Article {link.url}: {exc}")
                self._skip(result, job_id)

        if pending is not None:
            try:
                self.persistence.upsert_extraction_config(result.source_id, pending.to_dict())
            except Exception as exc:
                logger.error(f"Failed to store extraction config for {result.source_name}: {exc}")

        return len(links)

    def _skip(self, result: SourceResult, job_id: Optional[str]) -> None:
        result.skipped += 1
        if job_id:
            self.broadcaster.article_skipped(job_id, self.job_type, self.audience)

    @staticmethod
    def _usable_stored_config(source: Any, source_name: str) -> Optional[dict]:
        """Stored selectors, or None when they are missing or fail validation."""
        stored = getattr(source, "scraping_config", None)
        if not stored:
            return None
        try:
            ExtractionConfig.from_mapping(stored)
        except InvalidExtractionConfig as exc:
            logger.warning(f"Ignoring stored config for {source_name}, re-detecting: {exc}")
            return None
        return stored

    def _resolve_config(
        self,
        url: str,
        html: str,
        stored: Optional[dict],
        job_id: Optional[str],
    ) -> ExtractionConfig:
        if not stored and self.structure_cache.get(url) is None and job_id:
            self.broadcaster.detecting_structure(job_id, self.job_type, self.audience)
        return self.structure_cache.detect(url, html, cached=stored)

    @staticmethod
    def _build_record(
        source_id: str, article: Any, enrichment: Enrichment, tier: int
    ) -> dict[str, Any]:
        meta = enrichment.to_metadata()
        meta["extraction"] = {
            "method": article.extraction_method,
            "confidence": article.confidence,
            "tier": tier,
        }
        severity = enrichment.severity or {}
        return {
            "source_id": source_id,
            "url": article.url,
            "title": article.title,
            "content": article.content,
            "author": article.author,
            "publish_date": article.publish_date,
            "is_relevant": enrichment.is_relevant,
            "severity_score": severity.get("score"),
            "severity_level": severity.get("level"),
            "extraction_method": article.extraction_method,
            "meta": meta,
        }
