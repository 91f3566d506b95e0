"""Assemble the production object graph used by the CLI and the API."""

from __future__ import annotations

import logging
from typing import Optional

from harvester import config
from harvester.crawler.fetchers import HttpFetcher
from harvester.crawler.ladder import ProtectionBypassLadder
from harvester.crawler.render_client import RenderWorkerClient
from harvester.crawler.structure import StructureCache
from harvester.models.repository import SQLAlchemyRepository
from harvester.pipeline.enrichment import EnrichmentStage
from harvester.pipeline.orchestrator import SourceOrchestrator
from harvester.pipeline.progress import ProgressBroadcaster
from harvester.services.classifier import OpenAIClassifier

logger = logging.getLogger(__name__)


def build_classifier() -> Optional[OpenAIClassifier]:
    if not config.OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY not set; structure detection and enrichment disabled")
        return None
    return OpenAIClassifier()


def build_ladder() -> ProtectionBypassLadder:
    return ProtectionBypassLadder(
        http_fetcher=HttpFetcher(proxy=config.SELENIUM_PROXY),
        render_client=RenderWorkerClient(timeout=config.RENDER_TIMEOUT),
    )


def build_orchestrator(
    repository: Optional[SQLAlchemyRepository] = None,
    broadcaster: Optional[ProgressBroadcaster] = None,
    enable_enrichment: Optional[bool] = None,
) -> SourceOrchestrator:
    repository = repository or SQLAlchemyRepository()
    classifier = build_classifier()
    if enable_enrichment is None:
        enable_enrichment = config.ENABLE_ENRICHMENT

    return SourceOrchestrator(
        persistence=repository,
        ladder=build_ladder(),
        structure_cache=StructureCache(detector=classifier),
        enrichment=EnrichmentStage(classifier if enable_enrichment else None),
        broadcaster=broadcaster or ProgressBroadcaster(),
    )
