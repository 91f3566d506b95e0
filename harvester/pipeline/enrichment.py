"""AI enrichment of accepted articles."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from harvester.crawler.articles import ExtractedArticle
from harvester.services.classifier import SeverityScorer

from .interfaces import Classifier

logger = logging.getLogger(__name__)


@dataclass
class Enrichment:
    """Classification metadata attached to an article before storage.

    Relevance only annotates the article; irrelevant articles are still
    stored.
    """

    is_relevant: bool = False
    confidence: float = 0.0
    categories: list[str] = field(default_factory=list)
    entities: list[dict[str, Any]] = field(default_factory=list)
    severity: Optional[dict[str, Any]] = None
    errors: list[str] = field(default_factory=list)

    def to_metadata(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "relevance": {"isRelevant": self.is_relevant, "confidence": self.confidence},
            "categories": list(self.categories),
        }
        if self.severity:
            data["severity"] = self.severity
        if self.errors:
            data["enrichmentErrors"] = list(self.errors)
        return data


class EnrichmentStage:
    """Relevance, entities and severity for one article.

    A classifier failure never fails the article: the stage logs it and
    returns what it has, at worst "not relevant, no entities".
    """

    def __init__(self, classifier: Optional[Classifier], scorer: Optional[SeverityScorer] = None):
        self.classifier = classifier
        self.scorer = scorer or SeverityScorer()

    def enrich(self, article: ExtractedArticle) -> Enrichment:
        result = Enrichment()
        if self.classifier is None:
            return result

        try:
            relevance = self.classifier.classify_relevance(article.title, article.content)
            result.is_relevant = bool(relevance.get("isRelevant"))
            result.confidence = float(relevance.get("confidence") or 0.0)
            result.categories = list(relevance.get("categories") or [])
        except Exception as exc:
            logger.warning(f"Relevance classification failed for {article.url}: {exc}")
            result.errors.append(f"relevance: {exc}")
            return result

        if not result.is_relevant:
            return result

        try:
            result.entities = list(
                self.classifier.extract_entities(article.title, article.content, article.url)
            )
        except Exception as exc:
            logger.warning(f"Entity extraction failed for {article.url}: {exc}")
            result.errors.append(f"entities: {exc}")

        try:
            assessment = self.classifier.score_severity(
                {"title": article.title, "content": article.content, "url": article.url},
                result.entities,
            )
            result.severity = self.scorer.score(assessment, result.entities)
        except Exception as exc:
            logger.warning(f"Severity scoring failed for {article.url}: {exc}")
            result.errors.append(f"severity: {exc}")

        logger.info(
            f"Enriched {article.url}: relevant, {len(result.entities)} entities, "
            f"severity {result.severity['level'] if result.severity else 'n/a'}"
        )
        return result
