"""Article validation, enrichment, run orchestration and progress events."""

from .article_validation import ArticleDeduplicator, ArticleValidation, validate_article
from .enrichment import Enrichment, EnrichmentStage
from .orchestrator import OrchestratorState, SourceOrchestrator, SourceResult
from .progress import ProgressBroadcaster, ProgressEvent, Subscription, format_sse

__all__ = [
    "ArticleDeduplicator",
    "ArticleValidation",
    "Enrichment",
    "EnrichmentStage",
    "OrchestratorState",
    "ProgressBroadcaster",
    "ProgressEvent",
    "SourceOrchestrator",
    "SourceResult",
    "Subscription",
    "format_sse",
    "validate_article",
]
