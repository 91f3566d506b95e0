"""Fetching and extraction: validation, escalation ladder, links, selectors."""

from .articles import ExtractedArticle, extract_article
from .errors import (
    FetchError,
    InvalidExtractionConfig,
    NoArticleLinksError,
    RenderWorkerError,
    SourceExhaustedError,
)
from .ladder import LadderResult, ProtectionBypassLadder
from .links import CandidateLink, LinkPolicy, extract_candidate_links
from .structure import ExtractionConfig, StructureCache
from .validation import ValidationResult, needs_escalation, validate_content

__all__ = [
    "CandidateLink",
    "ExtractedArticle",
    "ExtractionConfig",
    "FetchError",
    "InvalidExtractionConfig",
    "LadderResult",
    "LinkPolicy",
    "NoArticleLinksError",
    "ProtectionBypassLadder",
    "RenderWorkerError",
    "SourceExhaustedError",
    "StructureCache",
    "ValidationResult",
    "extract_article",
    "extract_candidate_links",
    "needs_escalation",
    "validate_content",
]
