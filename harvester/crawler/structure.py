"""Per-domain extraction selector cache with AI re-detection.

``ExtractionConfig`` values are only built through
``ExtractionConfig.from_mapping`` which sanitizes every selector and rejects
configs that are empty, placeholder-like, or that contain literal page text
(a byline or a date) where a CSS selector belongs.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

from bs4 import BeautifulSoup, Comment

from .errors import InvalidExtractionConfig
from .utils import normalize_domain

logger = logging.getLogger(__name__)

MAX_HTML_EXCERPT = 45000
TRUNCATION_MARKER = "<!-- [truncated for AI analysis] -->"

FALLBACK_CONFIDENCE = 0.3
FALLBACK_ERROR_CONFIDENCE = 0.2
MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 1.0
BROAD_SELECTOR_PENALTY = 0.2

FIELDS = ("title", "content", "author", "date")
REQUIRED_FIELDS = ("title", "content")

# Patterns that identify literal page text returned instead of a selector
TEXT_CONTENT_PATTERNS = [
    re.compile(r"^By\s+", re.IGNORECASE),
    re.compile(r"^\d{1,2}/\d{1,2}/\d{4}"),
    re.compile(r"^[A-Z][a-z]+ \d{1,2}, \d{4}"),
    re.compile(r"^Published:?\s+", re.IGNORECASE),
    re.compile(r"^Written by\s+", re.IGNORECASE),
    re.compile(r"^Author:?\s+", re.IGNORECASE),
    re.compile(r"^\d{4}-\d{2}-\d{2}"),
    re.compile(r"\s+\d{1,2}:\d{2}"),
    re.compile(r"^[A-Z][a-z]+ \d{1,2} \d{4}"),
]

PLACEHOLDER_VALUES = {"", "null", "undefined", "none", "n/a", "selector", "css selector"}
BROAD_SELECTORS = {"body", "html", "div", "span", "p", "*"}

_CONTAINS_RE = re.compile(r":contains\([^)]*\)")
_HAS_TEXT_RE = re.compile(r":has-text\([^)]*\)")
_EQ_RE = re.compile(r":eq\(\d+\)")
_FIRST_RE = re.compile(r":first(?![-\w])")
_LAST_RE = re.compile(r":last(?![-\w])")
_EMPTY_NOT_RE = re.compile(r":not\(\s*\)")
_WHITESPACE_RE = re.compile(r"\s+")

_KEY_ALIASES = {
    "title": ("titleSelector", "title_selector", "title"),
    "content": ("contentSelector", "content_selector", "content"),
    "author": ("authorSelector", "author_selector", "author"),
    "date": ("dateSelector", "date_selector", "date"),
}


def is_text_content(value: str) -> bool:
    """Return True if ``value`` looks like page text rather than a selector."""
    return any(pattern.search(value) for pattern in TEXT_CONTENT_PATTERNS)


def sanitize_selector(selector: Any) -> Optional[str]:
    """Strip pseudo-selectors a CSS engine cannot evaluate.

    Returns None for empty or placeholder values.
    """
    if selector is None or not isinstance(selector, str):
        return None

    value = selector.strip()
    if value.lower() in PLACEHOLDER_VALUES:
        return None

    value = _CONTAINS_RE.sub("", value)
    value = _HAS_TEXT_RE.sub("", value)
    value = _EQ_RE.sub("", value)
    value = _FIRST_RE.sub(":first-child", value)
    value = _LAST_RE.sub(":last-child", value)
    value = _EMPTY_NOT_RE.sub("", value)
    value = _WHITESPACE_RE.sub(" ", value).strip().strip(",").strip()

    if not value or value.lower() in PLACEHOLDER_VALUES:
        return None
    return value


def _pick(mapping: Mapping[str, Any], field_name: str) -> Any:
    for key in _KEY_ALIASES[field_name]:
        if key in mapping and mapping[key] not in (None, ""):
            return mapping[key]
    return None


@dataclass(frozen=True)
class ExtractionConfig:
    """Validated selector set for one domain."""

    title_selector: str
    content_selector: str
    author_selector: Optional[str] = None
    date_selector: Optional[str] = None
    confidence: float = FALLBACK_CONFIDENCE
    alternatives: dict = field(default_factory=dict)
    source: str = "cache"

    @classmethod
    def from_mapping(
        cls, data: Mapping[str, Any], source: str = "cache"
    ) -> "ExtractionConfig":
        """Build a config from stored or detected JSON.

        Accepts camelCase (``titleSelector``) and snake_case keys.

        Raises:
            InvalidExtractionConfig: when a required selector is missing or
                any selector is literal text content
        """
        if not isinstance(data, Mapping) or not data:
            raise InvalidExtractionConfig("Extraction config is empty")

        selectors: dict[str, Optional[str]] = {}
        for name in FIELDS:
            raw = _pick(data, name)
            if isinstance(raw, str) and is_text_content(raw.strip()):
                raise InvalidExtractionConfig(
                    f"{name} selector looks like text content: {raw!r}"
                )
            selectors[name] = sanitize_selector(raw)

        for name in REQUIRED_FIELDS:
            if not selectors[name]:
                raise InvalidExtractionConfig(f"Missing {name} selector")

        try:
            confidence = float(data.get("confidence", FALLBACK_CONFIDENCE))
        except (TypeError, ValueError):
            confidence = FALLBACK_CONFIDENCE

        broad = [
            name for name in FIELDS
            if selectors[name] and selectors[name].lower() in BROAD_SELECTORS
        ]
        if broad:
            confidence -= BROAD_SELECTOR_PENALTY
        confidence = max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, confidence))

        alternatives: dict[str, list[str]] = {}
        raw_alternatives = data.get("alternatives") or {}
        if isinstance(raw_alternatives, Mapping):
            for key, values in raw_alternatives.items():
                if isinstance(values, str):
                    values = [values]
                if not isinstance(values, (list, tuple)):
                    continue
                cleaned = [
                    s for s in (sanitize_selector(v) for v in values)
                    if s and not is_text_content(s)
                ]
                if cleaned:
                    alternatives[str(key)] = cleaned

        return cls(
            title_selector=selectors["title"],
            content_selector=selectors["content"],
            author_selector=selectors["author"],
            date_selector=selectors["date"],
            confidence=round(confidence, 3),
            alternatives=alternatives,
            source=source,
        )

    @classmethod
    def fallback(cls, confidence: float = FALLBACK_CONFIDENCE) -> "ExtractionConfig":
        return cls(
            title_selector="h1",
            content_selector="article",
            author_selector=".author",
            date_selector="time",
            confidence=confidence,
            source="fallback",
        )

    @property
    def is_fallback(self) -> bool:
        return self.source == "fallback"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "titleSelector": self.title_selector,
            "contentSelector": self.content_selector,
            "authorSelector": self.author_selector,
            "dateSelector": self.date_selector,
            "confidence": self.confidence,
        }
        if self.alternatives:
            data["alternatives"] = {k: list(v) for k, v in self.alternatives.items()}
        return data


class StructureDetector(Protocol):
    def detect_structure(self, html: str, url: str) -> Mapping[str, Any]: ...


def prepare_html_excerpt(html: str, limit: int = MAX_HTML_EXCERPT) -> str:
    """Reduce a page to its body markup for selector detection.

    Scripts, styles, noscript blocks, inline SVG and comments are dropped and
    the result is cut to ``limit`` characters with a truncation marker.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    root = soup.body or soup

    for element in root.find_all(["script", "style", "noscript", "svg", "iframe"]):
        element.decompose()
    for comment in root.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    excerpt = str(root)
    if len(excerpt) > limit:
        excerpt = excerpt[:limit] + "\n" + TRUNCATION_MARKER
    return excerpt


class StructureCache:
    """Domain → ExtractionConfig cache backed by an AI structure detector."""

    def __init__(self, detector: Optional[StructureDetector] = None):
        self.detector = detector
        self._configs: dict[str, ExtractionConfig] = {}
        self._lock = threading.Lock()
        self.detections = 0

    def get(self, url_or_domain: str) -> Optional[ExtractionConfig]:
        with self._lock:
            return self._configs.get(normalize_domain(url_or_domain))

    def put(self, url_or_domain: str, config: ExtractionConfig) -> None:
        domain = normalize_domain(url_or_domain)
        if not domain:
            return
        with self._lock:
            self._configs[domain] = config

    def invalidate(self, url_or_domain: Optional[str] = None) -> None:
        """Drop one domain's entry, or every entry when no domain is given."""
        with self._lock:
            if url_or_domain is None:
                self._configs.clear()
                logger.info("Structure cache cleared")
            else:
                self._configs.pop(normalize_domain(url_or_domain), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._configs)

    def detect(
        self,
        url: str,
        html: str,
        cached: Optional[Mapping[str, Any]] = None,
    ) -> ExtractionConfig:
        """Resolve the extraction config for ``url``.

        Order: an explicitly supplied stored config, the in-memory cache, then
        AI detection over ``html``. Detection failures never raise; they fall
        back to generic selectors with a low confidence.
        """
        domain = normalize_domain(url)

        if cached:
            try:
                config = ExtractionConfig.from_mapping(cached, source="cache")
                self.put(domain, config)
                return config
            except InvalidExtractionConfig as exc:
                logger.warning(f"Discarding stored config for {domain}: {exc}")

        existing = self.get(domain)
        if existing is not None:
            return existing

        if self.detector is None:
            logger.info(f"No structure detector configured, using fallback for {domain}")
            return ExtractionConfig.fallback()

        try:
            self.detections += 1
            excerpt = prepare_html_excerpt(html)
            logger.info(f"🔎 Detecting structure for {domain} ({len(excerpt)} chars)")
            detected = self.detector.detect_structure(excerpt, url)
            config = ExtractionConfig.from_mapping(detected, source="ai")
        except InvalidExtractionConfig as exc:
            logger.warning(f"Detected config for {domain} rejected: {exc}")
            return ExtractionConfig.fallback()
        except Exception as exc:
            logger.error(f"Structure detection failed for {domain}: {exc}")
            return ExtractionConfig.fallback(FALLBACK_ERROR_CONFIDENCE)

        self.put(domain, config)
        logger.info(
            f"Cached selectors for {domain}: title={config.title_selector!r} "
            f"content={config.content_selector!r} confidence={config.confidence}"
        )
        return config
