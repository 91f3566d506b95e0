"""Apply extraction selectors to an article page."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from bs4 import BeautifulSoup, Tag
from dateutil import parser as dateparser

from .structure import ExtractionConfig

logger = logging.getLogger(__name__)

FALLBACK_SELECTORS = {
    "content": [
        "article",
        ".article-content",
        ".article-body",
        "main .content",
        ".post-content",
        "#article-content",
        ".story-content",
        ".entry-content",
        '[role="main"]',
        "main",
    ],
    "title": ["h1", ".article-title", ".post-title"],
    "author": [".author", ".byline", ".article-author", '[rel="author"]'],
    "date": [
        "time",
        "[datetime]",
        ".article-date",
        ".post-date",
        ".published-date",
        ".timestamp",
    ],
}

NOISE_TAGS = ["script", "style", "noscript", "nav", "header", "footer", "aside", "form", "iframe"]
MIN_CONTAINER_TEXT = 100

_BYLINE_PREFIX_RE = re.compile(r"^(by|written by|author:?)\s+", re.IGNORECASE)


@dataclass
class ExtractedArticle:
    """Article fields pulled from one page."""

    url: str
    title: str = ""
    content: str = ""
    author: Optional[str] = None
    publish_date: Optional[datetime] = None
    extraction_method: str = "selectors"
    confidence: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)


def _select_first(soup: BeautifulSoup, selectors: list[Optional[str]]) -> Optional[Tag]:
    for selector in selectors:
        if not selector:
            continue
        try:
            element = soup.select_one(selector)
        except (ValueError, NotImplementedError) as exc:
            logger.debug(f"Unsupported selector {selector!r}: {exc}")
            continue
        if element is not None and element.get_text(strip=True):
            return element
    return None


def _selectors(configured: Optional[str], field_name: str, config: ExtractionConfig) -> list:
    alternates = list(config.alternatives.get(field_name, []))
    fallbacks = [s for s in FALLBACK_SELECTORS[field_name] if s != configured]
    return [configured] + alternates + fallbacks


def _container_text(element: Tag) -> str:
    paragraphs = [p.get_text(" ", strip=True) for p in element.find_all("p")]
    paragraphs = [p for p in paragraphs if p]
    if paragraphs and sum(len(p) for p in paragraphs) >= MIN_CONTAINER_TEXT:
        return "\n\n".join(paragraphs)
    return element.get_text(" ", strip=True)


def parse_publish_date(value: Optional[str]) -> Optional[datetime]:
    """Parse a date string leniently; returns None if it is not a date."""
    if not value:
        return None
    try:
        return dateparser.parse(value.strip(), fuzzy=True)
    except (ValueError, OverflowError, TypeError):
        return None


def _extract_title(soup: BeautifulSoup, config: ExtractionConfig) -> str:
    element = _select_first(soup, _selectors(config.title_selector, "title", config))
    if element is not None:
        return element.get_text(" ", strip=True)

    og_title = soup.find("meta", attrs={"property": "og:title"})
    if og_title and og_title.get("content"):
        return str(og_title["content"]).strip()

    title_tag = soup.find("title")
    if title_tag:
        return title_tag.get_text(" ", strip=True)
    return ""


def _extract_author(soup: BeautifulSoup, config: ExtractionConfig) -> Optional[str]:
    element = _select_first(soup, _selectors(config.author_selector, "author", config))
    if element is not None:
        author = _BYLINE_PREFIX_RE.sub("", element.get_text(" ", strip=True)).strip()
        if author:
            return author[:200]

    meta_author = soup.find("meta", attrs={"name": "author"})
    if meta_author and meta_author.get("content"):
        return str(meta_author["content"]).strip()[:200]
    return None


def _extract_date(soup: BeautifulSoup, config: ExtractionConfig) -> Optional[datetime]:
    element = _select_first(soup, _selectors(config.date_selector, "date", config))
    if element is None:
        element = soup.find(attrs={"datetime": True})
    if element is not None:
        parsed = parse_publish_date(element.get("datetime") or "") or parse_publish_date(
            element.get_text(" ", strip=True)
        )
        if parsed:
            return parsed

    for attrs in (
        {"property": "article:published_time"},
        {"name": "pubdate"},
        {"itemprop": "datePublished"},
    ):
        meta = soup.find("meta", attrs=attrs)
        if meta and meta.get("content"):
            parsed = parse_publish_date(str(meta["content"]))
            if parsed:
                return parsed
    return None


def extract_article(html: str, url: str, config: Optional[ExtractionConfig] = None) -> ExtractedArticle:
    """Extract title, content, author and publish date from ``html``.

    Configured selectors are tried first, then any alternates on the
    config, then the generic fallback lists. Pages produced by the render
    worker are already reduced to known elements and are read directly.
    """
    config = config or ExtractionConfig.fallback()
    soup = BeautifulSoup(html or "", "html.parser")

    rendered = soup.find("article", attrs={"data-render-worker": True})
    if rendered is not None:
        config = ExtractionConfig.from_mapping(
            {"titleSelector": "h1", "contentSelector": ".content",
             "authorSelector": ".author", "dateSelector": "time", "confidence": config.confidence},
            source=config.source,
        )
        method = "render-worker"
    else:
        method = "fallback-selectors" if config.is_fallback else f"{config.source}-selectors"

    title = _extract_title(soup, config)
    author = _extract_author(soup, config)
    publish_date = _extract_date(soup, config)

    for element in soup(NOISE_TAGS):
        element.decompose()

    content = ""
    container = _select_first(soup, _selectors(config.content_selector, "content", config))
    if container is not None:
        content = _container_text(container)
    if len(content) <= MIN_CONTAINER_TEXT and soup.body is not None:
        body_text = _container_text(soup.body)
        if len(body_text) > len(content):
            content = body_text
            method = "body-fallback"

    return ExtractedArticle(
        url=url,
        title=title,
        content=content,
        author=author,
        publish_date=publish_date,
        extraction_method=method,
        confidence=config.confidence,
    )
