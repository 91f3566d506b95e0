"""Quality gate and deduplication for extracted articles.

An extracted article is accepted only when it has a usable title, enough
readable text, and none of the phrases that identify captcha or error
interstitials. Everything here is pure except ``ArticleDeduplicator``, which
asks the persistence collaborator whether a URL is already stored.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, replace
from typing import Optional, Protocol
from urllib.parse import urlparse

from harvester import config
from harvester.crawler.articles import ExtractedArticle
from harvester.crawler.utils import normalize_url

logger = logging.getLogger(__name__)

CAPTCHA_PHRASES = (
    "detected unusual",
    "unusual activity",
    "not a robot",
    "click the box below",
    "verify you are human",
    "press and hold",
    "enable javascript and cookies",
)

REASON_CAPTCHA = "Captcha/error page detected"
REASON_SHORT = "Content too short"
REASON_CORRUPTED = "Corrupted content"
REASON_NO_TITLE = "No usable title"
REASON_ERROR_PAGE = "Error page content"

NON_ASCII_RATIO_LIMIT = 0.7
WORD_RATIO_LIMIT = 0.3
REPETITION_LIMIT = 0.7

_CORRUPTION_PATTERNS = [
    re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]"),
    re.compile("\ufffd{3,}"),
    re.compile("(\u00ef\u00bf\u00bd){3,}"),
    re.compile(r"[\u0080-\u009F]"),
    re.compile(r"^[^a-zA-Z0-9\s]{20,}$"),
]
_WORD_RE = re.compile(r"\b[a-zA-Z]{2,}\b")
_REPEAT_RE = re.compile(r"([^\s]{2,8})\1{6,}")
_SEPARATOR_RE = re.compile(r"^[-=_*#~.\s]+$")

INVALID_TITLES = {
    "untitled",
    "no title",
    "unknown",
    "error",
    "not found",
    "access denied",
    "forbidden",
    "page not found",
    "cannot be found",
    "can't be found",
}
INVALID_TITLE_PREFIXES = ("oops ", "error:", "404:", "403:", "500:")
_ERROR_TITLE_PATTERNS = [
    re.compile(r"\b404\s+(error|page|not\s+found)\b", re.IGNORECASE),
    re.compile(r"\b(403|500)\s+(error|forbidden|internal\s+server\s+error)\b", re.IGNORECASE),
    re.compile(r"\boops[!.]?\b.*\b(page|found|exist)", re.IGNORECASE),
    re.compile(r"\bpage\s+(not\s+found|can'?t\s+be\s+found|cannot\s+be\s+found|doesn'?t\s+exist)\b", re.IGNORECASE),
    re.compile(r"^(not\s+found|access\s+denied|forbidden)", re.IGNORECASE),
    re.compile(r"\bwe\s+can'?t\s+find\s+(that|the|this)\s+page\b", re.IGNORECASE),
    re.compile(r"^nothing\s+(here|found)", re.IGNORECASE),
]

_ERROR_CONTENT_PATTERNS = [
    re.compile(r"\bpage\s+(not\s+found|can'?t\s+be\s+found|cannot\s+be\s+found|doesn'?t\s+exist|does\s+not\s+exist)\b", re.IGNORECASE),
    re.compile(r"\b404\s+(error|page|not\s+found)\b", re.IGNORECASE),
    re.compile(r"\bthe\s+page\s+you\s+(requested|are\s+looking\s+for|were\s+looking\s+for)\b", re.IGNORECASE),
    re.compile(r"\bwe\s+can'?t\s+find\s+(the\s+)?page\b", re.IGNORECASE),
    re.compile(r"^sorry.*page.*not\s+(found|available)", re.IGNORECASE),
]
# Error-page content is only rejected when the page is also this short
ERROR_PAGE_MAX_WORDS = 200

_URL_SUFFIX_RE = re.compile(r"\.(html?|php|aspx?|jsp|cgi)$", re.IGNORECASE)
_URL_PREFIX_RE = re.compile(r"^(article|post|news|blog)-", re.IGNORECASE)
_URL_ID_RE = re.compile(r"-\d+$")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")
_SPACES_RE = re.compile("[ \t\u00a0]+")


@dataclass
class ArticleValidation:
    accepted: bool
    reason: Optional[str]
    article: ExtractedArticle


def _repetition_score(text: str) -> float:
    repeated = 0
    for match in _REPEAT_RE.finditer(text):
        if _SEPARATOR_RE.match(match.group(0)):
            continue
        repeated += len(match.group(0))
    return repeated / len(text) if text else 0.0


def is_corrupted_text(text: Optional[str]) -> bool:
    """Return True for mojibake, binary noise or machine-repeated filler."""
    if not text:
        return False

    non_ascii = sum(1 for ch in text if ord(ch) > 127)
    if non_ascii / len(text) > NON_ASCII_RATIO_LIMIT:
        return True

    if any(pattern.search(text) for pattern in _CORRUPTION_PATTERNS):
        return True

    if len(text) > 100:
        tokens = text.split()
        if tokens and len(_WORD_RE.findall(text)) / len(tokens) < WORD_RATIO_LIMIT:
            return True

    return _repetition_score(text) > REPETITION_LIMIT


def contains_captcha_phrase(*texts: Optional[str]) -> bool:
    for text in texts:
        if not text:
            continue
        lowered = text.lower()
        if any(phrase in lowered for phrase in CAPTCHA_PHRASES):
            return True
    return False


def is_valid_title(title: Optional[str]) -> bool:
    if not title or not title.strip():
        return False
    value = title.strip()
    if len(value) < 3 or len(value) > 500:
        return False
    if is_corrupted_text(value):
        return False

    lowered = value.lower()
    if lowered in INVALID_TITLES or lowered.startswith(INVALID_TITLE_PREFIXES):
        return False
    if any(pattern.search(value) for pattern in _ERROR_TITLE_PATTERNS):
        return False
    return bool(re.search(r"[a-zA-Z]{2,}", value))


def extract_title_from_url(url: str) -> Optional[str]:
    """Build a readable title from the last path segment of ``url``.

    ``/news/article-big-breach-hits-bank-12345.html`` becomes
    ``Big Breach Hits Bank``.
    """
    try:
        path = urlparse(url).path
    except ValueError:
        return None

    segments = [s for s in path.split("/") if s]
    if not segments:
        return None

    slug = _URL_SUFFIX_RE.sub("", segments[-1])
    slug = _URL_PREFIX_RE.sub("", slug)
    slug = _URL_ID_RE.sub("", slug)
    words = re.sub(r"[-_]+", " ", slug).strip()
    if not words:
        return None

    title = " ".join(w.capitalize() for w in words.split())
    if 5 <= len(title) <= 200 and re.search(r"[a-zA-Z]{3,}", title):
        return title
    return None


def sanitize_content(content: Optional[str]) -> str:
    """Drop control characters and collapse runs of whitespace."""
    if not content:
        return ""
    text = _CONTROL_RE.sub("", content)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _SPACES_RE.sub(" ", text)
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return "\n".join(line.strip() for line in text.split("\n")).strip()


def _looks_like_error_page(content: str) -> bool:
    if not any(pattern.search(content) for pattern in _ERROR_CONTENT_PATTERNS):
        return False
    return len(content.split()) < ERROR_PAGE_MAX_WORDS


def validate_article(
    article: ExtractedArticle, min_length: Optional[int] = None
) -> ArticleValidation:
    """Decide whether ``article`` is worth storing.

    The returned article carries sanitized content and, when the extracted
    title was unusable, a title synthesized from the URL.
    """
    min_length = config.MIN_CONTENT_LENGTH if min_length is None else min_length
    content = sanitize_content(article.content)
    title = (article.title or "").strip()

    def reject(reason: str) -> ArticleValidation:
        logger.info(f"Rejected {article.url}: {reason}")
        return ArticleValidation(False, reason, replace(article, content=content, title=title))

    if contains_captcha_phrase(title, content):
        return reject(REASON_CAPTCHA)

    if len(content) < min_length:
        return reject(REASON_SHORT)

    if is_corrupted_text(content):
        return reject(REASON_CORRUPTED)

    if _looks_like_error_page(content):
        return reject(REASON_ERROR_PAGE)

    if not is_valid_title(title):
        synthesized = extract_title_from_url(article.url)
        if not synthesized:
            return reject(REASON_NO_TITLE)
        logger.debug(f"Replaced title {title!r} with {synthesized!r} for {article.url}")
        title = synthesized

    return ArticleValidation(True, None, replace(article, content=content, title=title))


class ExistenceChecker(Protocol):
    def article_exists_by_url(self, url: str) -> bool: ...


class ArticleDeduplicator:
    """URL-uniqueness check across stored articles and the current run."""

    def __init__(self, persistence: ExistenceChecker):
        self.persistence = persistence
        self._seen: set[str] = set()
        self._lock = threading.Lock()

    @staticmethod
    def key(url: str) -> str:
        return normalize_url(url) or url

    def is_duplicate(self, url: str) -> bool:
        key = self.key(url)
        with self._lock:
            if key in self._seen:
                return True
        if self.persistence.article_exists_by_url(key):
            return True
        if key != url and self.persistence.article_exists_by_url(url):
            return True
        return False

    def mark_seen(self, url: str) -> None:
        with self._lock:
            self._seen.add(self.key(url))

    def reset(self) -> None:
        with self._lock:
            self._seen.clear()
