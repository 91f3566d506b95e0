"""Turn listing-page HTML into filtered, deduplicated candidate article links."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from .utils import normalize_domain, normalize_url

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDE_PATTERNS = (
    "/tag/",
    "/tags/",
    "/login",
    "/signin",
    "/register",
    "/signup",
    "/subscribe",
    "/author/",
    "/category/",
    "/search",
    "/page/",
    "/contact",
    "/about",
    "/privacy",
    "/terms",
    "/sitemap",
    "/feed",
    "/rss",
    "/newsletter",
    "/advertise",
    "/sponsored/",
    "/events/",
    "/podcast",
    "/video/",
)

DEFAULT_DENIED_DOMAINS = (
    "facebook.com",
    "twitter.com",
    "x.com",
    "linkedin.com",
    "instagram.com",
    "youtube.com",
    "tiktok.com",
    "pinterest.com",
    "reddit.com",
    "t.me",
    "whatsapp.com",
    "doubleclick.net",
    "googlesyndication.com",
    "googleadservices.com",
    "google-analytics.com",
    "googletagmanager.com",
    "taboola.com",
    "outbrain.com",
    "addthis.com",
    "sharethis.com",
    "bit.ly",
)

SKIPPED_EXTENSIONS = (
    ".jpg",
    ".jpeg",
    ".png",
    ".gif",
    ".svg",
    ".webp",
    ".pdf",
    ".zip",
    ".mp3",
    ".mp4",
    ".css",
    ".js",
    ".xml",
    ".rss",
)


@dataclass(frozen=True)
class CandidateLink:
    """A discovered article URL with the anchor text around it."""

    url: str
    text: str = ""
    context: str = ""


def _has_path_segment(path: str, pattern: str) -> bool:
    """Check if ``pattern`` (e.g. ``/login`` or ``/tag/``) appears as whole path segments."""
    segments = pattern.strip("/")
    if not segments:
        return False
    return f"/{segments}/" in f"{path.rstrip('/')}/"


@dataclass
class LinkPolicy:
    """Include/exclude rules applied to every discovered link.

    Default exclusions match whole path segments, so ``/login`` rejects
    ``/login`` and ``/login/help`` but not ``/2024/login-credentials-leaked``.
    Site rules (``include_patterns``/``exclude_patterns``) are substrings of
    the path and query. The host never takes part in pattern matching.
    """

    include_patterns: tuple = ()
    exclude_patterns: tuple = DEFAULT_EXCLUDE_PATTERNS
    denied_domains: tuple = DEFAULT_DENIED_DOMAINS
    same_domain_only: bool = False
    min_text_length: int = 0
    keep_query: bool = True
    extra_exclude_patterns: tuple = field(default_factory=tuple)

    @classmethod
    def from_site_rules(cls, rules: Optional[dict]) -> "LinkPolicy":
        """Build a policy from a source's ``include_patterns``/``exclude_patterns``."""
        if not rules:
            return cls()
        return cls(
            include_patterns=tuple(p.lower() for p in rules.get("include_patterns", []) or []),
            extra_exclude_patterns=tuple(
                p.lower() for p in rules.get("exclude_patterns", []) or []
            ),
            same_domain_only=bool(rules.get("same_domain_only", False)),
            min_text_length=int(rules.get("min_text_length", 0) or 0),
        )

    def is_denied_domain(self, url: str) -> bool:
        host = normalize_domain(url)
        return any(host == d or host.endswith(f".{d}") for d in self.denied_domains)

    def allows(self, url: str, text: str = "", base_domain: Optional[str] = None) -> bool:
        """Determine if a normalized URL is a likely article under this policy."""
        parsed = urlparse(url.lower())
        path = parsed.path
        target = f"{path}?{parsed.query}" if parsed.query else path

        if path in ("", "/") and not parsed.query:
            return False
        if path.endswith(SKIPPED_EXTENSIONS):
            return False
        if self.is_denied_domain(url):
            return False
        if self.same_domain_only and base_domain:
            host = normalize_domain(url)
            if host != base_domain and not host.endswith(f".{base_domain}"):
                return False

        if any(_has_path_segment(path, p) for p in self.exclude_patterns):
            return False
        if any(p in target for p in self.extra_exclude_patterns):
            return False
        if self.include_patterns and not any(p in target for p in self.include_patterns):
            return False

        if self.min_text_length and len(text) < self.min_text_length:
            return False
        return True


def _anchor_context(anchor) -> str:
    parent = anchor.parent
    if parent is None:
        return ""
    return parent.get_text(" ", strip=True)[:300]


def extract_candidate_links(
    html: str, base_url: str, policy: Optional[LinkPolicy] = None
) -> list[CandidateLink]:
    """Extract candidate article links from a listing page.

    Links are resolved against ``base_url``, normalized with tracking
    parameters stripped, filtered by ``policy`` and deduplicated with the
    first occurrence kept. The listing page itself is never returned.
    """
    policy = policy or LinkPolicy()
    soup = BeautifulSoup(html or "", "html.parser")
    base_domain = normalize_domain(base_url)
    listing_url = normalize_url(base_url, keep_query=policy.keep_query)

    seen: set[str] = set()
    candidates: list[CandidateLink] = []
    rejected = 0

    for anchor in soup.find_all("a", href=True):
        href = anchor.get("href")
        if isinstance(href, (list, tuple)):
            href = href[0] if href else ""
        normalized = normalize_url(str(href or ""), base_url, keep_query=policy.keep_query)
        if not normalized or normalized == listing_url or normalized in seen:
            continue

        text = anchor.get_text(" ", strip=True)
        if not policy.allows(normalized, text, base_domain):
            rejected += 1
            continue

        seen.add(normalized)
        candidates.append(CandidateLink(url=normalized, text=text, context=_anchor_context(anchor)))

    logger.info(
        f"Extracted {len(candidates)} candidate links from {base_url} "
        f"({rejected} filtered by policy)"
    )
    return candidates
