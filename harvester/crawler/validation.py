"""Page-level content validation.

Decides whether fetched HTML is a usable listing/article page, an error
page, or a bot-protection challenge. Everything here is pure: no network,
no state, so it can be exercised directly with fixture HTML.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from bs4 import BeautifulSoup

from harvester import config

# Title phrases typical of CDN error and challenge pages
TITLE_INDICATORS = [
    "error",
    "forbidden",
    "access denied",
    "just a moment",
    "403",
    "503",
    "502",
    "504",
    "blocked",
    "challenge",
    "please wait",
    "checking your browser",
    "security check",
    "not found",
    "attention required",
]

# Markers searched in the lowercased <body> markup
BODY_INDICATORS = [
    "cf-error",
    "ray id:",
    "cloudflare ray id",
    "challenge-form",
    "cf-browser-verification",
    "cf-wrapper",
    "cf-browser-check",
    "ddos-protection",
    "rate-limited",
    "security-challenge",
    "access-restricted",
    "bot-detection",
    "_cf_chl_jschl_tk",
    "cf-chl-bypass",
    "cf-challenge-running",
    "cf-im-under-attack",
    "_incapsula_resource",
    "px-captcha",
    "captcha-delivery.com",
    "access denied",
    "not found",
    "checking your browser",
    "just a moment...",
    "verify you are human",
    "are you a robot",
    "complete the captcha",
    "solve the captcha",
    "captcha challenge",
    "please enable cookies",
]

ERROR_LINK_INDICATORS = [
    "cloudflare.com/5xx-error",
    "support.cloudflare.com",
    "cloudflare.com/error",
    "challenges.cloudflare.com",
]

SCRIPT_INDICATORS = [
    "cdn-cgi/challenge-platform",
    "cloudflare-static",
    "/cdn-cgi/scripts/",
    "cf-challenge.js",
    "captcha-delivery.com",
    "_incapsula_resource",
]

TITLE_PENALTY = 20
BODY_PENALTY = 15
LINK_PENALTY = 25
SCRIPT_PENALTY = 20
LINK_DENSITY_PENALTY = 20

MIN_HTML_LENGTH = 500
ARTICLE_MIN_TEXT = 500

_HTMX_ATTRS = ("hx-get", "hx-post", "data-hx-get", "data-hx-post")
_HTMX_SKIP = ("search", "filter", "login", "signup")


@dataclass
class ValidationResult:
    """Outcome of validating one fetched page."""

    is_valid: bool = True
    is_error_page: bool = False
    link_count: int = 0
    error_indicators: list[str] = field(default_factory=list)
    confidence: int = 100
    protection_type: str = "none"
    has_content: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "isErrorPage": self.is_error_page,
            "linkCount": self.link_count,
            "errorIndicators": list(self.error_indicators),
            "confidence": self.confidence,
            "protectionType": self.protection_type,
            "hasContent": self.has_content,
        }


@dataclass
class ProtectionInfo:
    """Protection classification derived from raw response metadata."""

    detected: bool = False
    type: str = "none"
    confidence: int = 0
    indicators: list[str] = field(default_factory=list)
    requires_render: bool = False


def _count_links(soup: BeautifulSoup) -> int:
    seen: set[str] = set()

    for anchor in soup.find_all("a", href=True):
        href = str(anchor.get("href") or "").strip()
        if not href or href == "/" or href.startswith("#"):
            continue
        seen.add(f"a:{id(anchor)}")

    for element in soup.find_all(lambda tag: any(tag.has_attr(a) for a in _HTMX_ATTRS)):
        hx_url = ""
        for attr in _HTMX_ATTRS:
            if element.get(attr):
                hx_url = str(element.get(attr)).strip()
                break
        if not hx_url or hx_url == "/":
            continue
        if any(skip in hx_url.lower() for skip in _HTMX_SKIP):
            continue
        # Elements carrying both href and hx-get are counted once
        key = f"a:{id(element)}" if element.name == "a" and element.get("href") else f"hx:{id(element)}"
        seen.add(key)

    return len(seen)


def _contains_marker(text: str, marker: str) -> bool:
    if marker.isalnum() or " " in marker:
        return re.search(rf"(?<![a-z0-9]){re.escape(marker)}(?![a-z0-9])", text) is not None
    return marker in text


def _article_text_length(soup: BeautifulSoup) -> int:
    container = soup.find("article") or soup.find("main")
    if container is not None:
        return len(container.get_text(" ", strip=True))
    paragraphs = [p.get_text(" ", strip=True) for p in soup.find_all("p")]
    return len(" ".join(paragraphs))


def validate_content(
    html: Optional[str],
    url: Optional[str] = None,
    is_article: bool = False,
    min_links: Optional[int] = None,
) -> ValidationResult:
    """Validate fetched HTML as a listing page (default) or an article page.

    Args:
        html: Raw HTML as fetched
        url: Page URL, used only for diagnostics
        is_article: Validate by content length instead of link count
        min_links: Override for the listing-page link threshold

    Returns:
        ValidationResult with validity, error-page flag, link count,
        matched indicators and a 0-100 confidence score.
    """
    result = ValidationResult()
    threshold = config.MIN_LINK_COUNT if min_links is None else min_links

    if not html or len(html) < MIN_HTML_LENGTH:
        result.is_valid = False
        result.confidence = 0
        return result

    soup = BeautifulSoup(html, "html.parser")
    result.link_count = _count_links(soup)
    confidence = 100

    title_tag = soup.find("title")
    title = title_tag.get_text(" ", strip=True).lower() if title_tag else ""
    for marker in TITLE_INDICATORS:
        if title and _contains_marker(title, marker):
            result.error_indicators.append(f"title:{marker}")
            confidence -= TITLE_PENALTY

    body = soup.find("body")
    body_markup = str(body).lower() if body is not None else html.lower()
    for marker in BODY_INDICATORS:
        if _contains_marker(body_markup, marker):
            result.error_indicators.append(f"body:{marker}")
            confidence -= BODY_PENALTY

    for marker in ERROR_LINK_INDICATORS:
        if marker in body_markup:
            result.error_indicators.append(f"link:{marker}")
            confidence -= LINK_PENALTY

    for script in soup.find_all("script", src=True):
        src = str(script.get("src") or "").lower()
        for marker in SCRIPT_INDICATORS:
            if marker in src:
                result.error_indicators.append(f"script:{marker}")
                confidence -= SCRIPT_PENALTY

    page_lower = html.lower()
    if any("cf-" in i or "cloudflare" in i or "ray id" in i for i in result.error_indicators):
        result.protection_type = "cloudflare"
    elif "datadome" in page_lower or "captcha-delivery.com" in page_lower:
        result.protection_type = "datadome"
    elif "_incapsula_resource" in page_lower or "incapsula incident" in page_lower:
        result.protection_type = "incapsula"
    elif result.error_indicators and "recaptcha" in page_lower:
        result.protection_type = "recaptcha"
    elif result.error_indicators:
        result.protection_type = "generic"

    result.is_error_page = len(result.error_indicators) > 2 or confidence < 50

    if is_article:
        text_length = _article_text_length(soup)
        result.has_content = text_length > 100
        result.confidence = max(0, min(100, confidence))
        result.is_valid = (
            not result.is_error_page
            and text_length > ARTICLE_MIN_TEXT
            and result.confidence > 30
        )
        return result

    # Sparse listing pages lose confidence in proportion to the missing links
    if threshold > 0 and result.link_count < threshold:
        shortfall = (threshold - result.link_count) / threshold
        confidence -= int(round(LINK_DENSITY_PENALTY * shortfall))

    result.confidence = max(0, min(100, confidence))
    result.has_content = result.link_count > 0 or _article_text_length(soup) > 100
    result.is_valid = (
        not result.is_error_page
        and result.link_count >= threshold
        and result.confidence > 30
    )
    return result


def needs_escalation(
    result: ValidationResult, is_article: bool = False, min_links: Optional[int] = None
) -> bool:
    """Return True when a tier's result should be retried at the next tier."""
    if not result.is_valid or result.is_error_page:
        return True
    if is_article:
        return False
    threshold = config.MIN_LINK_COUNT if min_links is None else min_links
    return result.link_count < threshold


# Vendor fingerprints searched in raw response bodies
_PROTECTION_BODY_MARKERS = {
    "perimeterx": [
        "window._pxappid",
        "window._pxuuid",
        "px-captcha",
        "captcha.px-cloud.net",
        "humansecurity.com",
        "_pxhd",
    ],
    "datadome": ["datadome", "window.ddjskey", "geo.captcha-delivery.com"],
    "akamai": ["_abck", "ak_bmsc", "sensor_data"],
    "incapsula": ["incapsula", "visid_incap", "incap_ses", "_incapsula_resource"],
    "cloudflare": [
        "checking your browser",
        "cloudflare ray id",
        "ddos protection by cloudflare",
        "attention required! | cloudflare",
        "just a moment...",
        "cf-chl",
    ],
    "captcha": [
        "please verify you are human",
        "verify you are human",
        "are you a robot",
        "please complete the captcha",
        "solve the captcha",
        "captcha challenge",
    ],
}

_RENDER_REQUIRED = {"perimeterx", "datadome", "akamai", "incapsula", "cloudflare", "captcha"}


def detect_protection(
    status: int, headers: Optional[Mapping[str, str]] = None, body: Optional[str] = None
) -> ProtectionInfo:
    """Classify the bot protection behind a response, if any.

    Looks at the status code, response headers and the body. ``type`` is one
    of ``perimeterx``, ``datadome``, ``akamai``, ``incapsula``,
    ``cloudflare``, ``captcha``, ``rate_limit``, ``cookie_check`` or
    ``none``.
    """
    info = ProtectionInfo()

    if status in (403, 503):
        info.detected = True
        info.indicators.append(f"status:{status}")
        info.confidence += 30

    header_blob = " ".join(
        f"{k}:{v}" for k, v in (headers or {}).items()
    ).lower()
    if "cf-ray" in header_blob or "server:cloudflare" in header_blob:
        info.type = "cloudflare"
        info.indicators.append("header:cloudflare")
        info.confidence += 40
    elif "datadome" in header_blob:
        info.type = "datadome"
        info.indicators.append("header:datadome")
        info.confidence += 40
    elif "x-iinfo" in header_blob or "incap_ses" in header_blob:
        info.type = "incapsula"
        info.indicators.append("header:incapsula")
        info.confidence += 40

    if body:
        body_lower = body.lower()
        for protection, markers in _PROTECTION_BODY_MARKERS.items():
            matched = [m for m in markers if m in body_lower]
            if matched:
                info.detected = True
                if info.type == "none":
                    info.type = protection
                info.indicators.extend(f"body:{m}" for m in matched)
                info.confidence += 20 * len(matched)
                break
        if info.type == "none" and "enable cookies" in body_lower:
            info.type = "cookie_check"
            info.detected = True
            info.indicators.append("body:enable cookies")
            info.confidence += 20

    if status == 429 or is_rate_limited(status, headers, None):
        info.detected = True
        if info.type == "none":
            info.type = "rate_limit"
        info.indicators.append("status:rate_limit")
        info.confidence += 30

    if info.type != "none":
        info.detected = True
    info.confidence = min(100, info.confidence)
    info.requires_render = info.type in _RENDER_REQUIRED
    return info


def is_rate_limited(
    status: int, headers: Optional[Mapping[str, str]] = None, body: Optional[str] = None
) -> bool:
    """Check if a response indicates rate limiting."""
    if status == 429:
        return True

    if headers and status >= 400:
        names = [k.lower() for k in headers]
        if any("rate-limit" in h or h == "retry-after" for h in names):
            return True

    if body:
        body_lower = body.lower()
        return (
            "rate limit" in body_lower
            or "too many requests" in body_lower
            or "please slow down" in body_lower
        )

    return False
