"""Static escalation table and browser header pools for the fetch ladder."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Optional

METHOD_HTTP = "http"
METHOD_RENDER = "render"
METHOD_PROTECTED = "protected"

PROTECTED_TIER = 5


@dataclass(frozen=True)
class ScrapeTier:
    """One rung of the escalation ladder."""

    tier: int
    method: str
    profile: str
    timeout: float
    header_variant: str = "modern"
    fallback_profiles: tuple = field(default_factory=tuple)

    @property
    def is_terminal(self) -> bool:
        return self.method == METHOD_PROTECTED


# Tiers 0-2 use curl_cffi impersonation targets as ``profile``; tiers 3-4 use
# the render worker's stealth level.
TIER_TABLE: tuple[ScrapeTier, ...] = (
    ScrapeTier(0, METHOD_HTTP, "chrome124", 20.0, "modern"),
    ScrapeTier(1, METHOD_HTTP, "chrome120", 30.0, "previous"),
    ScrapeTier(2, METHOD_HTTP, "safari17_0", 30.0, "rotated", ("cloudscraper",)),
    ScrapeTier(3, METHOD_RENDER, "enhanced", 90.0),
    ScrapeTier(4, METHOD_RENDER, "maximum", 150.0),
    ScrapeTier(PROTECTED_TIER, METHOD_PROTECTED, "none", 0.0),
)


def get_tier(tier: int) -> ScrapeTier:
    """Return the table entry for ``tier``, clamped to the valid range."""
    index = max(0, min(int(tier), PROTECTED_TIER))
    return TIER_TABLE[index]


def next_tier(current: int) -> int:
    """Return the tier to try after ``current`` failed validation."""
    return min(int(current) + 1, PROTECTED_TIER)


USER_AGENTS = {
    "modern": [
        (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/124.0.0.0 Safari/537.36"
        ),
        (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/124.0.0.0 Safari/537.36"
        ),
    ],
    "previous": [
        (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0.0.0 Safari/537.36"
        ),
        (
            "Mozilla/5.0 (X11; Linux x86_64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0.0.0 Safari/537.36"
        ),
    ],
    "rotated": [
        (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
            "AppleWebKit/605.1.15 (KHTML, like Gecko) "
            "Version/17.0 Safari/605.1.15"
        ),
        (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) "
            "Gecko/20100101 Firefox/121.0"
        ),
        (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0"
        ),
    ],
}

ACCEPT_LANGUAGE_POOL = [
    "en-US,en;q=0.9",
    "en-GB,en;q=0.9",
    "en-US,en;q=0.9,es;q=0.8",
    "en-US,en;q=0.9,fr;q=0.8,de;q=0.7",
    "en-US,en;q=0.8",
]

ACCEPT_ENCODING_POOL = [
    "gzip, deflate, br, zstd",
    "gzip, deflate, br",
    "gzip, deflate",
]

ACCEPT_HEADER_POOL = [
    "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8,application/signed-exchange;v=b3;q=0.7",
    "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,image/apng,*/*;q=0.8",
    "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
]


def build_headers(
    variant: str = "modern",
    referer: Optional[str] = None,
    rng: Optional[random.Random] = None,
) -> dict[str, str]:
    """Build a randomized, browser-consistent header set for ``variant``."""
    rng = rng or random
    user_agents = USER_AGENTS.get(variant) or USER_AGENTS["modern"]

    headers = {
        "User-Agent": rng.choice(user_agents),
        "Accept": rng.choice(ACCEPT_HEADER_POOL),
        "Accept-Language": rng.choice(ACCEPT_LANGUAGE_POOL),
        "Accept-Encoding": rng.choice(ACCEPT_ENCODING_POOL),
        "Upgrade-Insecure-Requests": "1",
        "Sec-Fetch-Dest": "document",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Site": "same-origin" if referer else "none",
        "Sec-Fetch-User": "?1",
        "Cache-Control": "max-age=0",
    }
    if referer:
        headers["Referer"] = referer

    # Not all browsers send DNT
    if rng.random() > 0.3:
        headers["DNT"] = "1"

    return headers
