"""Lightweight HTTP fetchers used by the non-rendering ladder tiers."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

import cloudscraper
from curl_cffi import requests as curl_requests

from harvester import config

from .errors import FetchError
from .tiers import ScrapeTier, build_headers
from .utils import mask_proxy_url
from .validation import detect_protection

logger = logging.getLogger(__name__)

# Sessions are recycled after this many requests so cookies and connection
# state do not accumulate into a recognizable fingerprint.
MAX_SESSION_REUSE = 10


@dataclass
class FetchResponse:
    """Raw result of one HTTP fetch."""

    url: str
    status: int
    html: str
    method: str
    headers: dict[str, str] = field(default_factory=dict)


class HttpFetcher:
    """Fetch pages with TLS-fingerprinted sessions.

    Each impersonation profile keeps one pooled ``curl_cffi`` session; tiers
    whose fallback list names ``cloudscraper`` retry through a cloudscraper
    session when the curl_cffi request itself raises. Request timeouts never
    exceed ``timeout`` (``HTTP_TIMEOUT`` by default).
    """

    def __init__(self, proxy: Optional[str] = None, timeout: Optional[float] = None):
        self.proxy = proxy
        self.timeout = config.HTTP_TIMEOUT if timeout is None else timeout
        self._sessions: dict[str, Any] = {}
        self._session_uses: dict[str, int] = {}
        self._lock = threading.Lock()
        if proxy:
            logger.info(f"🔐 HTTP fetcher routing through proxy {mask_proxy_url(proxy)}")

    def _get_session(self, profile: str):
        with self._lock:
            session = self._sessions.get(profile)
            uses = self._session_uses.get(profile, 0)
            if session is not None and uses >= MAX_SESSION_REUSE:
                self._close_quietly(session)
                session = None
            if session is None:
                if profile == "cloudscraper":
                    session = cloudscraper.create_scraper(
                        browser={"browser": "chrome", "platform": "windows", "mobile": False}
                    )
                else:
                    session = curl_requests.Session(impersonate=profile)
                self._sessions[profile] = session
                uses = 0
                logger.debug(f"🔧 Created new {profile} session")
            self._session_uses[profile] = uses + 1
            return session

    @staticmethod
    def _close_quietly(session) -> None:
        try:
            session.close()
        except Exception as exc:  # pragma: no cover - best effort cleanup
            logger.debug(f"Error closing session: {exc}")

    def close(self) -> None:
        """Close every pooled session."""
        with self._lock:
            for session in self._sessions.values():
                self._close_quietly(session)
            self._sessions.clear()
            self._session_uses.clear()

    def _request(self, profile: str, url: str, headers: dict[str, str], timeout: float):
        session = self._get_session(profile)
        kwargs: dict[str, Any] = {"headers": headers, "timeout": timeout, "allow_redirects": True}
        if self.proxy:
            kwargs["proxies"] = {"http": self.proxy, "https": self.proxy}
        return session.get(url, **kwargs)

    def fetch(self, url: str, tier: ScrapeTier, referer: Optional[str] = None) -> FetchResponse:
        """Fetch ``url`` using the profile and header variant of ``tier``.

        Raises:
            FetchError: on network failure, timeout or an HTTP error status
        """
        headers = build_headers(tier.header_variant, referer=referer)
        profiles = (tier.profile,) + tuple(tier.fallback_profiles)
        timeout = min(tier.timeout, self.timeout)

        response = None
        method = tier.profile
        last_error: Optional[Exception] = None
        for profile in profiles:
            try:
                response = self._request(profile, url, headers, timeout)
                method = profile
                break
            except Exception as exc:
                last_error = exc
                logger.warning(f"Tier {tier.tier} {profile} request failed for {url}: {exc}")

        if response is None:
            raise FetchError(f"Request failed for {url}: {last_error}") from last_error

        status = int(getattr(response, "status_code", 0) or 0)
        html = response.text or ""
        resp_headers = {str(k).lower(): str(v) for k, v in dict(response.headers or {}).items()}

        if status >= 400:
            protection = detect_protection(status, resp_headers, html)
            detail = f" ({protection.type})" if protection.detected else ""
            raise FetchError(f"HTTP {status}{detail} for {url}")

        return FetchResponse(
            url=str(getattr(response, "url", url) or url),
            status=status,
            html=html,
            method=f"http:{method}",
            headers=resp_headers,
        )
