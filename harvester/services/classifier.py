"""OpenAI-backed classification service.

One client serves the four AI questions the pipeline asks: which selectors
extract a domain's articles, whether an article is on-topic, which named
entities it mentions, and how severe the described threat is. Every call
uses JSON response mode and a low temperature.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from typing import Any, Mapping, Optional

from openai import OpenAI

from harvester import config

logger = logging.getLogger(__name__)

CONTENT_EXCERPT = 2000
ENTITY_EXCERPT = 6000

ENTITY_TYPES = ("software", "hardware", "company", "cve", "threat_actor")

SEVERITY_LEVELS = ("low", "medium", "high", "critical")


class ClassifierError(Exception):
    """Exception raised when the AI service returns an unusable response."""

    pass


STRUCTURE_SYSTEM_PROMPT = (
    "You are a helpful assistant that identifies HTML structure and returns "
    "precise CSS selectors for content extraction."
)

STRUCTURE_PROMPT = """Analyze this HTML from {url} and identify the best CSS selectors for
the article title, the main body text, the author and the publish date.

- Target the main content, not navigation or sidebar elements
- Prefer semantic elements (article, main, section) and content class names
- For dates prefer <time> elements with datetime attributes
- For authors look for author/byline classes or rel="author"
- Never return page text (a name or a date) in place of a selector
- Avoid bare 'div' or 'span' selectors

Return JSON:
{{
  "titleSelector": "...",
  "contentSelector": "...",
  "authorSelector": "... or null",
  "dateSelector": "... or null",
  "alternatives": {{"date": ["..."], "content": ["..."]}},
  "confidence": 0.1-1.0
}}

HTML:
{html}"""

RELEVANCE_PROMPT = """Analyze if this article is related to {topic}.

Title: {title}
Content: {content}

Respond with JSON:
{{
  "isRelevant": true/false,
  "confidence": 0.0-1.0,
  "categories": ["threat type", "attack vector", ...]
}}"""

ENTITY_PROMPT = """Extract the specific named entities mentioned in this article.

Title: {title}
URL: {url}
Content: {content}

Only extract specific names ("Apache Log4j 2.14.1", "Windows 10"), never
generic types ("database", "web server", "firewall").

Return JSON:
{{
  "software": [{{"name": "", "vendor": "", "version": "", "confidence": 0.0}}],
  "hardware": [{{"name": "", "manufacturer": "", "confidence": 0.0}}],
  "companies": [{{"name": "", "type": "vendor|client|other", "confidence": 0.0}}],
  "cves": [{{"id": "", "cvss": 0.0, "confidence": 0.0}}],
  "threatActors": [{{"name": "", "aliases": [], "confidence": 0.0}}]
}}"""

SEVERITY_PROMPT = """Analyze the security risk level of this article.

Title: {title}
Content: {content}
Entities: {entities}

Provide an overall risk score (0-10) and category scores (0-10) for
exploitability, impact and scope.

Respond in JSON:
{{
  "score": 0-10,
  "categories": {{"exploitability": 0-10, "impact": 0-10, "scope": 0-10}}
}}"""

# Response key -> stored entity type
_ENTITY_KEYS = {
    "software": "software",
    "hardware": "hardware",
    "companies": "company",
    "cves": "cve",
    "threatActors": "threat_actor",
}


def normalize_entity_name(name: str) -> str:
    return " ".join(str(name).lower().split())


def _clamp(value: Any, low: float, high: float, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


class SeverityScorer:
    """Map a 0-10 risk score onto a severity level."""

    thresholds = ((9.0, "critical"), (7.0, "high"), (4.0, "medium"))

    def level_for(self, score: float) -> str:
        for threshold, level in self.thresholds:
            if score >= threshold:
                return level
        return "low"

    def score(
        self, assessment: Optional[Mapping[str, Any]], entities: list[dict[str, Any]]
    ) -> dict[str, Any]:
        assessment = assessment or {}
        value = _clamp(assessment.get("score"), 0.0, 10.0)
        raw_categories = assessment.get("categories") or {}
        categories = {
            name: _clamp(raw_categories.get(name), 0.0, 10.0)
            for name in ("exploitability", "impact", "scope")
        } if isinstance(raw_categories, Mapping) else {}
        return {
            "score": round(value, 2),
            "level": self.level_for(value),
            "categories": categories,
            "entityCounts": dict(Counter(e.get("type") for e in entities if e.get("type"))),
        }


class OpenAIClassifier:
    """Classification collaborator using the OpenAI chat completions API."""

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        topic: Optional[str] = None,
    ):
        self.model = model or config.OPENAI_MODEL
        self.topic = topic or config.RELEVANCE_TOPIC
        self._client = client
        self._api_key = api_key or config.OPENAI_API_KEY

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            if not self._api_key:
                raise ClassifierError("OPENAI_API_KEY is not configured")
            self._client = OpenAI(api_key=self._api_key, timeout=config.OPENAI_TIMEOUT)
        return self._client

    def _complete_json(self, system: str, prompt: str, temperature: float) -> dict[str, Any]:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            temperature=temperature,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ClassifierError("Empty response from OpenAI")
        try:
            result = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ClassifierError(f"Invalid JSON from OpenAI: {exc}") from exc
        if not isinstance(result, dict):
            raise ClassifierError("OpenAI response is not a JSON object")
        return result

    def detect_structure(self, html: str, url: str) -> dict[str, Any]:
        result = self._complete_json(
            STRUCTURE_SYSTEM_PROMPT,
            STRUCTURE_PROMPT.format(url=url, html=html),
            temperature=0.1,
        )
        logger.debug(f"Structure detection for {url}: {result}")
        return result

    def classify_relevance(self, title: str, content: str) -> dict[str, Any]:
        result = self._complete_json(
            "You are an analyst determining whether content is on-topic.",
            RELEVANCE_PROMPT.format(
                topic=self.topic, title=title, content=(content or "")[:CONTENT_EXCERPT]
            ),
            temperature=0.3,
        )
        categories = result.get("categories") or []
        return {
            "isRelevant": bool(result.get("isRelevant", result.get("isCybersecurity", False))),
            "confidence": _clamp(result.get("confidence"), 0.0, 1.0),
            "categories": [str(c) for c in categories] if isinstance(categories, list) else [],
        }

    def extract_entities(self, title: str, content: str, url: str) -> list[dict[str, Any]]:
        result = self._complete_json(
            "You extract named entities from security news articles.",
            ENTITY_PROMPT.format(title=title, url=url, content=(content or "")[:ENTITY_EXCERPT]),
            temperature=0.1,
        )

        entities: list[dict[str, Any]] = []
        for key, entity_type in _ENTITY_KEYS.items():
            items = result.get(key)
            if not isinstance(items, list):
                continue
            for item in items:
                if not isinstance(item, Mapping):
                    continue
                name = item.get("id") if entity_type == "cve" else item.get("name")
                if not name or not str(name).strip():
                    continue
                meta = {
                    k: v for k, v in item.items()
                    if k not in ("name", "id", "confidence") and v not in (None, "", [])
                }
                entities.append({
                    "type": entity_type,
                    "name": str(name).strip(),
                    "norm": normalize_entity_name(name),
                    "confidence": _clamp(item.get("confidence"), 0.0, 1.0, default=0.5),
                    "meta": meta,
                })
        return entities

    def score_severity(
        self, article: Mapping[str, Any], entities: list[dict[str, Any]]
    ) -> dict[str, Any]:
        summary = {
            entity_type: [e["name"] for e in entities if e.get("type") == entity_type][:10]
            for entity_type in ENTITY_TYPES
        }
        return self._complete_json(
            "You are a security analyst scoring threat severity.",
            SEVERITY_PROMPT.format(
                title=article.get("title", ""),
                content=(article.get("content") or "")[:CONTENT_EXCERPT],
                entities=json.dumps(summary),
            ),
            temperature=0.3,
        )
