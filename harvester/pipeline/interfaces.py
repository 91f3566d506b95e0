"""Collaborator contracts the pipeline depends on.

The orchestrator only talks to storage and to the AI service through these
protocols; ``harvester.models.repository.SQLAlchemyRepository`` and
``harvester.services.classifier.OpenAIClassifier`` are the shipped
implementations and tests substitute duck-typed fakes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Protocol


class Persistence(Protocol):
    def list_active_sources(self) -> list[Any]: ...

    def upsert_extraction_config(self, source_id: str, config: Mapping[str, Any]) -> None: ...

    def article_exists_by_url(self, url: str) -> bool: ...

    def insert_article(self, record: Mapping[str, Any]) -> Optional[str]: ...

    def update_source_last_scraped(
        self, source_id: str, timestamp: datetime, success: Optional[bool] = None
    ) -> None: ...

    def link_entities(self, article_id: str, entities: Iterable[Mapping[str, Any]]) -> int: ...


class Classifier(Protocol):
    def detect_structure(self, html: str, url: str) -> Mapping[str, Any]: ...

    def classify_relevance(self, title: str, content: str) -> Mapping[str, Any]: ...

    def extract_entities(self, title: str, content: str, url: str) -> list[dict[str, Any]]: ...

    def score_severity(
        self, article: Mapping[str, Any], entities: list[dict[str, Any]]
    ) -> Mapping[str, Any]: ...
