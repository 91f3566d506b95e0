"""SQLAlchemy-backed persistence for sources, articles and entities."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Iterator, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from . import Article, ArticleEntity, Source, create_database_engine, create_tables

logger = logging.getLogger(__name__)


@dataclass
class SourceRecord:
    """Detached snapshot of a Source row handed to the pipeline."""

    id: str
    name: str
    url: str
    category: Optional[str] = None
    priority: int = 1
    scraping_config: Optional[dict] = None
    link_rules: Optional[dict] = None
    consecutive_failures: int = 0
    last_scraped: Optional[datetime] = None
    protected_until: Optional[datetime] = None

    @classmethod
    def from_model(cls, source: Source) -> "SourceRecord":
        return cls(
            id=source.id,
            name=source.name,
            url=source.url,
            category=source.category,
            priority=source.priority or 1,
            scraping_config=dict(source.scraping_config) if source.scraping_config else None,
            link_rules=dict(source.link_rules) if source.link_rules else None,
            consecutive_failures=source.consecutive_failures or 0,
            last_scraped=source.last_scraped,
            protected_until=source.protected_until,
        )


class SQLAlchemyRepository:
    """Persistence collaborator used by the orchestrator."""

    def __init__(self, database_url: Optional[str] = None, engine=None):
        if engine is None:
            from harvester import config

            engine = create_database_engine(database_url or config.DATABASE_URL)
        self.engine = engine
        self._Session = sessionmaker(bind=engine, expire_on_commit=False)

    def create_schema(self) -> None:
        create_tables(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self._Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def add_source(
        self,
        name: str,
        url: str,
        category: Optional[str] = None,
        priority: int = 1,
        link_rules: Optional[dict] = None,
        active: bool = True,
    ) -> str:
        with self.session() as session:
            source = Source(
                name=name,
                url=url,
                category=category,
                priority=priority,
                link_rules=link_rules,
                active=active,
            )
            session.add(source)
            session.flush()
            return source.id

    def get_source(self, source_id: str) -> Optional[SourceRecord]:
        with self.session() as session:
            source = session.get(Source, source_id)
            return SourceRecord.from_model(source) if source else None

    def list_active_sources(self) -> list[SourceRecord]:
        with self.session() as session:
            rows = session.scalars(
                select(Source)
                .where(Source.active.is_(True))
                .order_by(Source.priority.desc(), Source.name)
            ).all()
            return [SourceRecord.from_model(row) for row in rows]

    def upsert_extraction_config(self, source_id: str, config: Mapping[str, Any]) -> None:
        with self.session() as session:
            source = session.get(Source, source_id)
            if source is None:
                logger.warning(f"Cannot store extraction config, unknown source {source_id}")
                return
            source.scraping_config = dict(config)
        logger.info(f"Stored extraction config for source {source_id}")

    def article_exists_by_url(self, url: str) -> bool:
        with self.session() as session:
            found = session.scalar(select(Article.id).where(Article.url == url).limit(1))
            return found is not None

    def insert_article(self, record: Mapping[str, Any]) -> Optional[str]:
        """Insert an article; returns its id, or None if the URL already exists."""
        session = self._Session()
        try:
            article = Article(
                source_id=record["source_id"],
                url=record["url"],
                title=record["title"],
                content=record["content"],
                author=record.get("author"),
                publish_date=record.get("publish_date"),
                summary=record.get("summary"),
                is_relevant=bool(record.get("is_relevant", False)),
                severity_score=record.get("severity_score"),
                severity_level=record.get("severity_level"),
                extraction_method=record.get("extraction_method"),
                meta=record.get("meta"),
            )
            session.add(article)
            session.commit()
            return article.id
        except IntegrityError as exc:
            session.rollback()
            logger.info(f"Article already stored, skipping {record.get('url')}: {exc.orig}")
            return None
        finally:
            session.close()

    def update_source_last_scraped(
        self, source_id: str, timestamp: datetime, success: Optional[bool] = None
    ) -> None:
        with self.session() as session:
            source = session.get(Source, source_id)
            if source is None:
                return
            source.last_scraped = timestamp
            if success is True:
                source.last_successful_scrape = timestamp
                source.consecutive_failures = 0
                source.protected_until = None
            elif success is False:
                source.consecutive_failures = (source.consecutive_failures or 0) + 1

    def mark_source_protected(self, source_id: str, until: datetime) -> None:
        with self.session() as session:
            source = session.get(Source, source_id)
            if source is not None:
                source.protected_until = until

    def link_entities(self, article_id: str, entities: Iterable[Mapping[str, Any]]) -> int:
        """Attach entities to an article; duplicates by (type, norm) are ignored."""
        linked = 0
        with self.session() as session:
            existing = {
                (row.entity_type, row.entity_norm)
                for row in session.scalars(
                    select(ArticleEntity).where(ArticleEntity.article_id == article_id)
                )
            }
            for entity in entities:
                entity_type = entity.get("type")
                name = entity.get("name")
                if not entity_type or not name:
                    continue
                norm = entity.get("norm") or " ".join(str(name).lower().split())
                if (entity_type, norm) in existing:
                    continue
                existing.add((entity_type, norm))
                session.add(
                    ArticleEntity(
                        article_id=article_id,
                        entity_type=entity_type,
                        entity_name=str(name),
                        entity_norm=norm,
                        confidence=entity.get("confidence"),
                        meta=entity.get("meta") or None,
                    )
                )
                linked += 1
        return linked

