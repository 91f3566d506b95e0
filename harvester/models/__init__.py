"""SQLAlchemy database models for the article harvester."""

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    text,
)
from sqlalchemy.orm import (
    Mapped,
    declarative_base,
    mapped_column,
    relationship,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool

Base: Any = declarative_base()


class Source(Base):
    """A listing page the harvester scrapes for new articles."""

    __tablename__ = "sources"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = Column(String, nullable=False)
    url = Column(String, nullable=False, unique=True)
    category = Column(String, index=True)
    priority = Column(Integer, default=1, index=True)
    active = Column(Boolean, nullable=False, default=True, index=True)

    last_scraped: Mapped[datetime | None] = mapped_column(DateTime)
    last_successful_scrape: Mapped[datetime | None] = mapped_column(DateTime)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    # Set when every tier failed; cleared on the next success
    protected_until: Mapped[datetime | None] = mapped_column(DateTime)

    # Cached extraction selectors (camelCase keys, see ExtractionConfig.to_dict)
    scraping_config: Mapped[dict | None] = mapped_column(JSON)
    # Link include/exclude rules for this listing page
    link_rules: Mapped[dict | None] = mapped_column(JSON)

    created_at = Column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = Column(DateTime, onupdate=datetime.utcnow)

    articles = relationship("Article", back_populates="source")


class Article(Base):
    """Extracted, validated and enriched article content."""

    __tablename__ = "articles"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, default=lambda: str(uuid.uuid4())
    )
    source_id = Column(String, ForeignKey("sources.id"), nullable=False, index=True)

    url = Column(String, nullable=False, unique=True, index=True)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    author: Mapped[str | None] = mapped_column(String)
    publish_date: Mapped[datetime | None] = mapped_column(DateTime, index=True)
    summary = Column(Text)

    # Enrichment
    is_relevant = Column(Boolean, nullable=False, default=False, index=True)
    severity_score: Mapped[float | None] = mapped_column(Float)
    severity_level: Mapped[str | None] = mapped_column(String, index=True)

    extraction_method = Column(String)
    # Avoid reserved name 'metadata' on the class
    meta: Mapped[dict | None] = mapped_column("metadata", JSON)

    created_at = Column(
        DateTime, nullable=False, default=datetime.utcnow, index=True
    )

    source = relationship("Source", back_populates="articles")
    entities = relationship(
        "ArticleEntity", back_populates="article", cascade="all, delete-orphan"
    )


class ArticleEntity(Base):
    """Named entity (software, company, CVE, ...) mentioned by an article."""

    __tablename__ = "article_entities"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, default=lambda: str(uuid.uuid4())
    )
    article_id = Column(
        String, ForeignKey("articles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    entity_type = Column(String, nullable=False, index=True)
    entity_name = Column(String, nullable=False)
    entity_norm = Column(String, nullable=False, index=True)
    confidence = Column(Float)
    meta: Mapped[dict | None] = mapped_column(JSON)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    article = relationship("Article", back_populates="entities")

    __table_args__ = (
        UniqueConstraint(
            "article_id", "entity_type", "entity_norm", name="uq_article_entity"
        ),
    )


def create_database_engine(database_url: str = "sqlite:///data/harvester.db"):
    """Create SQLAlchemy engine with proper configuration."""
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            # One shared connection so every session sees the same in-memory DB
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=False,
            )
        db_path = database_url.replace("sqlite:///", "", 1)
        if db_path and db_path != database_url:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )
    else:
        engine = create_engine(
            database_url,
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            pool_pre_ping=True,
            echo=False,
        )

    return engine


def create_tables(engine):
    """Create all tables in the database."""
    Base.metadata.create_all(engine)


def get_session(engine):
    """Get a database session."""
    Session = sessionmaker(bind=engine)
    return Session()


__all__ = [
    "Article",
    "ArticleEntity",
    "Base",
    "Source",
    "create_database_engine",
    "create_tables",
    "get_session",
]
