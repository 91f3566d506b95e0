"""Database setup and source registration commands."""

from __future__ import annotations

import argparse
import json
import logging

logger = logging.getLogger(__name__)


def add_init_db_parser(subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
    parser = subparsers.add_parser("init-db", help="Create database tables")
    parser.add_argument(
        "--database-url", default=None, help="Override DATABASE_URL for this command"
    )
    return parser


def handle_init_db_command(args: argparse.Namespace) -> int:
    from harvester.models.repository import SQLAlchemyRepository

    repository = SQLAlchemyRepository(database_url=args.database_url)
    repository.create_schema()
    logger.info("Database tables created")
    print("Database initialized")
    return 0


def add_add_source_parser(subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
    parser = subparsers.add_parser("add-source", help="Register a listing page to scrape")
    parser.add_argument("name", help="Display name")
    parser.add_argument("url", help="Listing page URL")
    parser.add_argument("--category", default=None)
    parser.add_argument("--priority", type=int, default=1)
    parser.add_argument(
        "--include",
        action="append",
        default=[],
        help="URL substring a link must contain (repeatable)",
    )
    parser.add_argument(
        "--exclude",
        action="append",
        default=[],
        help="URL substring that rejects a link (repeatable)",
    )
    parser.add_argument("--database-url", default=None)
    return parser


def handle_add_source_command(args: argparse.Namespace) -> int:
    from harvester.models.repository import SQLAlchemyRepository

    rules = {}
    if args.include:
        rules["include_patterns"] = args.include
    if args.exclude:
        rules["exclude_patterns"] = args.exclude

    repository = SQLAlchemyRepository(database_url=args.database_url)
    repository.create_schema()
    source_id = repository.add_source(
        name=args.name,
        url=args.url,
        category=args.category,
        priority=args.priority,
        link_rules=rules or None,
    )
    print(json.dumps({"id": source_id, "name": args.name, "url": args.url}))
    return 0
