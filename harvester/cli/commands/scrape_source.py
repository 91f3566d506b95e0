"""Scrape a single source outside of a full run."""

from __future__ import annotations

import argparse
import json
import logging

logger = logging.getLogger(__name__)


def add_scrape_source_parser(subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
    parser = subparsers.add_parser("scrape-source", help="Scrape a single source by id")
    parser.add_argument("source_id", help="Source id")
    parser.add_argument(
        "--no-enrichment",
        dest="enrichment",
        action="store_false",
        default=None,
        help="Store articles without AI enrichment",
    )
    return parser


def handle_scrape_source_command(args: argparse.Namespace) -> int:
    from harvester.models.repository import SQLAlchemyRepository
    from harvester.runtime import build_orchestrator

    repository = SQLAlchemyRepository()
    repository.create_schema()
    source = repository.get_source(args.source_id)
    if source is None:
        logger.error(f"Source not found: {args.source_id}")
        return 1

    orchestrator = build_orchestrator(repository=repository, enable_enrichment=args.enrichment)
    try:
        result = orchestrator.scrape_source(source)
    finally:
        orchestrator.ladder.http_fetcher.close()
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1
