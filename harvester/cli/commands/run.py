"""Run one full scraping pass over every active source."""

from __future__ import annotations

import argparse
import json
import logging

logger = logging.getLogger(__name__)


def add_run_parser(subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
    parser = subparsers.add_parser("run", help="Scrape every active source once")
    parser.add_argument(
        "--no-enrichment",
        dest="enrichment",
        action="store_false",
        default=None,
        help="Store articles without AI relevance/entity enrichment",
    )
    parser.add_argument(
        "--max-articles",
        type=int,
        default=None,
        help="Maximum candidate links processed per source",
    )
    parser.add_argument(
        "--json",
        dest="as_json",
        action="store_true",
        default=False,
        help="Print the run summary as JSON",
    )
    return parser


def handle_run_command(args: argparse.Namespace) -> int:
    from harvester.models.repository import SQLAlchemyRepository
    from harvester.runtime import build_orchestrator

    repository = SQLAlchemyRepository()
    repository.create_schema()
    orchestrator = build_orchestrator(repository=repository, enable_enrichment=args.enrichment)
    if args.max_articles is not None:
        orchestrator.max_articles_per_source = args.max_articles

    try:
        summary = orchestrator.run()
    finally:
        orchestrator.ladder.http_fetcher.close()
    logger.info(f"Run finished: {summary['message']}")

    if args.as_json:
        print(json.dumps(summary, indent=2, default=str))
    else:
        print(summary["message"])
        for result in summary["sourceResults"]:
            status = "ok" if result["success"] else "failed"
            print(
                f"  {result['sourceName']}: {status}, {result['processedCount']} processed, "
                f"{result['savedCount']} saved, {result['skippedCount']} skipped"
            )
            for error in result["errors"][:5]:
                print(f"    - {error}")

    return 0 if summary["success"] else 1
