"""Fetch one URL through the escalation ladder and report what happened."""

from __future__ import annotations

import argparse
import json
import logging

logger = logging.getLogger(__name__)


def add_fetch_parser(subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
    parser = subparsers.add_parser("fetch", help="Fetch a URL through the escalation ladder")
    parser.add_argument("url", help="URL to fetch")
    parser.add_argument(
        "--article",
        action="store_true",
        default=False,
        help="Treat the URL as an article page instead of a listing page",
    )
    parser.add_argument(
        "--start-tier", type=int, default=None, help="Tier to start at (0-4)"
    )
    parser.add_argument(
        "--links",
        action="store_true",
        default=False,
        help="Also print the candidate links found on a listing page",
    )
    return parser


def handle_fetch_command(args: argparse.Namespace) -> int:
    from harvester.crawler.links import extract_candidate_links
    from harvester.runtime import build_ladder

    ladder = build_ladder()
    try:
        result = ladder.fetch(args.url, is_article=args.article, start_tier=args.start_tier)
    finally:
        ladder.http_fetcher.close()

    report = result.to_dict()
    if result.html is not None:
        report["htmlLength"] = len(result.html)
        if args.links and not args.article:
            report["links"] = [
                link.url for link in extract_candidate_links(result.html, args.url)
            ]
    print(json.dumps(report, indent=2))
    return 0 if result.success else 1
