"""Detect extraction selectors for an article URL."""

from __future__ import annotations

import argparse
import json
import logging

logger = logging.getLogger(__name__)


def add_detect_structure_parser(
    subparsers: argparse._SubParsersAction,
) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "detect-structure", help="Detect extraction selectors for an article URL"
    )
    parser.add_argument("url", help="Article URL")
    parser.add_argument(
        "--extract",
        action="store_true",
        default=False,
        help="Also extract the article with the detected selectors",
    )
    return parser


def handle_detect_structure_command(args: argparse.Namespace) -> int:
    from harvester.crawler.articles import extract_article
    from harvester.crawler.structure import StructureCache
    from harvester.runtime import build_classifier, build_ladder

    ladder = build_ladder()
    try:
        page = ladder.fetch(args.url, is_article=True)
    finally:
        ladder.http_fetcher.close()

    if not page.success:
        logger.error(f"Could not fetch {args.url}: {page.attempts}")
        return 1

    cache = StructureCache(detector=build_classifier())
    config = cache.detect(args.url, page.html)
    output = {"config": config.to_dict(), "source": config.source, "tier": page.tier}

    if args.extract:
        article = extract_article(page.html, args.url, config)
        output["article"] = {
            "title": article.title,
            "author": article.author,
            "publishDate": article.publish_date.isoformat() if article.publish_date else None,
            "contentLength": len(article.content),
            "method": article.extraction_method,
        }

    print(json.dumps(output, indent=2))
    return 0
