#!/usr/bin/env python3
"""
Scholar Aggregator CLI

Run aggregation and cache maintenance from the command line. Every command
prints a JSON document to stdout.

Usage:
    scholar-aggregator search --query "cardiac vexus" --num 20
    scholar-aggregator author philippe-ayres-md
    scholar-aggregator metrics --query "lung ultrasound"
    scholar-aggregator cache-stats
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv

from scholar_aggregator.errors import AggregatorError
from scholar_aggregator.service import AggregationRequest, AggregationService, BehaviorFlags
from scholar_aggregator.utils.config import load_config

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Aggregate Google Scholar publications for the faculty roster",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # First page of the default query, three authors
  scholar-aggregator search

  # Every author, 50 per page, second page
  scholar-aggregator search --include-all-authors --start 50 --num 50

  # Serve only from cache
  scholar-aggregator search --offline-only --all
        """,
    )
    parser.add_argument("--config", type=str, help="Path to config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    search = sub.add_parser("search", help="Aggregate publications across the roster")
    search.add_argument("--query", "-q", type=str, default="", help="Topical query")
    search.add_argument("--start", type=int, default=0, help="Result offset (default: 0)")
    search.add_argument("--num", type=int, default=20, help="Page size, 1-50 (default: 20)")
    search.add_argument("--all", dest="return_all", action="store_true",
                        help="Return the whole result set")
    search.add_argument("--authors-only", action="store_true",
                        help="Skip authors without a Scholar profile")
    search.add_argument("--include-all-authors", action="store_true",
                        help="Process the whole roster")
    search.add_argument("--offline-only", action="store_true",
                        help="Never call the provider")
    search.add_argument("--per-author-limit", type=int, help="Records per author (1-100)")
    search.add_argument("--max-authors", type=int, help="Roster entries to process")
    search.add_argument("--force-refresh", action="store_true",
                        help="Ignore the cached aggregate")
    search.add_argument("--no-cache-write", action="store_true",
                        help="Do not store the computed aggregate")

    author = sub.add_parser("author", help="Publications of one faculty member")
    author.add_argument("slug", type=str, help="Faculty route id, e.g. philippe-ayres-md")
    author.add_argument("--author-id", type=str, help="Explicit Scholar author id")
    author.add_argument("--limit", type=int, help="Maximum results returned")
    author.add_argument("--force-refresh", action="store_true", help="Ignore the cache")

    metrics = sub.add_parser("metrics", help="Citation totals for a keyword query")
    metrics.add_argument("--query", "-q", type=str, default="", help="Keyword query")
    metrics.add_argument("--max-pages", type=int, default=5, help="Pages to scan (max 5)")
    metrics.add_argument("--num", type=int, default=20, help="Results per page (max 20)")

    sub.add_parser("cache-stats", help="Cache entry counts and size")
    sub.add_parser("sweep", help="Delete expired and corrupt cache entries")
    sub.add_parser("clear-cache", help="Delete every cache entry")

    return parser


async def run(args: argparse.Namespace) -> dict:
    config = load_config(args.config) if args.config else load_config()
    service = AggregationService.from_config(config)

    try:
        if args.command == "search":
            flags = BehaviorFlags(
                authors_only=args.authors_only,
                include_all_authors=args.include_all_authors,
                offline_only=args.offline_only,
                per_author_limit=args.per_author_limit,
                max_authors=args.max_authors,
                force_refresh=args.force_refresh,
                skip_cache_write=args.no_cache_write,
                return_all=args.return_all,
            )
            result = await service.aggregate(
                AggregationRequest(args.query, start=args.start, num=args.num, flags=flags)
            )
            return result.to_response()

        if args.command == "author":
            return await service.author_research(
                args.slug,
                author_id=args.author_id,
                limit=args.limit,
                force_refresh=args.force_refresh,
            )

        if args.command == "metrics":
            return await service.query_metrics(args.query, max_pages=args.max_pages, num=args.num)

        if args.command == "cache-stats":
            return service.cache_stats()

        if args.command == "sweep":
            return {"deleted": service.sweep_cache()}

        if args.command == "clear-cache":
            return {"deleted": service.clear_cache()}

        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await service.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Console entry point; returns the process exit code."""
    load_dotenv()
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    try:
        output = asyncio.run(run(args))
    except AggregatorError as e:
        logger.error(f"{e.__class__.__name__}: {e}")
        error = {"error": str(e), "type": e.__class__.__name__}
        if e.retry_after is not None:
            error["retryAfter"] = e.retry_after
        print(json.dumps(error, indent=2))
        return 1

    print(json.dumps(output, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
