from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence
from uuid import UUID

from app.config import require_database, require_openai, settings
from app.core.errors import ConfigError
from app.core.logging import configure_logging, get_logger
from app.core.request_id import with_run_id
from app.core.us_states import to_state_code
from app.models.crawl_config import CrawlConfig
from services.crawl_orchestrator import CrawlOrchestrator
from services.db_service import close_pool
from services.pending_show_inspector import inspect_pending_show

configure_logging(service_name="worker")
logger = get_logger().bind(worker="card_show_scraper_bot")

DEFAULT_CHUNK_SIZE = 25_000
EXIT_OK = 0
EXIT_NOT_FOUND = 1
EXIT_CONFIG_ERROR = 2


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="CardShowScraperBot: crawl card-show sources into the pending review queue."
    )
    target = parser.add_mutually_exclusive_group()
    target.add_argument(
        "--url",
        type=str,
        default=None,
        help="Crawl this single URL instead of the enabled sources.",
    )
    target.add_argument(
        "--all",
        action="store_true",
        help="Crawl every enabled source in priority order (default).",
    )
    target.add_argument(
        "--inspect-id",
        type=UUID,
        default=None,
        help="Print one pending show and re-normalize its stored raw items (no crawl).",
    )
    parser.add_argument(
        "--state",
        type=str,
        default=None,
        help="Only crawl sources tagged with this US state (code or name).",
    )
    parser.add_argument(
        "--apply",
        action="store_true",
        help="With --inspect-id: write the re-normalized payload back (PENDING rows only).",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum number of sources to crawl (default: all enabled).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and extract but write nothing (no queue rows, no source health).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Debug logging, including per-chunk detail.",
    )
    parser.add_argument(
        "--no-geocode",
        action="store_true",
        help="Skip geocoding; shows are queued with null coordinates.",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=DEFAULT_CHUNK_SIZE,
        help="Max bytes per HTML chunk sent to the model (default: 25000).",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Max sources crawled at the same time.",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="Optional OpenAI model override.",
    )
    args = parser.parse_args(argv)
    if args.limit is not None and args.limit < 1:
        parser.error("--limit must be >= 1")
    if args.chunk_size < 512:
        parser.error("--chunk-size must be >= 512")
    if args.state is not None:
        code = to_state_code(args.state)
        if code is None:
            parser.error(f"--state: unknown US state {args.state!r}")
        args.state = code
    if args.apply and args.inspect_id is None:
        parser.error("--apply requires --inspect-id")
    return args


def check_config(args: argparse.Namespace) -> None:
    """Fail fast, before any work, when credentials are missing."""
    if args.inspect_id is not None:
        require_database()
        return
    require_openai()
    # an ad-hoc dry run of one URL touches neither the registry nor the queue
    if not (args.dry_run and args.url):
        require_database()


def build_config(args: argparse.Namespace) -> CrawlConfig:
    overrides = {
        "chunk_max_bytes": args.chunk_size,
        "geocoding_enabled": not args.no_geocode,
        "dry_run": args.dry_run,
        "limit": args.limit,
        "state": args.state,
        "model": args.model,
    }
    if args.concurrency:
        overrides["source_concurrency"] = max(1, args.concurrency)
    return CrawlConfig(**overrides)


async def run_inspection(args: argparse.Namespace) -> int:
    try:
        report = await inspect_pending_show(args.inspect_id, apply=args.apply and not args.dry_run)
    finally:
        await close_pool()
    if report is None:
        print(f"Pending show not found: {args.inspect_id}", file=sys.stderr)
        return EXIT_NOT_FOUND
    print(report.format())
    return EXIT_OK


async def run_scraper(args: argparse.Namespace) -> int:
    try:
        check_config(args)
    except ConfigError as exc:
        logger.error("card_show_scraper_config_error", error=str(exc))
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.inspect_id is not None:
        return await run_inspection(args)

    config = build_config(args)
    use_database = bool(settings.DATABASE_URL)
    orchestrator = CrawlOrchestrator(config, use_database=use_database)
    try:
        summary = await orchestrator.run(url=args.url)
    finally:
        if use_database:
            await close_pool()

    print(summary.format())
    # failed sources are reported, not fatal
    return EXIT_OK


async def main_async(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    if args.verbose:
        configure_logging(service_name="worker", level=logging.DEBUG)
    with with_run_id():
        return await run_scraper(args)


def main() -> None:
    exit_code = asyncio.run(main_async())
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
