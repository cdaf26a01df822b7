from __future__ import annotations

import argparse
import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Dict, Optional

from app.config import require_database
from app.core.errors import ConfigError
from app.core.logging import configure_logging, get_logger
from app.core.request_id import with_run_id
from services.centroid_service import resolve_centroid
from services.db_service import close_pool
from services.nominatim_service import NominatimService
from services.pending_show_service import (
    increment_geocode_attempts,
    list_missing_coordinates,
    update_coordinates,
)

configure_logging(service_name="worker")
logger = get_logger().bind(worker="geocode_backfill_bot")

DEFAULT_ATTEMPT_THRESHOLD = 3


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="GeocodeBackfillBot: retry geocoding for pending shows without coordinates."
    )
    parser.add_argument("--limit", type=int, default=50, help="Maximum number of shows to process.")
    parser.add_argument(
        "--attempt-threshold",
        type=int,
        default=DEFAULT_ATTEMPT_THRESHOLD,
        help="Failed attempts before falling back to the city/state centroid.",
    )
    parser.add_argument("--verbose", action="store_true", help="Debug logging.")
    return parser.parse_args(argv)


async def run_backfill(
    *,
    limit: int,
    attempt_threshold: int = DEFAULT_ATTEMPT_THRESHOLD,
    geocoder: Optional[NominatimService] = None,
) -> Dict[str, int]:
    counters: Dict[str, int] = {
        "total": 0,
        "geocoded": 0,
        "centroid": 0,
        "failed": 0,
        "no_location": 0,
    }

    shows = await list_missing_coordinates(limit)
    counters["total"] = len(shows)
    if not shows:
        logger.info("geocode_backfill_nothing_to_do")
        return counters

    async with AsyncExitStack() as stack:
        if geocoder is None:
            geocoder = await stack.enter_async_context(NominatimService())

        for pending in shows:
            show = pending.normalized()
            query = show.geocode_query()
            coords = None
            if query:
                coords = await geocoder.geocode(query, expected_state=show.state)
            else:
                counters["no_location"] += 1

            if coords is not None:
                await update_coordinates(pending.id, coords)
                counters["geocoded"] += 1
                logger.info(
                    "geocode_backfill_success",
                    pending_show_id=str(pending.id),
                    query=query,
                    lat=coords.latitude,
                    lng=coords.longitude,
                )
                continue

            attempts = await increment_geocode_attempts(pending.id)
            if attempts < attempt_threshold:
                counters["failed"] += 1
                logger.debug("geocode_backfill_retry_later", pending_show_id=str(pending.id), attempts=attempts)
                continue

            centroid = await resolve_centroid(show.city, show.state)
            if centroid is None:
                counters["failed"] += 1
                logger.warning(
                    "geocode_backfill_no_centroid",
                    pending_show_id=str(pending.id),
                    city=show.city,
                    state=show.state,
                    attempts=attempts,
                )
                continue

            await update_coordinates(pending.id, centroid)
            counters["centroid"] += 1
            logger.info(
                "geocode_backfill_centroid_fallback",
                pending_show_id=str(pending.id),
                city=show.city,
                state=show.state,
                attempts=attempts,
            )

    logger.info("geocode_backfill_bot_finished", **counters)
    return counters


async def main_async(argv=None) -> int:
    args = parse_args(argv)
    if args.verbose:
        configure_logging(service_name="worker", level=logging.DEBUG)
    try:
        require_database()
    except ConfigError as exc:
        logger.error("geocode_backfill_config_error", error=str(exc))
        return 2

    with with_run_id():
        try:
            await run_backfill(limit=args.limit, attempt_threshold=args.attempt_threshold)
        except Exception as exc:
            logger.error("geocode_backfill_bot_failed", error=str(exc))
            return 1
        finally:
            await close_pool()
    return 0


def main() -> None:
    exit_code = asyncio.run(main_async())
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
