"""
mapsync - warm the map cache for a city from the command line.

Runs one progressive load (initial then full) through the same query
service the map uses, so the results land in the shared cache.

Usage:
    mapsync --city la
    mapsync --city la --status Completed --use Office --priority p1 p2
"""

import argparse
import asyncio
import sys
from typing import Optional, Sequence

from mapsync import __version__, create_query_service, create_session
from mapsync.config import Settings, get_settings
from mapsync.services.scheduler import ImmediateScheduler
from mapsync.sources import DataSource, FetchCriteria, Filter, SyncError, create_source
from mapsync.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Warm the map project cache")
    parser.add_argument("--city", "-c", help="City slug to load")
    parser.add_argument("--query", "-q", help="Free-text search")
    parser.add_argument("--action", choices=["1", "2", "3"], help="Home-page action shortcut")
    parser.add_argument("--priority", nargs="*", default=[], help="Project ids that must be included")
    parser.add_argument("--status", nargs="*", default=[], help="Project Status filter values")
    parser.add_argument("--use", nargs="*", default=[], help="Property Type filter values")
    parser.add_argument("--invalidate", action="store_true", help="Drop cached results for the city first")
    return parser


def criteria_from_args(args: argparse.Namespace) -> FetchCriteria:
    filters = []
    if args.status:
        filters.append(Filter("Project Status", "is", tuple(args.status)))
    if args.use:
        filters.append(Filter("Property Type", "is any of", tuple(args.use)))
    return FetchCriteria(
        query=args.query,
        action_id=args.action,
        city_slug=args.city,
        priority_ids=tuple(args.priority),
        filters=tuple(filters),
    )


async def warm(
    criteria: FetchCriteria,
    settings: Settings,
    source: Optional[DataSource] = None,
    invalidate: bool = False,
) -> int:
    """Load ``criteria`` progressively; returns the final dataset size."""
    source = source if source is not None else create_source(settings)
    await source.initialize()
    queries = create_query_service(source=source, settings=settings)
    await queries.cache.connect()
    session = create_session(queries, scheduler=ImmediateScheduler())

    try:
        if invalidate:
            await queries.invalidate_city(criteria.city_slug)
        outcome = await session.load(criteria)
        logger.info(
            "Cache warmed",
            outcome=outcome.value,
            projects=len(session.dataset),
            full_updates=session.full_updates,
            criteria=criteria.normalized().log_fields(),
            cache=queries.cache.stats(),
        )
        return len(session.dataset)
    finally:
        session.close()
        await queries.cache.close()
        await source.close()


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)

    logger.info("mapsync", version=__version__, log_level=settings.log_level)

    try:
        asyncio.run(warm(criteria_from_args(args), settings, invalidate=args.invalidate))
    except KeyboardInterrupt:
        logger.info("Stopped by user")
    except SyncError as e:
        logger.error("Warm-up failed", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
