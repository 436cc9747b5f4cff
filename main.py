#!/usr/bin/env python3
"""
RSS Aggregator Orchestrator

Entry point for the feed scraper. Wires storage, the HTTP feed source, the
staleness cache, the fetch worker and the scheduler together, and exposes a
few operational modes:

- scheduled: tick forever until interrupted
- tick: run exactly one batch and exit
- status: show feeds, when they were last fetched and how many posts they have
- register: sync feeds.yaml into the database
"""

import asyncio
import sys
from datetime import timedelta
from typing import Any, Dict, List, Optional
import argparse

from cache import StalenessCache
from config import config, get_logger
from fetcher import FeedFetcher
from models import SQLiteStorage
from scheduler import FeedScheduler, create_scheduler
from source import HttpFeedSource
from telemetry import init_telemetry, get_tracer, trace_span
from utils import validate_url

# Module-specific logger
logger = get_logger("orchestrator")
init_telemetry("rss-aggregator-orchestrator")
_tracer = get_tracer("orchestrator")


class ScraperOrchestrator:
    """Owns the long-lived scraper components for one process."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        tick_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        run_immediately: Optional[bool] = None,
    ) -> None:
        self.storage = SQLiteStorage(db_path or config.DATABASE_PATH)
        self.source = HttpFeedSource()
        # Process-wide: one cache for the life of the scheduler
        self.cache = StalenessCache()
        self.fetcher = FeedFetcher(
            self.storage,
            self.source,
            cache=self.cache,
            cache_interval=timedelta(minutes=config.CACHE_INTERVAL_MINUTES),
        )
        self.scheduler: FeedScheduler = create_scheduler(
            self.storage,
            self.fetcher,
            tick_interval=tick_interval,
            batch_size=batch_size,
            run_immediately=run_immediately,
        )

    async def initialize(self) -> None:
        await self.storage.start()
        logger.info("Orchestrator initialized: %s", config.get_config_summary())

    async def close(self) -> None:
        await self.fetcher.close()
        await self.source.close()
        await self.storage.close()

    @trace_span("register_feeds", tracer_name="orchestrator")
    async def register_feeds(self, sources: Optional[List[Dict[str, str]]] = None) -> int:
        """Create storage rows for configured feeds; existing URLs are left alone."""
        sources = config.FEED_SOURCES if sources is None else sources
        registered = 0
        for source in sources:
            if not validate_url(source['url']):
                logger.warning(f"Skipping feed {source['slug']} with invalid URL: {source['url']}")
                continue
            feed = await self.storage.register_feed(source['url'], source['name'], source['user'])
            logger.debug(f"Registered feed {source['slug']} as ID {feed.id}")
            registered += 1
        if registered:
            logger.info(f"Registered {registered} feeds from configuration")
        return registered

    async def run_once(self) -> bool:
        report = await self.scheduler.run_tick()
        return report.errors == 0

    async def run_scheduled(self) -> None:
        await self.scheduler.run_forever()

    async def collect_status(self) -> Dict[str, Any]:
        feeds = await self.storage.list_feeds()
        rows = []
        for feed in feeds:
            rows.append({
                'id': feed.id,
                'name': feed.name,
                'url': feed.url,
                'last_fetched_at': feed.last_fetched_at.isoformat() if feed.last_fetched_at else None,
                'posts': await self.storage.count_posts(feed.id),
            })
        return {
            'feeds': rows,
            'total_posts': await self.storage.count_posts(),
        }


def print_status(status: Dict[str, Any]) -> None:
    """Print formatted status information."""
    print(f"\n📊 Scraper Status")
    print(f"📰 Feeds: {len(status['feeds'])}")
    print(f"📝 Posts: {status['total_posts']}")
    for feed in status['feeds']:
        last = feed['last_fetched_at'] or 'never'
        print(f"   [{feed['id']}] {feed['name']} ({feed['posts']} posts, last fetched {last})")
        print(f"       {feed['url']}")


async def _run_mode(args) -> int:
    orchestrator = ScraperOrchestrator(
        db_path=args.database,
        tick_interval=args.interval,
        batch_size=args.batch_size,
        run_immediately=True if args.run_immediately else None,
    )
    await orchestrator.initialize()
    try:
        if args.mode == 'register':
            await orchestrator.register_feeds()
            return 0
        if args.mode == 'status':
            print_status(await orchestrator.collect_status())
            return 0

        await orchestrator.register_feeds()
        if args.mode == 'tick':
            return 0 if await orchestrator.run_once() else 1
        await orchestrator.run_scheduled()
        return 0
    finally:
        await orchestrator.close()


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='RSS Aggregator feed scraper')
    parser.add_argument('mode', choices=['scheduled', 'tick', 'status', 'register'],
                        help='Operation mode')
    parser.add_argument('--database', type=str,
                        help='SQLite database path (default: DATABASE_PATH)')
    parser.add_argument('--interval', type=float,
                        help='Seconds between ticks (default: TICK_INTERVAL_SECONDS)')
    parser.add_argument('--batch-size', type=int,
                        help='Feeds fetched per tick (default: FETCH_BATCH_SIZE)')
    parser.add_argument('--run-immediately', action='store_true',
                        help='Run the first tick at startup instead of after one interval')

    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(_run_mode(args)))
    except KeyboardInterrupt:
        logger.info("👋 Scraper shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
