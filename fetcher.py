#!/usr/bin/env python3
"""
Per-feed fetch pipeline.

``FeedFetcher.fetch_one`` runs one feed through claim → HTTP GET → parse →
cache update → post inserts → mark fetched. Whatever happens (cache hit,
transport failure, malformed payload, storage trouble), the feed is marked
fetched before the call returns so the scheduler's "most overdue" ordering
keeps rotating, and no error escapes to sibling feeds.
"""

from asyncio import get_running_loop, wait_for, TimeoutError
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Optional
import traceback

from cache import ClaimResult, StalenessCache
from config import config, get_logger
from errors import DuplicateLinkError, MalformedFeedError, TransportError
from feed_parser import ParsedFeed, parse_feed
from models import Feed, Post, Storage
from source import FeedSource
from telemetry import get_tracer, init_telemetry, trace_span
from utils import sanitize_html

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("rss-aggregator-fetcher")
_tracer = get_tracer("fetcher")


class FetchStatus(Enum):
    SUCCESS = "success"
    CACHE_HIT = "cache_hit"
    TRANSPORT_ERROR = "transport_error"
    MALFORMED_FEED = "malformed_feed"


@dataclass
class FetchOutcome:
    """Result of one ``fetch_one`` call.

    ``skipped`` counts entries already stored (duplicate links), ``failed``
    counts entries that hit any other storage error, and ``dropped`` counts
    entries the parser discarded. ``data`` is the parsed feed, or the cached
    copy on a cache hit.
    """
    feed_id: Any
    feed_url: str
    status: FetchStatus
    inserted: int = 0
    skipped: int = 0
    failed: int = 0
    dropped: int = 0
    error: Optional[Exception] = None
    data: Optional[ParsedFeed] = None

    @property
    def ok(self) -> bool:
        return self.status in (FetchStatus.SUCCESS, FetchStatus.CACHE_HIT)


class FeedFetcher:
    def __init__(
        self,
        storage: Storage,
        source: FeedSource,
        cache: Optional[StalenessCache] = None,
        cache_interval: Optional[timedelta] = None,
        sanitize_descriptions: Optional[bool] = None,
    ) -> None:
        self.storage = storage
        self.source = source
        self.cache = cache if cache is not None else StalenessCache()
        if cache_interval is None:
            cache_interval = timedelta(minutes=config.CACHE_INTERVAL_MINUTES)
        self.cache_interval = cache_interval
        self.sanitize_descriptions = config.SANITIZE_DESCRIPTIONS if sanitize_descriptions is None else sanitize_descriptions
        self.executor = ThreadPoolExecutor(thread_name_prefix="feed-parser")

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function (feed parsing) off the event loop."""
        return await get_running_loop().run_in_executor(self.executor, func, *args)

    @trace_span(
        "fetch_one",
        tracer_name="fetcher",
        attr_from_args=lambda self, feed: {
            "feed.id": str(feed.id),
            "feed.url": feed.url,
        },
    )
    async def fetch_one(self, feed: Feed) -> FetchOutcome:
        """Fetch, parse and persist a single feed."""
        never_fetched = feed.last_fetched_at is None
        claim = self.cache.try_claim(feed.url, self.cache_interval, force=never_fetched)

        if claim is ClaimResult.ALREADY_FRESH:
            logger.info(f"Cache hit for {feed.url}, skipping fetch")
            await self._mark_fetched(feed)
            return FetchOutcome(feed.id, feed.url, FetchStatus.CACHE_HIT, data=self.cache.peek(feed.url))

        try:
            return await self._fetch_claimed(feed)
        finally:
            self.cache.release(feed.url)
            await self._mark_fetched(feed)

    async def _fetch_claimed(self, feed: Feed) -> FetchOutcome:
        logger.info(f"Fetching feed {feed.name or feed.id} from {feed.url}")
        try:
            content = await self.source.get(feed.url)
        except TransportError as e:
            logger.error(f"Error fetching {feed.url}: {e}")
            return FetchOutcome(feed.id, feed.url, FetchStatus.TRANSPORT_ERROR, error=e)

        try:
            parsed = await self.run_in_executor(parse_feed, content)
        except MalformedFeedError as e:
            logger.error(f"Malformed feed at {feed.url}: {e}")
            return FetchOutcome(feed.id, feed.url, FetchStatus.MALFORMED_FEED, error=e)

        self.cache.update(feed.url, parsed)
        logger.info(f"Feed {feed.url} parsed as {parsed.version or 'unknown'}: {len(parsed)} entries, {len(parsed.warnings)} dropped")

        outcome = FetchOutcome(feed.id, feed.url, FetchStatus.SUCCESS, dropped=len(parsed.warnings), data=parsed)
        await self._store_entries(feed, parsed, outcome)
        logger.info(
            "%s summary: inserted=%d skipped=%d failed=%d dropped=%d",
            feed.url,
            outcome.inserted,
            outcome.skipped,
            outcome.failed,
            outcome.dropped,
        )
        return outcome

    async def _store_entries(self, feed: Feed, parsed: ParsedFeed, outcome: FetchOutcome) -> None:
        """Insert every entry; duplicates and storage errors only affect their own entry."""
        for entry in parsed.entries:
            description = entry.description
            if self.sanitize_descriptions:
                description = sanitize_html(description)
            post = Post(
                feed_id=feed.id,
                title=entry.title,
                url=entry.link,
                published_at=entry.published_at,
                description=description,
            )
            try:
                await self.storage.insert_post(post)
                outcome.inserted += 1
                logger.debug(f"Saved post: {entry.title}")
            except DuplicateLinkError:
                outcome.skipped += 1
                logger.debug(f"Post with URL already stored, skipping: {entry.link}")
            except Exception as e:
                outcome.failed += 1
                logger.error(f"Failed to save post '{entry.title}' from {feed.url}: {e}")

    async def _mark_fetched(self, feed: Feed) -> None:
        try:
            await self.storage.mark_fetched(feed.id)
        except Exception as e:
            logger.error(f"Error marking feed {feed.id} as fetched: {e}")
            logger.debug(traceback.format_exc())

    async def close(self) -> None:
        """Shut down the parser thread pool."""
        if self.executor:
            logger.info("Shutting down parser thread pool...")
            try:
                await wait_for(
                    get_running_loop().run_in_executor(None, lambda: self.executor.shutdown(wait=True)),
                    timeout=30.0,
                )
            except TimeoutError:
                logger.warning("Parser thread pool shutdown timed out after 30 seconds")
                self.executor.shutdown(wait=False)
            self.executor = None
        logger.info("FeedFetcher closed")
