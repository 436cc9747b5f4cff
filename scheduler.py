#!/usr/bin/env python3
"""
Periodic feed scraping scheduler.

Every tick the scheduler asks storage for the feeds most overdue for a fetch
(never-fetched first, then oldest ``last_fetched_at``), runs one fetch worker
per feed concurrently and waits for the whole batch. It supports:

- A fixed tick interval with an optional immediate first tick
- Overlapping ticks when a batch outlasts the interval (the staleness cache
  keeps a feed from being fetched twice at once)
- Graceful shutdown: future ticks stop, ticks already running finish
- Per-tick reporting and logging
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import monotonic
from typing import List, Optional, Set

from config import config, get_logger
from fetcher import FeedFetcher, FetchOutcome, FetchStatus
from models import Feed, Storage
from telemetry import init_telemetry, get_tracer, trace_span
from utils import format_duration

# Module-specific logger
logger = get_logger("scheduler")

# Initialize telemetry for the scheduler subsystem
init_telemetry("rss-aggregator-scheduler")
_tracer = get_tracer("scheduler")


@dataclass
class TickReport:
    """What one tick did."""
    started_at: datetime
    feeds: int = 0
    outcomes: List[FetchOutcome] = field(default_factory=list)
    errors: int = 0
    duration: float = 0.0

    def count(self, status: FetchStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    @property
    def inserted(self) -> int:
        return sum(outcome.inserted for outcome in self.outcomes)

    @property
    def skipped(self) -> int:
        return sum(outcome.skipped for outcome in self.outcomes)


class SchedulerHandle:
    """Controls a running scheduler started with ``FeedScheduler.start``."""

    def __init__(self, scheduler: "FeedScheduler", driver: asyncio.Task, stop_event: asyncio.Event):
        self._scheduler = scheduler
        self._driver = driver
        self._stop_event = stop_event

    @property
    def running(self) -> bool:
        return not self._driver.done()

    @property
    def ticks(self) -> int:
        return self._scheduler.ticks_started

    def cancel(self) -> None:
        """Stop future ticks. Ticks already in flight keep running."""
        self._stop_event.set()

    async def stop(self) -> None:
        """Stop future ticks and wait for the driver and in-flight ticks to finish."""
        self.cancel()
        await self._driver
        await self._scheduler.wait_for_ticks()


class FeedScheduler:
    """Drives ``FeedFetcher`` over batches of due feeds on a fixed interval."""

    def __init__(
        self,
        storage: Storage,
        fetcher: FeedFetcher,
        tick_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        run_immediately: Optional[bool] = None,
    ):
        """Initialize scheduler.

        Args:
            storage: Source of due feeds
            fetcher: Worker run once per due feed
            tick_interval: Seconds between ticks (default: TICK_INTERVAL_SECONDS)
            batch_size: Maximum feeds per tick (default: FETCH_BATCH_SIZE)
            run_immediately: Fire the first tick at start instead of after one interval
        """
        self.storage = storage
        self.fetcher = fetcher
        self.tick_interval = float(tick_interval if tick_interval is not None else config.TICK_INTERVAL_SECONDS)
        self.batch_size = int(batch_size if batch_size is not None else config.FETCH_BATCH_SIZE)
        self.run_immediately = config.SCHEDULER_RUN_IMMEDIATELY if run_immediately is None else run_immediately
        if self.tick_interval <= 0:
            raise ValueError(f"tick_interval must be positive, got {self.tick_interval}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")
        self.ticks_started = 0
        self.last_report: Optional[TickReport] = None
        self._tick_tasks: Set[asyncio.Task] = set()

    @trace_span(
        "scheduler.tick",
        tracer_name="scheduler",
        attr_from_args=lambda self: {"batch.size": self.batch_size},
    )
    async def run_tick(self) -> TickReport:
        """Fetch one batch of due feeds and wait for all of them."""
        started = monotonic()
        report = TickReport(started_at=datetime.now(timezone.utc))

        logger.info("Finding feeds in need of fetching...")
        try:
            feeds = await self.storage.next_feeds_to_fetch(self.batch_size)
        except Exception as e:
            logger.error(f"Error getting feeds to fetch: {e}")
            report.errors += 1
            report.duration = monotonic() - started
            self.last_report = report
            return report

        if not feeds:
            logger.info("No feeds in need of fetching. Waiting for next cycle...")
            report.duration = monotonic() - started
            self.last_report = report
            return report

        report.feeds = len(feeds)
        results = await asyncio.gather(*(self._run_worker(feed) for feed in feeds), return_exceptions=True)
        for feed, result in zip(feeds, results):
            if isinstance(result, BaseException):
                report.errors += 1
                logger.error(f"Unexpected error processing {feed.url}: {result!r}")
            else:
                report.outcomes.append(result)

        report.duration = monotonic() - started
        self.last_report = report
        logger.info(
            "Finished processing %d feeds in %s (ok=%d cache_hits=%d transport_errors=%d malformed=%d errors=%d inserted=%d skipped=%d). Waiting for next cycle...",
            report.feeds,
            format_duration(report.duration),
            report.count(FetchStatus.SUCCESS),
            report.count(FetchStatus.CACHE_HIT),
            report.count(FetchStatus.TRANSPORT_ERROR),
            report.count(FetchStatus.MALFORMED_FEED),
            report.errors,
            report.inserted,
            report.skipped,
        )
        return report

    async def _run_worker(self, feed: Feed) -> FetchOutcome:
        return await self.fetcher.fetch_one(feed)

    def _launch_tick(self) -> asyncio.Task:
        self.ticks_started += 1
        if self._tick_tasks:
            logger.warning(f"Previous tick still running ({len(self._tick_tasks)} in flight); starting tick {self.ticks_started} anyway")
        task = asyncio.create_task(self.run_tick())
        self._tick_tasks.add(task)
        task.add_done_callback(self._tick_tasks.discard)
        return task

    async def wait_for_ticks(self) -> None:
        """Wait until every tick launched so far has finished."""
        while self._tick_tasks:
            await asyncio.gather(*list(self._tick_tasks), return_exceptions=True)

    async def _drive(self, stop_event: asyncio.Event) -> None:
        logger.info(f"Starting scraper with interval {self.tick_interval}s and limit {self.batch_size}")
        if self.run_immediately and not stop_event.is_set():
            self._launch_tick()
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.tick_interval)
            except asyncio.TimeoutError:
                self._launch_tick()
        logger.info("Scheduler stopped; no further ticks will start")

    def start(self) -> SchedulerHandle:
        """Start ticking in the background of the running event loop."""
        stop_event = asyncio.Event()
        driver = asyncio.create_task(self._drive(stop_event))
        return SchedulerHandle(self, driver, stop_event)

    async def run_forever(self) -> None:
        """Tick until cancelled, then let in-flight ticks finish."""
        handle = self.start()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            logger.info("Scheduler cancelled - shutting down")
        finally:
            await handle.stop()


# Convenience function for external use
def create_scheduler(
    storage: Storage,
    fetcher: FeedFetcher,
    tick_interval: Optional[float] = None,
    batch_size: Optional[int] = None,
    run_immediately: Optional[bool] = None,
) -> FeedScheduler:
    """Create a FeedScheduler instance from configuration defaults."""
    return FeedScheduler(storage, fetcher, tick_interval, batch_size, run_immediately)
