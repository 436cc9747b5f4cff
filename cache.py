#!/usr/bin/env python3
"""
In-memory staleness cache for feed fetches.

The cache remembers, per feed URL, when a fetch was last claimed and what was
last parsed from it. ``try_claim`` is the only way to get permission to fetch:
it checks freshness and stamps the claim time in one critical section, so two
workers racing for the same feed cannot both proceed, and a slow fetch cannot
be picked up again by an overlapping tick.

The state lives for the life of the process and is never persisted; after a
restart each feed's stored ``last_fetched_at`` is the source of truth.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from threading import Lock
from time import time
from typing import Callable, Dict, Optional, Set, Union

from config import get_logger
from feed_parser import ParsedFeed

# Module-specific logger
logger = get_logger("cache")

Interval = Union[timedelta, int, float]


class ClaimResult(Enum):
    PROCEED = "proceed"
    ALREADY_FRESH = "already_fresh"


@dataclass
class CachedFeedState:
    last_cached_at: float
    data: Optional[ParsedFeed] = None


def _seconds(interval: Interval) -> float:
    if isinstance(interval, timedelta):
        return interval.total_seconds()
    return float(interval)


class StalenessCache:
    """Claim-then-fetch cache keyed by feed URL.

    Every method takes the same lock, and the lock is only held for dictionary
    access, never while a fetch is running.
    """

    def __init__(self, clock: Callable[[], float] = time):
        self._clock = clock
        self._lock = Lock()
        self._entries: Dict[str, CachedFeedState] = {}
        self._in_flight: Set[str] = set()

    def try_claim(self, feed_url: str, min_interval: Interval, force: bool = False) -> ClaimResult:
        """Claim the right to fetch ``feed_url``.

        Returns PROCEED (and stamps the claim time) when the feed has never
        been claimed, its last claim is at least ``min_interval`` old, or
        ``force`` is set. A URL whose previous claim has not been released
        yet is always ALREADY_FRESH.
        """
        interval = _seconds(min_interval)
        with self._lock:
            now = self._clock()
            if feed_url in self._in_flight:
                return ClaimResult.ALREADY_FRESH

            state = self._entries.get(feed_url)
            if state is None:
                self._entries[feed_url] = CachedFeedState(last_cached_at=now)
            elif force or now - state.last_cached_at >= interval:
                if now > state.last_cached_at:
                    state.last_cached_at = now
            else:
                return ClaimResult.ALREADY_FRESH

            self._in_flight.add(feed_url)
            return ClaimResult.PROCEED

    def release(self, feed_url: str) -> None:
        """End the in-flight claim for ``feed_url``; the stamp is kept."""
        with self._lock:
            self._in_flight.discard(feed_url)

    def update(self, feed_url: str, data: ParsedFeed) -> None:
        """Store freshly parsed data. The claim stamp is left untouched."""
        with self._lock:
            state = self._entries.get(feed_url)
            if state is None:
                # Update without a prior claim; stamp now so the entry is coherent
                logger.debug(f"Cache update for unclaimed feed {feed_url}")
                self._entries[feed_url] = CachedFeedState(last_cached_at=self._clock(), data=data)
            else:
                state.data = data

    def peek(self, feed_url: str) -> Optional[ParsedFeed]:
        """Return the last parsed data for ``feed_url``, if any."""
        with self._lock:
            state = self._entries.get(feed_url)
            return state.data if state else None

    def last_cached_at(self, feed_url: str) -> Optional[float]:
        with self._lock:
            state = self._entries.get(feed_url)
            return state.last_cached_at if state else None

    def is_in_flight(self, feed_url: str) -> bool:
        with self._lock:
            return feed_url in self._in_flight

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, feed_url: str) -> bool:
        with self._lock:
            return feed_url in self._entries
