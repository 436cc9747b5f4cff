import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from cache import StalenessCache
from errors import FetchConnectionError, FetchTimeoutError, HTTPStatusError, MalformedFeedError
from fetcher import FeedFetcher, FetchStatus
from conftest import StaticFeedSource, item, rss

FEED_URL = "https://blog.boot.dev/index.xml"

THREE_ITEMS = rss(
    item("One", "https://blog.boot.dev/1"),
    item("Two", "https://blog.boot.dev/2"),
    item("Three", "https://blog.boot.dev/3"),
)


def make_fetcher(storage, source, cache=None, interval=timedelta(minutes=30), sanitize=True):
    return FeedFetcher(
        storage,
        source,
        cache=cache if cache is not None else StalenessCache(),
        cache_interval=interval,
        sanitize_descriptions=sanitize,
    )


@pytest.mark.asyncio
async def test_fetch_inserts_entries_and_marks_feed(storage):
    feed = storage.add_feed(FEED_URL)
    source = StaticFeedSource({FEED_URL: THREE_ITEMS})
    fetcher = make_fetcher(storage, source)
    before = datetime.now(timezone.utc)

    outcome = await fetcher.fetch_one(feed)
    await fetcher.close()

    assert outcome.status is FetchStatus.SUCCESS
    assert outcome.ok
    assert outcome.inserted == 3
    assert outcome.skipped == 0
    assert len(outcome.data) == 3
    assert storage.links_for(feed.id) == [
        "https://blog.boot.dev/1",
        "https://blog.boot.dev/2",
        "https://blog.boot.dev/3",
    ]
    assert storage.feeds[feed.id].last_fetched_at >= before
    assert source.requests == [FEED_URL]


@pytest.mark.asyncio
async def test_refetch_skips_existing_links(storage):
    feed = storage.add_feed(FEED_URL)
    source = StaticFeedSource({FEED_URL: THREE_ITEMS})
    fetcher = make_fetcher(storage, source, interval=timedelta(0))

    first = await fetcher.fetch_one(feed)
    second = await fetcher.fetch_one(await storage.get_feed(feed.id))
    await fetcher.close()

    assert first.inserted == 3
    assert second.status is FetchStatus.SUCCESS
    assert second.inserted == 0
    assert second.skipped == 3
    assert await storage.count_posts(feed.id) == 3
    assert len(source.requests) == 2


@pytest.mark.asyncio
async def test_fresh_feed_is_a_cache_hit(storage):
    feed = storage.add_feed(FEED_URL)
    source = StaticFeedSource({FEED_URL: THREE_ITEMS})
    fetcher = make_fetcher(storage, source)

    first = await fetcher.fetch_one(feed)
    before_hit = datetime.now(timezone.utc)
    second = await fetcher.fetch_one(await storage.get_feed(feed.id))
    await fetcher.close()

    assert second.status is FetchStatus.CACHE_HIT
    assert storage.feeds[feed.id].last_fetched_at >= before_hit
    assert second.ok
    assert second.inserted == 0
    assert second.data is first.data
    assert source.requests == [FEED_URL]
    assert storage.mark_calls == [feed.id, feed.id]


@pytest.mark.asyncio
async def test_never_fetched_feed_proceeds_despite_recent_claim(storage):
    cache = StalenessCache()
    cache.try_claim(FEED_URL, 0)
    cache.release(FEED_URL)
    feed = storage.add_feed(FEED_URL)
    source = StaticFeedSource({FEED_URL: THREE_ITEMS})
    fetcher = make_fetcher(storage, source, cache=cache)

    outcome = await fetcher.fetch_one(feed)
    await fetcher.close()

    assert outcome.status is FetchStatus.SUCCESS
    assert source.requests == [FEED_URL]


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    FetchConnectionError("connection refused", url=FEED_URL),
    FetchTimeoutError("Timed out after 30s", url=FEED_URL),
    HTTPStatusError(503, url=FEED_URL, reason="Service Unavailable"),
])
async def test_transport_error_marks_feed_and_keeps_claim(storage, error):
    cache = StalenessCache()
    feed = storage.add_feed(FEED_URL)
    fetcher = make_fetcher(storage, StaticFeedSource({FEED_URL: error}), cache=cache)
    before = datetime.now(timezone.utc)

    outcome = await fetcher.fetch_one(feed)
    await fetcher.close()

    assert outcome.status is FetchStatus.TRANSPORT_ERROR
    assert not outcome.ok
    assert outcome.error is error
    assert storage.posts == []
    assert storage.feeds[feed.id].last_fetched_at >= before
    assert cache.last_cached_at(FEED_URL) is not None
    assert cache.peek(FEED_URL) is None
    assert not cache.is_in_flight(FEED_URL)


@pytest.mark.asyncio
async def test_malformed_payload_marks_feed(storage):
    feed = storage.add_feed(FEED_URL)
    fetcher = make_fetcher(storage, StaticFeedSource({FEED_URL: b"<html><body>gone</body></html>"}))
    before = datetime.now(timezone.utc)

    outcome = await fetcher.fetch_one(feed)
    await fetcher.close()

    assert outcome.status is FetchStatus.MALFORMED_FEED
    assert isinstance(outcome.error, MalformedFeedError)
    assert storage.posts == []
    assert storage.feeds[feed.id].last_fetched_at >= before


@pytest.mark.asyncio
async def test_storage_error_only_affects_its_entry(storage):
    feed = storage.add_feed(FEED_URL)
    storage.fail_links = {"https://blog.boot.dev/2"}
    fetcher = make_fetcher(storage, StaticFeedSource({FEED_URL: THREE_ITEMS}))

    outcome = await fetcher.fetch_one(feed)
    await fetcher.close()

    assert outcome.status is FetchStatus.SUCCESS
    assert outcome.inserted == 2
    assert outcome.failed == 1
    assert storage.links_for(feed.id) == ["https://blog.boot.dev/1", "https://blog.boot.dev/3"]


@pytest.mark.asyncio
async def test_dropped_entries_are_counted(storage):
    feed = storage.add_feed(FEED_URL)
    payload = rss(
        item("Good", "https://blog.boot.dev/1"),
        item("Bad date", "https://blog.boot.dev/2", pub_date="tomorrow-ish"),
    )
    fetcher = make_fetcher(storage, StaticFeedSource({FEED_URL: payload}))

    outcome = await fetcher.fetch_one(feed)
    await fetcher.close()

    assert outcome.inserted == 1
    assert outcome.dropped == 1


@pytest.mark.asyncio
async def test_descriptions_are_sanitized(storage):
    feed = storage.add_feed(FEED_URL)
    description = "&lt;p onclick=&quot;steal()&quot;&gt;Hi&lt;script&gt;bad()&lt;/script&gt;&lt;/p&gt;"
    payload = rss(item("Html", "https://blog.boot.dev/1", description=description))
    fetcher = make_fetcher(storage, StaticFeedSource({FEED_URL: payload}))

    await fetcher.fetch_one(feed)
    await fetcher.close()

    stored = storage.posts[0].description
    assert "Hi" in stored
    assert "script" not in stored
    assert "onclick" not in stored


@pytest.mark.asyncio
async def test_concurrent_fetches_of_one_feed_request_once(storage):
    feed = storage.add_feed(FEED_URL)
    source = StaticFeedSource({FEED_URL: THREE_ITEMS}, delay=0.05)
    fetcher = make_fetcher(storage, source)

    outcomes = await asyncio.gather(fetcher.fetch_one(feed), fetcher.fetch_one(feed))
    await fetcher.close()

    statuses = sorted(o.status.value for o in outcomes)
    assert statuses == [FetchStatus.CACHE_HIT.value, FetchStatus.SUCCESS.value]
    assert source.requests == [FEED_URL]
    assert len(storage.mark_calls) == 2
