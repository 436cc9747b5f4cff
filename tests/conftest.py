import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from errors import DuplicateLinkError, FetchConnectionError, StorageError
from models import Feed, Post, Storage
from source import FeedSource


def rss(*items: str) -> bytes:
    """Build a minimal RSS 2.0 document around the given <item> snippets."""
    body = "\n".join(items)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<rss version="2.0"><channel><title>Test Feed</title>'
        '<link>https://example.com/</link><description>test</description>\n'
        f"{body}\n"
        "</channel></rss>"
    ).encode("utf-8")


def item(title: str, link: str, pub_date: Optional[str] = "Wed, 05 Jun 2024 00:00:00 +0000",
         description: Optional[str] = None) -> str:
    parts = [f"<title>{title}</title>", f"<link>{link}</link>"]
    if pub_date is not None:
        parts.append(f"<pubDate>{pub_date}</pubDate>")
    if description is not None:
        parts.append(f"<description>{description}</description>")
    return "<item>" + "".join(parts) + "</item>"


class MemoryStorage(Storage):
    """In-memory Storage with the same uniqueness rules as SQLite."""

    def __init__(self):
        self.feeds: Dict[int, Feed] = {}
        self.posts: List[Post] = []
        self.mark_calls: List[int] = []
        self.fail_links: set = set()
        self.fail_next_feeds = False
        self._next_id = 1
        self._lock = asyncio.Lock()

    def add_feed(self, url: str, name: str = "", last_fetched_at: Optional[datetime] = None) -> Feed:
        feed = Feed(id=self._next_id, url=url, name=name or url, last_fetched_at=last_fetched_at)
        self.feeds[feed.id] = feed
        self._next_id += 1
        return feed

    async def next_feeds_to_fetch(self, limit: int) -> List[Feed]:
        if self.fail_next_feeds:
            raise StorageError("database is locked")
        never = [f for f in self.feeds.values() if f.last_fetched_at is None]
        seen = sorted((f for f in self.feeds.values() if f.last_fetched_at is not None),
                      key=lambda f: f.last_fetched_at)
        return [Feed(**vars(f)) for f in (never + seen)[:limit]]

    async def mark_fetched(self, feed_id) -> None:
        async with self._lock:
            self.mark_calls.append(feed_id)
            feed = self.feeds[feed_id]
            now = datetime.now(timezone.utc)
            if feed.last_fetched_at is None or now > feed.last_fetched_at:
                feed.last_fetched_at = now

    async def insert_post(self, post: Post) -> int:
        async with self._lock:
            if post.url in self.fail_links:
                raise StorageError("disk I/O error")
            if any(p.url == post.url for p in self.posts):
                raise DuplicateLinkError(post.url)
            post.id = len(self.posts) + 1
            self.posts.append(post)
            return post.id

    async def register_feed(self, url: str, name: str, user_id: str) -> Feed:
        for feed in self.feeds.values():
            if feed.url == url:
                return feed
        feed = self.add_feed(url, name)
        feed.user_id = user_id
        return feed

    async def get_feed(self, feed_id) -> Optional[Feed]:
        return self.feeds.get(feed_id)

    async def list_feeds(self) -> List[Feed]:
        return list(self.feeds.values())

    async def list_posts(self, feed_id=None, user_id=None, limit: int = 10) -> List[Post]:
        posts = [p for p in self.posts if feed_id is None or p.feed_id == feed_id]
        if user_id is not None:
            posts = [p for p in posts if self.feeds[p.feed_id].user_id == user_id]
        return sorted(posts, key=lambda p: p.published_at, reverse=True)[:limit]

    async def count_posts(self, feed_id=None) -> int:
        return len([p for p in self.posts if feed_id is None or p.feed_id == feed_id])

    def links_for(self, feed_id) -> List[str]:
        return [p.url for p in self.posts if p.feed_id == feed_id]


class StaticFeedSource(FeedSource):
    """Serves canned payloads or errors per URL and records every request."""

    def __init__(self, payloads: Optional[Dict[str, object]] = None, delay: float = 0.0):
        self.payloads: Dict[str, object] = dict(payloads or {})
        self.requests: List[str] = []
        self.delay = delay

    async def get(self, url: str) -> bytes:
        self.requests.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        payload = self.payloads.get(url)
        if payload is None:
            raise FetchConnectionError("connection refused", url=url)
        if isinstance(payload, Exception):
            raise payload
        return payload


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def source():
    return StaticFeedSource()
