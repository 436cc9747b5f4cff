#!/usr/bin/env python3
"""
Feed payload parsing.

Turns the raw bytes of an RSS/Atom document into an immutable ``ParsedFeed``:
an ordered tuple of ``ParsedEntry`` objects with UTC publish times. Parsing is
pure: no network or database access happens here, so it is safe to run in a
worker thread.

Entries are dropped (with a warning recorded on the result) rather than failing
the whole feed when their publish date cannot be understood or they have no
link. Only a payload that is not recognisable feed markup raises
``MalformedFeedError``.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, List, Optional, Tuple
from xml.sax import SAXParseException
import io

import feedparser

from config import get_logger
from errors import DateParseError, MalformedFeedError

# Module-specific logger
logger = get_logger("parser")

# Tried in order, first match wins
ACCEPTED_DATE_FORMATS = (
    "%a, %d %b %Y %H:%M:%S %z",   # RFC 1123, numeric zone
    "%a, %d %b %Y %H:%M:%S GMT",  # RFC 1123, literal GMT/UTC only
    "%a, %d %b %Y %H:%M:%S UTC",
    "%d %b %Y %H:%M:%S %z",       # RFC 822 without weekday
    "%d %b %Y %H:%M:%S GMT",
    "%d %b %Y %H:%M:%S UTC",
    "%Y-%m-%dT%H:%M:%S%z",        # RFC 3339 (Atom)
    "%Y-%m-%dT%H:%M:%S.%f%z",
)

MAX_TITLE_LENGTH = 255
MAX_LINK_LENGTH = 2048
DEFAULT_TITLE = "No Title"

# Options passed to feedparser; description sanitization happens at ingest time
FEEDPARSER_OPTIONS = {
    'sanitize_html': False,
    'resolve_relative_uris': False,
}


@dataclass(frozen=True)
class ParsedEntry:
    """One normalized item from a feed."""
    title: str
    link: str
    published_at: datetime
    description: Optional[str] = None


@dataclass(frozen=True)
class ParsedFeed:
    """Entries in document order plus diagnostics about dropped items."""
    entries: Tuple[ParsedEntry, ...] = ()
    warnings: Tuple[str, ...] = ()
    version: str = ""
    title: Optional[str] = None

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_pub_date(value: Optional[str]) -> datetime:
    """Parse a feed date string into an aware UTC datetime.

    Raises:
        DateParseError: if the value matches none of the accepted formats.
    """
    if not value or not value.strip():
        raise DateParseError(value)
    text = " ".join(value.split())

    for fmt in ACCEPTED_DATE_FORMATS:
        try:
            return _to_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue

    # Lenient RFC 2822 pass for obsolete zone names (EST, PDT, ...)
    try:
        dt = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        dt = None
    if dt is not None:
        return _to_utc(dt)

    raise DateParseError(value)


def normalize_entry_identity(title: Optional[str], link: Optional[str]) -> Tuple[str, str]:
    """Apply the same trimming and length limits that storage expects."""
    norm_title = (title or "").strip() or DEFAULT_TITLE
    norm_title = norm_title[:MAX_TITLE_LENGTH]
    norm_link = (link or "").strip()[:MAX_LINK_LENGTH]
    return norm_title, norm_link


def _entry_value(entry: Any, field_name: str) -> Any:
    getter = getattr(entry, 'get', None)
    if callable(getter):
        return getter(field_name)
    return getattr(entry, field_name, None)


def _entry_description(entry: Any) -> Optional[str]:
    summary = _entry_value(entry, 'summary')
    if summary is not None:
        return summary
    content = _entry_value(entry, 'content')
    if content:
        first = content[0]
        return _entry_value(first, 'value')
    return None


def _check_well_formed(result: Any) -> None:
    version = result.get('version') or ''
    exc = result.get('bozo_exception')
    if result.get('bozo') and isinstance(exc, SAXParseException):
        raise MalformedFeedError(f"Feed is not well-formed XML: {exc}")
    if not version:
        detail = f" ({exc})" if exc else ""
        raise MalformedFeedError(f"Payload is not a recognised RSS/Atom feed{detail}")


def parse_feed(raw: bytes) -> ParsedFeed:
    """Parse raw feed bytes into a ``ParsedFeed``.

    Raises:
        MalformedFeedError: when the payload is not well-formed feed markup.
    """
    if raw is None:
        raise MalformedFeedError("Empty payload")
    if isinstance(raw, str):
        raw = raw.encode('utf-8')

    # A file object keeps feedparser from treating the payload as a path or URL
    result = feedparser.parse(io.BytesIO(raw), **FEEDPARSER_OPTIONS)
    _check_well_formed(result)

    entries: List[ParsedEntry] = []
    warnings: List[str] = []
    for entry in result.get('entries', []):
        title, link = normalize_entry_identity(_entry_value(entry, 'title'), _entry_value(entry, 'link'))
        if not link:
            message = f"Entry '{title}' has no link; dropped"
            logger.warning(message)
            warnings.append(message)
            continue

        raw_date = _entry_value(entry, 'published') or _entry_value(entry, 'updated')
        try:
            published_at = parse_pub_date(raw_date)
        except DateParseError as e:
            message = f"{e}; entry '{title}' dropped"
            logger.warning(message)
            warnings.append(message)
            continue

        entries.append(ParsedEntry(
            title=title,
            link=link,
            published_at=published_at,
            description=_entry_description(entry),
        ))

    feed_meta = result.get('feed') or {}
    return ParsedFeed(
        entries=tuple(entries),
        warnings=tuple(warnings),
        version=result.get('version') or '',
        title=feed_meta.get('title'),
    )
