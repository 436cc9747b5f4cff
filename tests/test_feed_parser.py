from datetime import datetime, timezone
import time

import pytest

from errors import DateParseError, MalformedFeedError
from feed_parser import normalize_entry_identity, parse_feed, parse_pub_date
from conftest import item, rss


def test_single_entry():
    parsed = parse_feed(rss(item(
        "Hello",
        "https://x/1",
        "Wed, 05 Jun 2024 00:00:00 +0000",
    )))

    assert len(parsed) == 1
    entry = parsed.entries[0]
    assert entry.title == "Hello"
    assert entry.link == "https://x/1"
    assert entry.published_at == datetime(2024, 6, 5, tzinfo=timezone.utc)
    assert parsed.version == "rss20"
    assert parsed.title == "Test Feed"
    assert parsed.warnings == ()


def test_entries_keep_document_order():
    parsed = parse_feed(rss(
        item("First", "https://x/1"),
        item("Second", "https://x/2"),
        item("Third", "https://x/3"),
    ))

    assert [e.link for e in parsed] == ["https://x/1", "https://x/2", "https://x/3"]


def test_bad_date_drops_only_that_entry():
    parsed = parse_feed(rss(
        item("One", "https://x/1"),
        item("Two", "https://x/2", pub_date="sometime last week"),
        item("Three", "https://x/3"),
    ))

    assert [e.title for e in parsed] == ["One", "Three"]
    assert len(parsed.warnings) == 1
    assert "sometime last week" in parsed.warnings[0]


def test_missing_date_and_missing_link_are_dropped():
    parsed = parse_feed(rss(
        item("Undated", "https://x/1", pub_date=None),
        "<item><title>Linkless</title><pubDate>Wed, 05 Jun 2024 00:00:00 +0000</pubDate></item>",
        item("Good", "https://x/3"),
    ))

    assert [e.title for e in parsed] == ["Good"]
    assert len(parsed.warnings) == 2


def test_offset_is_normalized_to_utc():
    parsed = parse_feed(rss(item("Tz", "https://x/1", "Wed, 05 Jun 2024 12:00:00 +0200")))

    published = parsed.entries[0].published_at
    assert published == datetime(2024, 6, 5, 10, 0, tzinfo=timezone.utc)
    assert published.utcoffset().total_seconds() == 0


def test_atom_feed_with_rfc3339_dates():
    atom = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom Test</title>
  <id>urn:test</id>
  <updated>2024-06-05T10:00:00Z</updated>
  <entry>
    <title>Atom entry</title>
    <link href="https://example.com/atom/1"/>
    <id>urn:test:1</id>
    <updated>2024-06-05T10:00:00Z</updated>
    <summary>Short summary</summary>
  </entry>
</feed>"""

    parsed = parse_feed(atom)

    assert parsed.version.startswith("atom")
    assert len(parsed) == 1
    entry = parsed.entries[0]
    assert entry.link == "https://example.com/atom/1"
    assert entry.published_at == datetime(2024, 6, 5, 10, 0, tzinfo=timezone.utc)
    assert entry.description == "Short summary"


def test_description_is_kept_and_missing_description_is_none():
    parsed = parse_feed(rss(
        item("With", "https://x/1", description="&lt;p&gt;Hello&lt;/p&gt;"),
        item("Without", "https://x/2"),
    ))

    assert parsed.entries[0].description == "<p>Hello</p>"
    assert parsed.entries[1].description is None


def test_empty_channel_is_not_an_error():
    parsed = parse_feed(rss())

    assert len(parsed) == 0
    assert parsed.warnings == ()


@pytest.mark.parametrize("payload", [
    b"this is not a feed at all",
    b"<html><body><p>Not found</p></body></html>",
    b'<?xml version="1.0"?><rss version="2.0"><channel><title>cut</title><item><title>a',
    b"",
])
def test_malformed_payloads_raise(payload):
    with pytest.raises(MalformedFeedError):
        parse_feed(payload)


@pytest.mark.parametrize("value,expected", [
    ("Sat, 15 Nov 2025 16:00:00 +0000", datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc)),
    ("17 Nov 2025 00:00:00 +0000", datetime(2025, 11, 17, tzinfo=timezone.utc)),
    ("Wed, 05 Jun 2024 12:00:00 GMT", datetime(2024, 6, 5, 12, 0, tzinfo=timezone.utc)),
    ("2024-06-05T10:00:00.250+00:00", datetime(2024, 6, 5, 10, 0, 0, 250000, tzinfo=timezone.utc)),
    ("Wed, 05 Jun 2024 12:00:00 EST", datetime(2024, 6, 5, 17, 0, tzinfo=timezone.utc)),
])
def test_parse_pub_date_formats(value, expected):
    assert parse_pub_date(value) == expected


@pytest.mark.parametrize("value", [None, "", "   ", "yesterday"])
def test_parse_pub_date_rejects(value):
    with pytest.raises(DateParseError):
        parse_pub_date(value)


def test_normalize_entry_identity_basic():
    title, link = normalize_entry_identity(
        "  Example Title  ",
        "https://example.com/a/very/long/path" + "?" + "x" * 2050,
    )
    assert title == "Example Title"
    assert len(link) == 2048
    assert link.startswith("https://example.com/a/very/long/path?")


def test_normalize_entry_identity_defaults():
    assert normalize_entry_identity(None, None) == ("No Title", "")
    assert normalize_entry_identity("   ", " http://example.com ") == ("No Title", "http://example.com")


@pytest.fixture
def new_york_local_time(monkeypatch):
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset is not available on this platform")
    monkeypatch.setenv("TZ", "EST5EDT,M3.2.0,M11.1.0")
    time.tzset()
    if time.tzname[0] != "EST":
        monkeypatch.undo()
        time.tzset()
        pytest.skip("POSIX TZ rules are not honoured on this platform")
    yield
    monkeypatch.undo()
    time.tzset()


@pytest.mark.parametrize("value,expected", [
    ("Wed, 05 Jun 2024 12:00:00 EST", datetime(2024, 6, 5, 17, 0, tzinfo=timezone.utc)),
    ("Wed, 05 Jun 2024 12:00:00 EDT", datetime(2024, 6, 5, 16, 0, tzinfo=timezone.utc)),
    ("Wed, 05 Jun 2024 12:00:00 GMT", datetime(2024, 6, 5, 12, 0, tzinfo=timezone.utc)),
    ("05 Jun 2024 12:00:00 UTC", datetime(2024, 6, 5, 12, 0, tzinfo=timezone.utc)),
])
def test_zone_names_do_not_depend_on_host_timezone(new_york_local_time, value, expected):
    assert parse_pub_date(value) == expected
