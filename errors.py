#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class FeedError(Exception):
    """Base class for scraper errors."""


class TransportError(FeedError):
    """Raised when a feed cannot be retrieved over the network.

    Attributes:
        url: The feed URL that was requested.
    """

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class FetchTimeoutError(TransportError):
    """The request did not complete within the configured timeout."""


class FetchConnectionError(TransportError):
    """DNS, TCP, TLS or protocol failure before a response was received."""


class HTTPStatusError(TransportError):
    """The server answered with a non-2xx status."""

    def __init__(self, status: int, url: Optional[str] = None, reason: Optional[str] = None):
        message = f"HTTP {status}"
        if reason:
            message = f"{message} {reason}"
        super().__init__(message, url=url)
        self.status = status


class MalformedFeedError(FeedError):
    """Raised when a payload is not well-formed feed markup."""


class DateParseError(FeedError):
    """An entry's publish date matched none of the accepted formats."""

    def __init__(self, value: Optional[str], title: Optional[str] = None):
        label = f" for '{title}'" if title else ""
        super().__init__(f"Unparseable publish date {value!r}{label}")
        self.value = value


class StorageError(FeedError):
    """Raised when a storage operation fails."""


class DuplicateLinkError(StorageError):
    """A post with the same link already exists."""

    def __init__(self, url: str):
        super().__init__(f"Post already stored: {url}")
        self.url = url


__all__ = [
    "FeedError",
    "TransportError",
    "FetchTimeoutError",
    "FetchConnectionError",
    "HTTPStatusError",
    "MalformedFeedError",
    "DateParseError",
    "StorageError",
    "DuplicateLinkError",
]
