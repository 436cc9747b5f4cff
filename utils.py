#!/usr/bin/env python3
"""
Utility classes and functions for the feed scraper.

This module contains shared utilities used by the HTTP source, the fetch
worker and the scheduler: retry backoff, URL validation, duration formatting
and HTML sanitization for post descriptions.
"""

from asyncio import sleep
from typing import Optional
import re

from bs4 import BeautifulSoup

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

# Elements that never belong in a stored description
UNSAFE_TAGS = [
    "script", "style", "iframe", "form", "object", "embed", "noscript",
    "frame", "frameset", "applet", "meta", "base", "link",
]


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    return url.startswith(('http://', 'https://')) and '.' in url


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Sub-second durations are shown in milliseconds, e.g. "340ms";
    longer ones as "1h 23m 45s".
    """
    if seconds < 0:
        return "0s"
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt (0-based)."""
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt."""
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)


def sanitize_html(html_content: Optional[str]) -> Optional[str]:
    """Strip dangerous markup from an entry description.

    Behavior:
    - Removes script/style/iframe and similar elements
    - Strips inline event handlers and javascript: URLs
    - Removes common tracking pixels
    - Plain text passes through unchanged
    """
    if html_content is None:
        return None
    if '<' not in html_content:
        return html_content

    soup = BeautifulSoup(html_content, 'html.parser')

    for tag in soup(UNSAFE_TAGS):
        tag.decompose()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith('on'):
                del tag[attr]
            elif attr.lower() in ('href', 'src'):
                if str(tag[attr]).strip().lower().startswith('javascript:'):
                    del tag[attr]

    for img in soup.find_all('img'):
        src = img.get('src', '')
        if re.search(r'(pixel|tracker|counter|spacer)', src, re.I) or img.get('height') in ('0', '1'):
            img.decompose()

    return str(soup).strip()
