#!/usr/bin/env python3
"""
HTTP retrieval of feed documents.

``FeedSource`` is the narrow contract the fetch worker uses: give it a URL,
get back the response body or a ``TransportError``. ``HttpFeedSource`` is the
aiohttp implementation, sharing one ``ClientSession`` across all workers.
"""

from abc import ABC, abstractmethod
from asyncio import TimeoutError
from typing import List, Optional

from aiohttp import ClientError, ClientResponseError, ClientSession, ClientTimeout, TooManyRedirects

from config import config, get_logger
from errors import FetchConnectionError, FetchTimeoutError, HTTPStatusError
from utils import RetryHelper

# Module-specific logger
logger = get_logger("source")

ACCEPT_HEADER = "application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.9, */*;q=0.8"


class FeedSource(ABC):
    @abstractmethod
    async def get(self, url: str) -> bytes:
        """Fetch ``url`` and return the response body.

        Raises:
            FetchTimeoutError, FetchConnectionError, HTTPStatusError
        """

    async def close(self) -> None:
        return None


def _format_client_error(error: ClientError) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        strerror = getattr(os_error, 'strerror', None)
        if errno is not None:
            parts.append(f"errno={errno}")
        if strerror:
            parts.append(str(strerror))
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


class HttpFeedSource(FeedSource):
    """aiohttp-backed ``FeedSource`` with a bounded timeout and retries.

    Timeouts and connection failures are retried with exponential backoff up
    to ``max_retries`` times; HTTP status errors are returned immediately.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay_base: Optional[float] = None,
        user_agent: Optional[str] = None,
        session: Optional[ClientSession] = None,
    ) -> None:
        self.timeout = ClientTimeout(total=timeout if timeout is not None else config.HTTP_TIMEOUT)
        self.max_retries = config.MAX_RETRIES if max_retries is None else max_retries
        self.retry_helper = RetryHelper(
            max_retries=self.max_retries,
            base_delay=config.RETRY_DELAY_BASE if retry_delay_base is None else retry_delay_base,
        )
        self.headers = {
            'User-Agent': user_agent or config.USER_AGENT,
            'Accept': ACCEPT_HEADER,
        }
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(headers=self.headers, timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "HttpFeedSource":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def get(self, url: str) -> bytes:
        session = await self._get_session()
        for attempt in range(self.max_retries + 1):
            try:
                async with session.get(
                    url,
                    headers=self.headers,
                    timeout=self.timeout,
                    max_redirects=config.MAX_REDIRECTS,
                ) as response:
                    if not 200 <= response.status < 300:
                        logger.warning(f"Error fetching {url}: HTTP {response.status}")
                        raise HTTPStatusError(response.status, url=url, reason=response.reason)
                    content = await response.read()
                    logger.debug(f"Fetched {len(content)} bytes from {url} (HTTP {response.status})")
                    return content

            except TimeoutError as e:
                logger.warning(
                    "Timeout fetching %s (attempt %d/%d, timeout=%ss)",
                    url,
                    attempt + 1,
                    self.max_retries + 1,
                    self.timeout.total,
                )
                if attempt < self.max_retries:
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise FetchTimeoutError(f"Timed out after {self.timeout.total}s", url=url) from e
            except TooManyRedirects as e:
                raise FetchConnectionError(f"Too many redirects: {_format_client_error(e)}", url=url) from e
            except ClientResponseError as e:
                raise HTTPStatusError(e.status, url=url, reason=e.message) from e
            except ClientError as e:
                detail = _format_client_error(e)
                if attempt < self.max_retries:
                    logger.warning(
                        "Retry %d/%d for %s due to error: %s",
                        attempt + 1,
                        self.max_retries,
                        url,
                        detail,
                    )
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise FetchConnectionError(detail, url=url) from e

        # range() always runs at least once; this only guards a negative max_retries
        raise FetchConnectionError("No fetch attempt was made", url=url)
