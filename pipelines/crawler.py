"""Page fetcher for DocScout.

Fetches single pages over HTTP with retry, backoff and per-host rate limiting, and
hands the body to the content parsers.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

import aiohttp

from indexer.errors import HttpStatusError
from .parsers import DEFAULT_MAX_HEADINGS, ParsedPage, parse_content

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "DocScoutBot/0.1"
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
TEXTUAL_CONTENT_TYPES = ("text/", "application/xhtml", "application/xml", "application/json", "markdown")


def _is_textual(content_type: str) -> bool:
    lowered = (content_type or "").lower()
    return not lowered or any(marker in lowered for marker in TEXTUAL_CONTENT_TYPES)


@dataclass
class FetchResult:
    """Result of fetching a single URL."""
    url: str
    status_code: int
    content: str = ""
    content_type: str = ""
    final_url: Optional[str] = None  # After redirects
    retry_count: int = 0
    response_time: Optional[float] = None


class PageFetcher:
    """Asynchronous HTTP fetcher with retry and rate limiting."""

    def __init__(self,
                 user_agent: str = DEFAULT_USER_AGENT,
                 request_timeout: float = 30,
                 max_retries: int = 2,
                 retry_delay: float = 1.0,
                 max_retry_delay: float = 30.0,
                 rate_limit: float = 0.0,
                 max_connections: int = 10,
                 max_headings: int = DEFAULT_MAX_HEADINGS):
        """Initialize fetcher.

        Args:
            user_agent: Default User-Agent header
            request_timeout: Total request timeout in seconds
            max_retries: Maximum number of retry attempts
            retry_delay: Base delay between retries (seconds)
            max_retry_delay: Maximum delay between retries (seconds)
            rate_limit: Minimum seconds between requests to the same host (0 disables)
            max_connections: Connection pool size
            max_headings: Heading cap passed to the HTML parser
        """
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.rate_limit = rate_limit
        self.max_connections = max_connections
        self.max_headings = max_headings
        self.session: Optional[aiohttp.ClientSession] = None

        # Rate limiting
        self.last_request_time: Dict[str, float] = {}

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self):
        """Create the HTTP session if needed."""
        if self.session is None or self.session.closed:
            connector = aiohttp.TCPConnector(limit=self.max_connections)
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout,
                headers={"User-Agent": self.user_agent},
            )

    async def close(self):
        """Close the fetcher session."""
        if self.session:
            await self.session.close()
            self.session = None

    def _get_domain(self, url: str) -> str:
        return urlparse(url).netloc

    async def _respect_rate_limit(self, url: str):
        if self.rate_limit <= 0:
            return
        domain = self._get_domain(url)

        if domain in self.last_request_time:
            elapsed = time.monotonic() - self.last_request_time[domain]
            if elapsed < self.rate_limit:
                sleep_time = self.rate_limit - elapsed
                logger.debug(f"Rate limiting {domain}: sleeping {sleep_time:.2f}s")
                await asyncio.sleep(sleep_time)

        self.last_request_time[domain] = time.monotonic()

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        base_delay = self.retry_delay * (2 ** attempt)
        jitter = random.uniform(0.1, 0.3) * base_delay
        return min(base_delay + jitter, self.max_retry_delay)

    def _is_retryable_error(self, exception: Optional[Exception], status_code: Optional[int] = None) -> bool:
        if status_code and status_code in RETRYABLE_STATUS_CODES:
            return True

        if isinstance(exception, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
            return True

        # Retry on connection errors, but not on client errors like invalid URLs
        return isinstance(exception, (aiohttp.ClientConnectionError,
                                      aiohttp.ServerDisconnectedError))

    async def fetch(self, url: str, user_agent: Optional[str] = None) -> FetchResult:
        """Fetch a single URL.

        Args:
            url: Absolute http(s) URL
            user_agent: Overrides the session User-Agent for this request

        Returns:
            FetchResult for a 2xx response

        Raises:
            HttpStatusError: Non-2xx response after retries
            aiohttp.ClientError / asyncio.TimeoutError: Network failure after retries
        """
        await self.open()
        start_time = time.monotonic()
        headers = {"User-Agent": user_agent} if user_agent else None

        for attempt in range(self.max_retries + 1):
            try:
                await self._respect_rate_limit(url)
                logger.debug(f"Fetching {url} (attempt {attempt + 1}/{self.max_retries + 1})")

                async with self.session.get(url, headers=headers, allow_redirects=True) as response:
                    if self._is_retryable_error(None, response.status) and attempt < self.max_retries:
                        delay = self._calculate_retry_delay(attempt)
                        logger.warning(f"Retryable status {response.status} for {url}, "
                                       f"retrying in {delay:.2f}s (attempt {attempt + 1}/{self.max_retries + 1})")
                        await asyncio.sleep(delay)
                        continue

                    if not 200 <= response.status < 300:
                        raise HttpStatusError(response.status, url)

                    content_type = response.headers.get("content-type", "")
                    # Binary bodies are not parsed
                    content = await response.text(errors="replace") if _is_textual(content_type) else ""
                    return FetchResult(
                        url=url,
                        status_code=response.status,
                        content=content,
                        content_type=content_type,
                        final_url=str(response.url),
                        retry_count=attempt,
                        response_time=time.monotonic() - start_time,
                    )

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                if attempt < self.max_retries and self._is_retryable_error(e):
                    delay = self._calculate_retry_delay(attempt)
                    logger.warning(f"Error fetching {url}: {e!r}, retrying in {delay:.2f}s "
                                   f"(attempt {attempt + 1}/{self.max_retries + 1})")
                    await asyncio.sleep(delay)
                    continue
                logger.warning(f"Failed to fetch {url} after {attempt + 1} attempts: {e!r}")
                raise

        # Every attempt returns, raises or retries
        raise HttpStatusError(0, url)

    async def fetch_and_parse(self, url: str, user_agent: Optional[str] = None) -> Tuple[FetchResult, ParsedPage]:
        """Fetch a page and dispatch it to the Markdown, HTML or raw-text parser."""
        result = await self.fetch(url, user_agent=user_agent)
        page = parse_content(url, result.content, result.content_type, self.max_headings)
        return result, page
