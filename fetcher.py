#!/usr/bin/env python3
"""
HTTP retrieval for pages and feeds.

PageFetcher performs a single GET per call with a browser-like identity, a
bounded timeout and a redirect cap. Transport problems are classified into
FetchError values and returned, never raised, and nothing is retried.
"""

from asyncio import Semaphore, TimeoutError
from typing import List, Optional, Union

from aiohttp import (
    ClientConnectionError,
    ClientError,
    ClientResponseError,
    ClientSession,
    ClientTimeout,
)

from config import config, get_logger
from errors import FetchError, FetchErrorKind
from models import FetchResult
from telemetry import MetricsSink, NullMetrics, trace_span
from utils import RateLimiter, validate_url

logger = get_logger("fetcher")

PAGE_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8"
FEED_ACCEPT = "application/rss+xml,application/atom+xml,application/xml;q=0.9,text/xml;q=0.9,*/*;q=0.8"

FetchOutcome = Union[FetchResult, FetchError]


class PageFetcher:
    """Fetches documents over a shared aiohttp session.

    All requests go through a semaphore of ``concurrency`` slots; page
    requests additionally wait on a per-minute rate limiter. The session is
    created on ``start()`` (or ``async with``) unless one is injected, in which
    case the caller owns it.
    """

    def __init__(
        self,
        session: Optional[ClientSession] = None,
        *,
        concurrency: Optional[int] = None,
        requests_per_minute: Optional[int] = None,
        metrics: Optional[MetricsSink] = None,
    ) -> None:
        self.session = session
        self._owns_session = session is None
        self._semaphore = Semaphore(concurrency or config.FETCH_CONCURRENCY)
        rpm = config.PAGE_REQUESTS_PER_MINUTE if requests_per_minute is None else requests_per_minute
        self._rate_limiter = RateLimiter(rpm)
        self.metrics = metrics or NullMetrics()
        self.request_count = 0

    async def __aenter__(self) -> "PageFetcher":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        if self.session is None:
            self.session = ClientSession()
            self._owns_session = True

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None

    def _headers(self, accept: Optional[str]) -> dict:
        return {
            "User-Agent": config.USER_AGENT,
            "Accept": accept or PAGE_ACCEPT,
            "Accept-Language": config.ACCEPT_LANGUAGE,
        }

    @trace_span(
        "fetcher.fetch",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, timeout=None, accept=None: {"http.url": url},
    )
    async def fetch(self, url: str, timeout: Optional[float] = None, accept: Optional[str] = None) -> FetchOutcome:
        """Fetch a web page. Returns a FetchResult or a classified FetchError."""
        await self._rate_limiter.acquire()
        return await self._get(url, timeout or config.PAGE_FETCH_TIMEOUT, accept or PAGE_ACCEPT)

    @trace_span(
        "fetcher.fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, timeout=None: {"http.url": url},
    )
    async def fetch_feed(self, url: str, timeout: Optional[float] = None) -> FetchOutcome:
        """Fetch a syndication feed with the shorter feed timeout."""
        return await self._get(url, timeout or config.FEED_FETCH_TIMEOUT, FEED_ACCEPT)

    async def _get(self, url: str, timeout: float, accept: str) -> FetchOutcome:
        if not validate_url(url):
            return self._failed(FetchError(FetchErrorKind.UNKNOWN, url or "", f"Invalid URL: {url!r}"))

        await self.start()
        async with self._semaphore:
            self.request_count += 1
            try:
                async with self.session.get(
                    url,
                    headers=self._headers(accept),
                    timeout=ClientTimeout(total=timeout),
                    max_redirects=config.MAX_REDIRECTS,
                ) as response:
                    if not 200 <= response.status < 300:
                        return self._failed(FetchError(
                            FetchErrorKind.HTTP_STATUS, url, f"HTTP {response.status}", status=response.status
                        ))
                    text = await response.text(errors="replace")
                    return FetchResult(
                        url=str(response.url),
                        text=text,
                        content_type=response.headers.get("Content-Type", ""),
                        status=response.status,
                    )
            except TimeoutError:
                return self._failed(FetchError(FetchErrorKind.TIMEOUT, url, f"Timed out after {timeout}s"))
            except ClientResponseError as e:
                # Includes TooManyRedirects
                return self._failed(FetchError(
                    FetchErrorKind.HTTP_STATUS, url, self._format_client_error(e), status=e.status or None
                ))
            except ClientConnectionError as e:
                return self._failed(FetchError(FetchErrorKind.CONNECTION_FAILED, url, self._format_client_error(e)))
            except (ClientError, UnicodeDecodeError, LookupError, ValueError) as e:
                return self._failed(FetchError(FetchErrorKind.UNKNOWN, url, f"{e.__class__.__name__}: {e}"))

    def _failed(self, error: FetchError) -> FetchError:
        logger.warning(f"Fetch failed for {error.url}: {error.describe()}")
        self.metrics.increment("fetch.errors", kind=error.kind.value)
        return error

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status:
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
