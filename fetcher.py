#!/usr/bin/env python3
"""
Relay-backed feed fetcher.

Feeds are never fetched directly: every request goes through a relay
endpoint (<relay>/api/fetch-feed?url=...) that downloads the feed, parses
RSS/Atom/RDF and answers with normalized JSON. This module issues those
relay requests with a timeout, classifies failures into retryable and
non-retryable errors, retries with exponential backoff, cycles through
alternate candidate URLs, and collapses concurrent requests for the same
canonical feed URL into one.
"""

from asyncio import Task, TimeoutError, create_task, shield
from json import loads, JSONDecodeError
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import (
    FeedParseError,
    FetchError,
    FetchTimeoutError,
    HttpStatusError,
    NetworkError,
    ProxyNotConfiguredError,
    WrongContentError,
)
from telemetry import init_telemetry, trace_span
from urls import build_feed_url_variants, normalize_feed_url
from utils import RetryHelper

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("feed-sync-fetcher")

RELAY_PATH = "/api/fetch-feed"
USER_AGENT = "Mozilla/5.0 (compatible; FeedSync/1.0)"


def looks_like_html(text: str, content_type: Optional[str]) -> bool:
    """True when a relay answer is an HTML page rather than feed JSON."""
    if content_type and 'text/html' in content_type.lower():
        return True
    head = text.lstrip("\ufeff \t\r\n")[:64].lower()
    return head.startswith('<!doctype') or head.startswith('<html')


class ProxyFetchClient:
    """Issues a single relay request for one candidate feed URL."""

    def __init__(self, proxy_base: Optional[str] = None, timeout: Optional[float] = None,
                 cache_max_age: Optional[int] = None) -> None:
        base = proxy_base if proxy_base is not None else config.FEED_PROXY_BASE
        self.proxy_base = (base or "").strip().rstrip('/')
        self.timeout = timeout if timeout is not None else config.FETCH_TIMEOUT
        self.cache_max_age = cache_max_age if cache_max_age is not None else config.CACHE_MAX_AGE

    def build_proxy_url(self, target_url: str, force_refresh: bool = False) -> str:
        """Relay URL for target_url.

        Raises:
            ProxyNotConfiguredError: if no relay base is configured.
        """
        if not self.proxy_base:
            raise ProxyNotConfiguredError("No feed relay configured (FEED_PROXY_BASE or proxy.url in feeds.yaml)")
        params = {'url': target_url}
        if force_refresh:
            params['refresh'] = 'true'
        return f"{self.proxy_base}{RELAY_PATH}?{urlencode(params)}"

    def _request_headers(self, force_refresh: bool) -> Dict[str, str]:
        headers = {'User-Agent': USER_AGENT, 'Accept': 'application/json'}
        if force_refresh:
            headers['Cache-Control'] = 'no-cache'
        else:
            headers['Cache-Control'] = f'max-age={self.cache_max_age}'
        return headers

    @trace_span(
        "relay_request",
        tracer_name="fetcher",
        attr_from_args=lambda self, session, target_url, force_refresh=False: {
            "feed.url": target_url,
            "feed.force_refresh": bool(force_refresh),
        },
    )
    async def request(self, session: ClientSession, target_url: str, force_refresh: bool = False) -> Dict[str, Any]:
        """Fetch target_url through the relay and return the decoded feed JSON.

        Raises:
            HttpStatusError: relay answered with a non-2xx status (retryable).
            FetchTimeoutError: no answer within the timeout (retryable).
            NetworkError: connection-level failure (retryable).
            WrongContentError: relay answered with an HTML page (not retryable).
            FeedParseError: body is undecodable or not a JSON object (not retryable).
        """
        proxy_url = self.build_proxy_url(target_url, force_refresh)
        try:
            async with session.get(
                proxy_url,
                headers=self._request_headers(force_refresh),
                timeout=ClientTimeout(total=self.timeout),
            ) as response:
                if not 200 <= response.status < 300:
                    raise HttpStatusError(response.status, target_url)
                content_type = response.headers.get('Content-Type')
                try:
                    text = await response.text()
                except UnicodeDecodeError as e:
                    raise FeedParseError(f"Relay returned undecodable body: {e}", target_url) from e
        except TimeoutError as e:
            raise FetchTimeoutError(f"Timed out after {self.timeout:g}s", target_url) from e
        except ClientError as e:
            raise NetworkError(f"Network error: {_format_client_error(e)}", target_url) from e

        if looks_like_html(text, content_type):
            raise WrongContentError("Relay returned HTML (feed relay likely missing or misconfigured)", target_url)

        try:
            data = loads(text)
        except (JSONDecodeError, ValueError) as e:
            raise FeedParseError(f"Relay returned invalid JSON: {e}", target_url) from e
        if not isinstance(data, dict):
            raise FeedParseError("Relay returned JSON that is not a feed object", target_url)
        return data


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


class FeedFetcher:
    """Retrying fetcher with candidate cycling and in-flight request dedup.

    One instance is meant to live for the whole process: its in-flight map
    guarantees at most one concurrent relay fetch per canonical feed URL.
    """

    def __init__(self, client: Optional[ProxyFetchClient] = None, max_retries: Optional[int] = None,
                 backoff_base: Optional[float] = None) -> None:
        self.client = client or ProxyFetchClient()
        self.max_retries = config.MAX_FETCH_RETRIES if max_retries is None else max_retries
        base = config.RETRY_BACKOFF_BASE if backoff_base is None else backoff_base
        # No cap beyond the attempt bound itself
        self.retry_helper = RetryHelper(max_retries=self.max_retries, base_delay=base, max_delay=float('inf'))
        self._in_flight: Dict[str, Task] = {}

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, session, max_retries=None, force_refresh=False: {
            "feed.url": url,
            "feed.force_refresh": bool(force_refresh),
        },
    )
    async def fetch(self, url: str, session: ClientSession, max_retries: Optional[int] = None,
                    force_refresh: bool = False) -> Dict[str, Any]:
        """Fetch a feed through the relay, returning its JSON payload.

        A non-forced call for a canonical URL that is already being fetched
        waits for that request instead of issuing a new one.
        """
        key = normalize_feed_url(url)
        if not force_refresh:
            pending = self._in_flight.get(key)
            if pending is not None:
                logger.debug(f"Joining in-flight request for {key}")
                return await shield(pending)

        retries = self.max_retries if max_retries is None else max_retries
        task = create_task(self._fetch_candidates(url, session, retries, force_refresh))
        self._in_flight[key] = task
        task.add_done_callback(lambda done, key=key: self._settle(key, done))
        return await shield(task)

    def _settle(self, key: str, task: Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # Retrieve the exception so an unjoined failure is not reported as never retrieved
        if not task.cancelled():
            task.exception()

    async def _fetch_candidates(self, url: str, session: ClientSession, max_retries: int,
                                force_refresh: bool) -> Dict[str, Any]:
        last_error: Optional[Exception] = None
        candidates = build_feed_url_variants(url)

        for candidate in candidates:
            for attempt in range(max_retries + 1):
                try:
                    data = await self.client.request(session, candidate, force_refresh)
                    if candidate != candidates[0]:
                        logger.info(f"Fetched {url} via alternate URL {candidate}")
                    return data
                except FetchError as e:
                    last_error = e
                    if e.retryable and attempt < max_retries:
                        logger.warning(
                            f"Retry {attempt + 1}/{max_retries} for {candidate} due to error: {e}"
                        )
                        await self.retry_helper.sleep_for_attempt(attempt)
                        continue
                    if not e.retryable:
                        logger.warning(f"Abandoning candidate {candidate}: {e}")
                    break

        logger.error(f"Failed to fetch {url} after {max_retries + 1} attempts per candidate: {last_error}")
        raise last_error
