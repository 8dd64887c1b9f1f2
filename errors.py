#!/usr/bin/env python3
"""Common error types shared across modules.

Fetch failures are split into transient errors (worth retrying against the
same candidate URL) and structural errors (abandon the candidate at once).
Lives in its own module to avoid circular imports.
"""

from typing import Optional


class FeedSyncError(Exception):
    """Base class for all synchronization errors."""


class FetchError(FeedSyncError):
    """A single relay request failed.

    Attributes:
        url: The candidate feed URL that was being fetched.
        retryable: Whether another attempt on the same candidate may succeed.
    """

    retryable = False

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class TransientFetchError(FetchError):
    """Network-level failure that may go away on retry."""

    retryable = True


class HttpStatusError(TransientFetchError):
    """The relay answered with a non-2xx status."""

    def __init__(self, status: int, url: Optional[str] = None):
        super().__init__(f"HTTP {status}", url)
        self.status = status


class FetchTimeoutError(TransientFetchError):
    """The relay did not answer within the configured timeout."""


class NetworkError(TransientFetchError):
    """Connection to the relay failed before a response arrived."""


class StructuralFetchError(FetchError):
    """The response arrived but is not usable feed data."""


class WrongContentError(StructuralFetchError):
    """The relay returned an HTML page instead of feed JSON."""


class FeedParseError(StructuralFetchError):
    """The relay response body could not be decoded as feed JSON."""


class ProxyNotConfiguredError(FeedSyncError):
    """No feed relay endpoint is configured."""


class FeedAlreadySubscribedError(FeedSyncError):
    """A feed with the same subscription URL already exists."""

    def __init__(self, url: str, feed_id: int):
        super().__init__(f"Already subscribed to {url} (feed {feed_id})")
        self.url = url
        self.feed_id = feed_id


class InvalidFeedUrlError(FeedSyncError):
    """A subscription URL is not an absolute http(s) URL."""


class StoreError(FeedSyncError):
    """A database operation failed inside the store worker."""


__all__ = [
    "FeedSyncError",
    "FetchError",
    "TransientFetchError",
    "HttpStatusError",
    "FetchTimeoutError",
    "NetworkError",
    "StructuralFetchError",
    "WrongContentError",
    "FeedParseError",
    "ProxyNotConfiguredError",
    "FeedAlreadySubscribedError",
    "InvalidFeedUrlError",
    "StoreError",
]
