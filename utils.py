#!/usr/bin/env python3
"""
Utility classes and functions for the feed synchronization engine.

This module contains shared helpers used by the fetcher, reconciler and
scheduler: retry delay computation, date parsing, HTML sanitizing, snippet
generation and search tokenization.
"""

from asyncio import sleep
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from html import escape
from calendar import timegm
from typing import Any, List, Optional
from urllib.parse import urlsplit
import re

import feedparser
from bs4 import BeautifulSoup

from config import config, get_logger

# Module-specific logger
logger = get_logger("utils")

ALLOWED_TAGS = frozenset([
    'b', 'i', 'em', 'strong', 'a', 'p', 'br', 'ul', 'ol', 'li',
    'blockquote', 'img', 'h1', 'h2', 'h3', 'h4', 'code', 'pre',
])
ALLOWED_ATTRS = frozenset(['href', 'src', 'alt', 'title', 'class', 'target'])
# Dropped together with their contents; other disallowed tags are unwrapped
DROPPED_TAGS = (
    "script", "style", "iframe", "form", "object", "embed", "noscript",
    "frame", "frameset", "applet", "meta", "base", "link", "head", "template",
)

STOP_WORDS = frozenset("""
a about above after again against all am an and any are as at be because been
before being below between both but by can could did do does doing down during
each few for from further had has have having he her here hers herself him
himself his how i if in into is it its itself just me more most my myself no nor
not now of off on once only or other our ours ourselves out over own same she
should so some such than that the their theirs them themselves then there these
they this those through to too under until up very was we were what when where
which while who whom why will with would you your yours yourself yourselves
""".split())


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
        """Calculate the delay for a given retry attempt.

        Args:
            attempt: The current attempt number (0-based)

        Returns:
            Delay in seconds (with exponential backoff)
        """
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt.

        Args:
            attempt: The current attempt number (0-based)
        """
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL."""
    if not url or not isinstance(url, str):
        return False

    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return False
    return parts.scheme in ('http', 'https') and bool(parts.hostname)


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 23m 45s")."""
    if seconds < 0:
        return "0s"

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


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Cut text to max_length characters and append suffix when anything was cut."""
    if not text or len(text) <= max_length:
        return text
    return text[:max_length] + suffix


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def parse_timestamp(value: Any) -> Optional[float]:
    """Convert a feed date string to a Unix timestamp, or None if unparseable.

    Tries ISO 8601 first (relay isoDate), then feedparser's lenient date
    handlers, then RFC 2822.
    """
    if value in (None, ''):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    if not isinstance(value, str):
        return None

    date_str = value.strip()
    try:
        dt = datetime.fromisoformat(date_str.replace('Z', '+00:00'))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    except ValueError:
        pass

    try:
        time_struct = feedparser._parse_date(date_str)
        if time_struct:
            # feedparser returns a UTC struct_time
            return float(timegm(time_struct))
    except (ValueError, TypeError, AttributeError, OverflowError, OSError):
        pass

    try:
        dt = parsedate_to_datetime(date_str)
        if dt:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.timestamp()
    except (TypeError, ValueError, OverflowError):
        pass

    return None


def sanitize_html(html_content: Optional[str]) -> str:
    """Restrict HTML to the allow-listed tags and attributes.

    Dangerous elements are removed with their contents, other unknown tags are
    unwrapped, and javascript: URLs are stripped. Never raises: if parsing
    fails the input is returned fully escaped.
    """
    if not html_content:
        return ""

    try:
        soup = BeautifulSoup(html_content, 'html.parser')

        for tag in soup(DROPPED_TAGS):
            tag.decompose()

        for tag in soup.find_all(True):
            if tag.name not in ALLOWED_TAGS:
                tag.unwrap()
                continue
            for attr in list(tag.attrs):
                if attr.lower() not in ALLOWED_ATTRS:
                    del tag[attr]
                elif attr.lower() in ('href', 'src'):
                    val = str(tag[attr]).strip().lower()
                    if val.startswith(('javascript:', 'vbscript:', 'data:text/html')):
                        del tag[attr]

        return str(soup)
    except Exception as e:
        logger.warning(f"Sanitizer failed, escaping content instead: {e}")
        return escape(html_content)


def strip_tags(html_content: Optional[str]) -> str:
    if not html_content:
        return ""
    return re.sub(r'<[^>]*>?', '', html_content)


def make_snippet(html_content: Optional[str], length: Optional[int] = None) -> str:
    """Plain-text preview of sanitized content."""
    limit = length if length is not None else config.SNIPPET_LENGTH
    return truncate_string(strip_tags(html_content), limit)


def tokenize(text: Optional[str], min_length: Optional[int] = None) -> List[str]:
    """Search tokens for text that may contain HTML.

    Lower-cased, split on anything that is not a letter or digit, stop words
    and short words removed, de-duplicated in first-occurrence order.
    """
    if not text:
        return []
    minimum = min_length if min_length is not None else config.MIN_WORD_LENGTH

    if '<' in text:
        try:
            text = BeautifulSoup(text, 'html.parser').get_text(' ')
        except Exception as e:
            logger.debug(f"Falling back to regex tag stripping for tokenization: {e}")
            text = strip_tags(text)

    tokens: List[str] = []
    seen = set()
    for word in re.split(r'[\W_]+', text.lower()):
        if len(word) < minimum or word in STOP_WORDS or word in seen:
            continue
        seen.add(word)
        tokens.append(word)
    return tokens
