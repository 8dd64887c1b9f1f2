#!/usr/bin/env python3
"""
Feed URL normalization and candidate generation.

normalize_feed_url() produces the canonical form used as the key for
in-flight request dedup and per-feed backoff. build_feed_url_variants()
produces the ordered list of URLs the fetcher tries for one subscription.
None of the functions here raise on malformed input.
"""

from typing import Iterable, List, Optional
from urllib.parse import urlsplit, urlunsplit, urljoin, parse_qsl, urlencode

from config import get_logger

logger = get_logger("urls")

# Redirector hosts that serve an HTML landing page unless XML is requested
FEEDBURNER_HOSTS = ('feeds.feedburner.com', 'feedburner.google.com')


def _is_absolute(parts) -> bool:
    return bool(parts.scheme) and bool(parts.netloc)


def _canonical_path(parts) -> str:
    # WHATWG URLs always carry a path on http(s); "http://host" becomes "http://host/"
    if parts.scheme in ('http', 'https') and not parts.path:
        return '/'
    return parts.path


def _set_param(params: List[tuple], key: str, value: str) -> List[tuple]:
    """Set key in place (first occurrence), dropping duplicates; append if absent."""
    result = []
    seen = False
    for k, v in params:
        if k == key:
            if not seen:
                result.append((k, value))
                seen = True
            continue
        result.append((k, v))
    if not seen:
        result.append((key, value))
    return result


def normalize_feed_url(url: str) -> str:
    """Return the canonical form of a feed URL.

    Trims whitespace and, for FeedBurner hosts, forces XML output
    (format=xml, fmt=xml) and rewrites an empty path to /feeds/<host parts>.
    Unparseable input comes back trimmed but otherwise untouched.
    """
    trimmed = (url or "").strip()
    try:
        parts = urlsplit(trimmed)
        if not _is_absolute(parts):
            return trimmed
        scheme = parts.scheme.lower()
        host = (parts.hostname or "").lower()
        netloc = parts.netloc.lower() if '@' not in parts.netloc else parts.netloc
        path = _canonical_path(parts._replace(scheme=scheme))
        query = parts.query

        if host in FEEDBURNER_HOSTS:
            params = _set_param(parse_qsl(query, keep_blank_values=True), 'format', 'xml')
            if not any(k == 'fmt' for k, _ in params):
                params.append(('fmt', 'xml'))
            query = urlencode(params)
            if path in ('', '/'):
                path = '/feeds/' + '/'.join(reversed(host.split('.')))

        return urlunsplit((scheme, netloc, path, query, parts.fragment))
    except ValueError:
        return trimmed


def build_feed_url_variants(url: str) -> List[str]:
    """Ordered, duplicate-free candidate URLs for one subscription.

    Order is retry precedence: canonical form, trailing slashes stripped,
    then the canonical form with http/https flipped.
    """
    variants: List[str] = []

    def _add(candidate: str) -> None:
        if candidate and candidate not in variants:
            variants.append(candidate)

    normalized = normalize_feed_url(url)
    _add(normalized)
    _add(normalized.rstrip('/'))

    try:
        parts = urlsplit(normalized)
        if _is_absolute(parts) and parts.scheme in ('http', 'https'):
            flipped = 'http' if parts.scheme == 'https' else 'https'
            _add(urlunsplit((flipped,) + tuple(parts[1:])))
    except ValueError:
        logger.debug(f"Skipping protocol flip for malformed URL {normalized!r}")

    return variants


def resolve_url(candidate: Optional[str], bases: Iterable[Optional[str]]) -> str:
    """Resolve candidate to an absolute URL, trying each base in turn.

    Returns an empty string when nothing yields an absolute URL.
    """
    trimmed = (candidate or "").strip()
    if not trimmed:
        return ""

    try:
        if _is_absolute(urlsplit(trimmed)):
            return trimmed
    except ValueError:
        pass

    for base in bases:
        if not base:
            continue
        try:
            if not _is_absolute(urlsplit(base)):
                continue
            resolved = urljoin(base, trimmed)
            if _is_absolute(urlsplit(resolved)):
                return resolved
        except ValueError:
            continue

    return ""


def resolve_item_link(link: str, guid: str, website: Optional[str], feed_url: Optional[str]) -> str:
    """Displayable link for an item: its own link first, then its guid.

    Relative values resolve against the feed's website, then its subscription URL.
    """
    bases = [website, feed_url]
    return resolve_url(link, bases) or resolve_url(guid, bases) or ""
